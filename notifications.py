from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import get_settings
from errors import DownstreamUnavailable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    recipient: str
    subject: str
    template_type: str
    template_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryReceipt:
    provider: str
    recipient: str
    delivered_at: datetime


def _json_default(value: object) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Unserializable value: {value!r}")


class NotificationService:
    def __init__(self) -> None:
        self.settings = get_settings()

    def send(self, notification: Notification) -> DeliveryReceipt:
        if not notification.recipient:
            raise ValueError("Notification recipient is required")
        provider = (self.settings.notify_provider or "log").lower()
        if provider == "log":
            logger.info(
                f"notification_sent: provider=log to={notification.recipient} "
                f"template={notification.template_type} subject={notification.subject!r}"
            )
            return DeliveryReceipt(
                provider="log",
                recipient=notification.recipient,
                delivered_at=datetime.now(timezone.utc),
            )
        if provider == "webhook":
            return _post_webhook(
                notification,
                url=self.settings.notify_webhook_url,
                sender=self.settings.notify_sender,
                timeout=self.settings.notify_timeout_secs,
            )
        raise ValueError(f"Unsupported notification provider: {provider}")


def _post_webhook(
    notification: Notification,
    *,
    url: Optional[str],
    sender: str,
    timeout: float,
) -> DeliveryReceipt:
    if not url:
        raise DownstreamUnavailable("Notification webhook URL is not configured")
    body = {
        "from": sender,
        "to": notification.recipient,
        "subject": notification.subject,
        "templateType": notification.template_type,
        "templateData": asdict(notification)["template_data"],
    }
    req = Request(
        url,
        data=json.dumps(body, default=_json_default).encode("utf-8"),
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            status = resp.status
    except (URLError, TimeoutError) as exc:
        raise DownstreamUnavailable(
            f"Failed to deliver notification to {notification.recipient}"
        ) from exc
    if status >= 300:
        raise DownstreamUnavailable(f"Notification webhook answered {status}")
    return DeliveryReceipt(
        provider="webhook",
        recipient=notification.recipient,
        delivered_at=datetime.now(timezone.utc),
    )
