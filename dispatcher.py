import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Hashable, Iterable, Optional

from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import session_scope
from recurrence import ProcessOutcome, RecurrenceProcessor, WorkItem


logger = logging.getLogger(__name__)

Handler = Callable[[WorkItem], ProcessOutcome]


class Throttle:
    """Sliding-window admission counter keyed by user."""

    def __init__(
        self,
        limit: int,
        period_secs: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0:
            raise ValueError("Throttle limit must be positive")
        if period_secs <= 0:
            raise ValueError("Throttle period must be positive")
        self.limit = limit
        self.period_secs = period_secs
        self._clock = clock
        self._admitted: dict[Hashable, deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def try_acquire(self, key: Hashable) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            window = self._admitted.setdefault(key, deque())
            self._trim(window, now)
            if len(window) >= self.limit:
                return False
            window.append(now)
            return True

    def remaining(self, key: Hashable) -> int:
        with self._lock:
            now = self._clock()
            window = self._admitted.get(key, deque())
            live = sum(1 for ts in window if now - ts < self.period_secs)
            return max(0, self.limit - live)

    def _trim(self, window: deque[float], now: float) -> None:
        while window and now - window[0] >= self.period_secs:
            window.popleft()

    def _sweep(self, now: float) -> None:
        # drop users whose whole window has expired, at most once per period
        if now - self._last_sweep < self.period_secs:
            return
        self._last_sweep = now
        for key in list(self._admitted):
            window = self._admitted[key]
            self._trim(window, now)
            if not window:
                del self._admitted[key]


@dataclass
class DispatchReport:
    materialized: list[WorkItem] = field(default_factory=list)
    skipped: list[WorkItem] = field(default_factory=list)
    deferred: list[WorkItem] = field(default_factory=list)
    failed: list[WorkItem] = field(default_factory=list)

    @property
    def admitted(self) -> int:
        return len(self.materialized) + len(self.skipped) + len(self.failed)


def process_work_item(
    item: WorkItem, factory: Optional[sessionmaker] = None
) -> ProcessOutcome:
    # each work item gets its own session and atomic unit
    with session_scope(factory) as session:
        return RecurrenceProcessor(session).process(item)


class Dispatcher:
    def __init__(
        self,
        handler: Handler = process_work_item,
        throttle: Optional[Throttle] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.handler = handler
        self.throttle = throttle or Throttle(
            settings.throttle_limit, settings.throttle_period_secs
        )
        self.max_workers = max_workers or settings.max_workers

    def dispatch(self, items: Iterable[WorkItem]) -> DispatchReport:
        report = DispatchReport()
        admitted: list[WorkItem] = []
        for item in items:
            if self.throttle.try_acquire(item.user_id):
                admitted.append(item)
            else:
                report.deferred.append(item)

        for item in report.deferred:
            logger.info(
                f"dispatch_deferred: template_id={item.template_id} "
                f"user_id={item.user_id} reason=rate_limited"
            )
        if not admitted:
            return report

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="recurring"
        ) as pool:
            futures: list[tuple[WorkItem, Future]] = [
                (item, pool.submit(self.handler, item)) for item in admitted
            ]
            for item, future in futures:
                try:
                    outcome = future.result()
                except Exception:
                    logger.exception(
                        f"dispatch_failed: template_id={item.template_id} "
                        f"user_id={item.user_id}"
                    )
                    report.failed.append(item)
                    continue
                if outcome == ProcessOutcome.materialized:
                    report.materialized.append(item)
                else:
                    report.skipped.append(item)

        logger.info(
            f"dispatch_done: materialized={len(report.materialized)} "
            f"skipped={len(report.skipped)} deferred={len(report.deferred)} "
            f"failed={len(report.failed)}"
        )
        return report
