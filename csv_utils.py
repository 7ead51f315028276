import csv
import re
from decimal import Decimal, DecimalException
from io import StringIO
from typing import Sequence

from errors import ValidationError
from models import MAX_AMOUNT_CENTS, Transaction


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
        if not amount.is_finite():
            raise ValidationError("Invalid amount")
        if amount.copy_abs() * 100 > MAX_AMOUNT_CENTS:
            raise ValidationError("Amount is too large")
        cents = int((amount * 100).quantize(Decimal("1")))
    except DecimalException as exc:
        raise ValidationError("Invalid amount") from exc
    if cents < 0 and not allow_negative:
        raise ValidationError("Amount must be positive")
    return cents


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Date", "Type", "Amount", "Category", "Description", "Account", "Recurring"]
    )
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                format_amount(txn.amount_cents),
                sanitize_csv_value(txn.category or ""),
                sanitize_csv_value(txn.description or ""),
                txn.account_id,
                txn.recurring_interval.value if txn.is_recurring else "",
            ]
        )
    return output.getvalue()
