import datetime as dt
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from csv_utils import parse_amount
from models import (
    MAX_AMOUNT_CENTS,
    AccountType,
    RecurringInterval,
    TransactionStatus,
    TransactionType,
)


class UserIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=120)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.current
    balance_cents: int = Field(default=0, ge=-MAX_AMOUNT_CENTS, le=MAX_AMOUNT_CENTS)
    is_default: bool = False


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    is_default: bool


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., ge=0, le=MAX_AMOUNT_CENTS)
    description: Optional[str] = Field(default=None, max_length=200)
    date: dt.date
    category: str = Field(..., min_length=1, max_length=50)
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None
    status: TransactionStatus = TransactionStatus.completed

    @model_validator(mode="before")
    @classmethod
    def _amount_from_decimal(cls, data: Any) -> Any:
        # extracted receipts and forms send a decimal "amount" instead of cents
        if isinstance(data, dict) and "amount_cents" not in data and "amount" in data:
            data = dict(data)
            data["amount_cents"] = parse_amount(str(data.pop("amount")))
        return data

    @model_validator(mode="after")
    def _check_recurrence(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError("Recurring transactions need an interval")
        if not self.is_recurring:
            self.recurring_interval = None
        return self


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount_cents: int
    description: Optional[str]
    date: dt.date
    category: str
    status: TransactionStatus
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    last_processed_at: Optional[datetime]
    next_recurring_date: Optional[dt.date]
    origin_transaction_id: Optional[int]


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)


class RecurringEventIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    template_id: int = Field(..., alias="templateId", gt=0)
    user_id: int = Field(..., alias="userId", gt=0)
