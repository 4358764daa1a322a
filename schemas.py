import datetime as dt
import re
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import CategoryKind, PeriodRelation

MANUAL_ID_PREFIX = "MANUAL-"
UNCATEGORIZED = "Uncategorized"

_CARD_PREFIX = re.compile(r"^(CHECKCARD|PURCHASE|MOBILE PURCHASE) \d+ ", re.IGNORECASE)
_CONFIRMATION_TAIL = re.compile(r"[:;]?\s*Conf#.*", re.IGNORECASE)
_MASKED_ACCOUNT = re.compile(r"\s?XXXXX[A-Z0-9]*")


def clean_payee(raw: Optional[str]) -> str:
    """Strip the card-processor noise banks put around merchant names."""
    name = raw or ""
    name = _CARD_PREFIX.sub("", name)
    cut = name.find(" DES")
    if cut != -1:
        name = name[:cut]
    name = _CONFIRMATION_TAIL.sub("", name)
    name = _MASKED_ACCOUNT.sub("", name)
    name = name.strip()
    return name or "Unknown Transaction"


def classify_category(name: str, is_income: bool = False) -> CategoryKind:
    # The income flag comes from the ledger; savings is only recognisable by name.
    if is_income:
        return CategoryKind.income
    if "savings" in name.casefold():
        return CategoryKind.savings
    return CategoryKind.expense


class Category(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str] = None
    is_income: bool = False
    exclude_from_budget: bool = False
    parent_id: Optional[int] = None

    @property
    def kind(self) -> CategoryKind:
        return classify_category(self.name, self.is_income)


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    date: dt.date
    amount: Decimal = Decimal("0")
    payee: str = ""
    memo: str = ""
    category_id: Optional[int] = None
    created_at: dt.datetime
    is_pending: bool = False
    external_id: Optional[str] = None
    supersedes_external_id: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _aware_created_at(cls, value: dt.datetime) -> dt.datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value

    @property
    def is_manual(self) -> bool:
        return self.id.startswith(MANUAL_ID_PREFIX)

    @property
    def display_payee(self) -> str:
        return clean_payee(self.payee)


class BudgetSummary(BaseModel):
    aligned: bool
    budgeted: dict[int, Decimal] = Field(default_factory=dict)


class ManualTransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    payee: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., allow_inf_nan=False)
    date: dt.date
    category: str = Field(default=UNCATEGORIZED, min_length=1, max_length=100)
    memo: str = Field(default="", max_length=500)


class CategoryOverrideIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)


class PayeeRenameIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    payee: str = Field(..., min_length=1, max_length=200)


class BudgetIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0, allow_inf_nan=False)
    date: Optional[dt.date] = None


class CategoryIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(default=Decimal("0"), ge=0, allow_inf_nan=False)


class CategoryMoveIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    position: int = Field(..., ge=0)


class StartingBalanceIn(BaseModel):
    amount: Decimal = Field(..., allow_inf_nan=False)


class ConnectIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(..., min_length=1)
    initial_balance: Decimal = Field(..., allow_inf_nan=False)
    import_start: dt.date
    period_start: dt.date
    period_end: dt.date

    @model_validator(mode="after")
    def _check_period(self) -> "ConnectIn":
        if self.period_start > self.period_end:
            raise ValueError("Period start must be before period end")
        return self


class CategoryLine(BaseModel):
    name: str
    kind: CategoryKind
    budget: Decimal
    spent: Decimal
    received: Decimal
    remaining: Decimal
    progress: Decimal


class PeriodSummary(BaseModel):
    key: str
    start: dt.date
    end: Optional[dt.date]
    relation: PeriodRelation
    income: Decimal
    expenses: Decimal
    savings: Decimal
    lifetime_savings: Decimal
    net_budget: Decimal
    beginning_balance: Decimal
    ending_balance: Decimal
    projected_end: Decimal
    categories: list[CategoryLine] = Field(default_factory=list)


class ReportTotals(BaseModel):
    start: dt.date
    end: dt.date
    income: Decimal
    expenses: Decimal
    net: Decimal
    categories: dict[str, Decimal] = Field(default_factory=dict)


class BudgetAlert(BaseModel):
    period_key: str
    category: str
    spent: Decimal
    budget: Decimal
    percent: Decimal

    @property
    def key(self) -> str:
        return f"{self.period_key}|{self.category}"


class SyncResult(BaseModel):
    ok: bool
    message: str
    imported: int = 0
    budgets_aligned: Optional[bool] = None
