import datetime as dt
from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    BudgetPeriod,
    CategoryType,
    GoalStatus,
    GoalType,
    TransactionType,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.checking
    initial_balance_cents: int = 0
    currency: str = Field(default="USD", min_length=3, max_length=3)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=9)
    is_active: bool = True
    include_in_net_worth: bool = False


class AccountPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    initial_balance_cents: Optional[int] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=9)
    is_active: Optional[bool] = None
    include_in_net_worth: Optional[bool] = None


class AccountBalanceIn(BaseModel):
    balance_cents: int


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    initial_balance_cents: int
    currency: str
    bank_name: Optional[str]
    description: Optional[str]
    color: Optional[str]
    is_active: bool
    include_in_net_worth: bool


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=16)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[int]
    name: str
    type: CategoryType
    color: Optional[str]
    icon: Optional[str]


class TransactionIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    date: date
    account_id: int
    category_id: int
    to_account_id: Optional[int] = None
    is_cleared: bool = False
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None
    reference: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=200)
    receipt_url: Optional[str] = Field(default=None, max_length=500)


class TransactionPatch(BaseModel):
    """Fields a caller may change on an existing transaction.

    Only fields present in the request are applied; sending ``to_account_id``
    as null clears the destination.
    """

    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, ge=0)
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    to_account_id: Optional[int] = None
    is_cleared: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None
    reference: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=200)
    receipt_url: Optional[str] = Field(default=None, max_length=500)


class TransactionQuery(BaseModel):
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None
    search: Optional[str] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=500)
    sort_by: str = "date"
    sort_order: Literal["asc", "desc"] = "desc"


class AccountRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType


class CategoryRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    type: TransactionType
    date: date
    account_id: int
    category_id: int
    to_account_id: Optional[int]
    is_cleared: bool
    description: Optional[str]
    notes: Optional[str]
    reference: Optional[str]
    location: Optional[str]
    receipt_url: Optional[str]
    account: Optional[AccountRef] = None
    to_account: Optional[AccountRef] = None
    category: Optional[CategoryRef] = None
    created_at: datetime
    updated_at: datetime


class TransactionPage(BaseModel):
    items: list[TransactionOut]
    page: int
    limit: int
    total: int
    total_pages: int


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: date
    end_date: date
    category_id: int
    description: Optional[str] = None
    alert_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    alert_enabled: bool = False
    is_recurring: bool = False
    is_active: bool = True


class BudgetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category_id: Optional[int] = None
    description: Optional[str] = None
    alert_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    alert_enabled: Optional[bool] = None
    is_recurring: Optional[bool] = None
    is_active: Optional[bool] = None


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    amount_cents: int
    spent_cents: int
    remaining_cents: int
    period: BudgetPeriod
    start_date: date
    end_date: date
    category_id: int
    category: Optional[CategoryRef] = None
    description: Optional[str]
    alert_threshold: Optional[int]
    alert_enabled: bool
    is_recurring: bool
    is_active: bool


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    type: GoalType = GoalType.savings
    target_amount_cents: int = Field(..., gt=0)
    target_date: date
    start_date: date
    monthly_contribution_cents: int = Field(default=0, ge=0)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=16)
    linked_account_id: Optional[int] = None
    auto_contribute: bool = False
    notes: Optional[str] = None


class GoalPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    type: Optional[GoalType] = None
    target_amount_cents: Optional[int] = Field(default=None, gt=0)
    target_date: Optional[date] = None
    start_date: Optional[date] = None
    status: Optional[GoalStatus] = None
    monthly_contribution_cents: Optional[int] = Field(default=None, ge=0)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=16)
    linked_account_id: Optional[int] = None
    auto_contribute: Optional[bool] = None
    notes: Optional[str] = None


class GoalProgressIn(BaseModel):
    current_amount_cents: int = Field(..., ge=0)


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    type: GoalType
    target_amount_cents: int
    current_amount_cents: int
    progress_percentage: float
    start_date: date
    target_date: date
    status: GoalStatus
    monthly_contribution_cents: int
    linked_account_id: Optional[int]
    color: Optional[str]
    icon: Optional[str]
    notes: Optional[str]
    auto_contribute: bool
    is_active: bool
