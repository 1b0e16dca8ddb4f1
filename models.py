from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    investment = "investment"
    credit_card = "credit_card"
    loan = "loan"
    cash = "cash"
    other = "other"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class GoalType(str, Enum):
    savings = "savings"
    debt_payoff = "debt_payoff"
    investment = "investment"
    emergency_fund = "emergency_fund"
    vacation = "vacation"
    home_purchase = "home_purchase"
    car_purchase = "car_purchase"
    education = "education"
    retirement = "retirement"
    other = "other"


class GoalStatus(str, Enum):
    active = "active"
    completed = "completed"
    paused = "paused"
    cancelled = "cancelled"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.checking
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    bank_name: Mapped[Optional[str]] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    include_in_net_worth: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="account",
        foreign_keys="Transaction.account_id",
    )
    incoming_transfers: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="to_account",
        foreign_keys="Transaction.to_account_id",
    )

    __table_args__ = (
        Index("ix_accounts_user_active", "user_id", "is_active"),
        Index("ix_accounts_user_type", "user_id", "type"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL owner marks a system default visible to every user.
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )
    budgets: Mapped[list["Budget"]] = relationship("Budget", back_populates="category")


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    is_cleared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    reference: Mapped[Optional[str]] = mapped_column(String(100))
    location: Mapped[Optional[str]] = mapped_column(String(200))
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))

    account: Mapped["Account"] = relationship(
        "Account", back_populates="transactions", foreign_keys=[account_id]
    )
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", back_populates="incoming_transfers", foreign_keys=[to_account_id]
    )
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_to_account", "to_account_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period: Mapped[BudgetPeriod] = mapped_column(
        SAEnum(BudgetPeriod), nullable=False, default=BudgetPeriod.monthly
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    alert_threshold: Mapped[Optional[int]] = mapped_column(Integer)
    alert_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship("Category", back_populates="budgets")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("start_date <= end_date", name="ck_budget_window_ordered"),
        Index("ix_budgets_user_period_start", "user_id", "period", "start_date"),
        Index("ix_budgets_user_category", "user_id", "category_id"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[GoalType] = mapped_column(
        SAEnum(GoalType), nullable=False, default=GoalType.savings
    )
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    progress_percentage: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[GoalStatus] = mapped_column(
        SAEnum(GoalStatus), nullable=False, default=GoalStatus.active
    )
    monthly_contribution_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    linked_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    auto_contribute: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    linked_account: Mapped[Optional["Account"]] = relationship("Account")

    __table_args__ = (
        CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
        Index("ix_goals_user_active", "user_id", "is_active"),
    )
