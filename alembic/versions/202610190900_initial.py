"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


ACCOUNT_TYPES = (
    "checking",
    "savings",
    "investment",
    "credit_card",
    "loan",
    "cash",
    "other",
)
GOAL_TYPES = (
    "savings",
    "debt_payoff",
    "investment",
    "emergency_fund",
    "vacation",
    "home_purchase",
    "car_purchase",
    "education",
    "retirement",
    "other",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.Enum(*ACCOUNT_TYPES, name="accounttype"), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("bank_name", sa.String(length=100)),
        sa.Column("description", sa.Text()),
        sa.Column("color", sa.String(length=9)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "include_in_net_worth",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user_active", "accounts", ["user_id", "is_active"])
    op.create_index("ix_accounts_user_type", "accounts", ["user_id", "type"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="categorytype"), nullable=False
        ),
        sa.Column("color", sa.String(length=9)),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("is_cleared", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.String(length=200)),
        sa.Column("notes", sa.Text()),
        sa.Column("reference", sa.String(length=100)),
        sa.Column("location", sa.String(length=200)),
        sa.Column("receipt_url", sa.String(length=500)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index("ix_transactions_to_account", "transactions", ["to_account_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "period",
            sa.Enum("weekly", "monthly", "quarterly", "yearly", name="budgetperiod"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("description", sa.Text()),
        sa.Column("alert_threshold", sa.Integer()),
        sa.Column(
            "alert_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("start_date <= end_date", name="ck_budget_window_ordered"),
    )
    op.create_index(
        "ix_budgets_user_period_start", "budgets", ["user_id", "period", "start_date"]
    )
    op.create_index("ix_budgets_user_category", "budgets", ["user_id", "category_id"])

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("type", sa.Enum(*GOAL_TYPES, name="goaltype"), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "progress_percentage", sa.Float(), nullable=False, server_default="0"
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("target_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "paused", "cancelled", name="goalstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column(
            "monthly_contribution_cents",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("linked_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("color", sa.String(length=9)),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "auto_contribute", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
    )
    op.create_index("ix_goals_user_active", "goals", ["user_id", "is_active"])


def downgrade() -> None:
    op.drop_index("ix_goals_user_active", table_name="goals")
    op.drop_table("goals")
    op.drop_index("ix_budgets_user_category", table_name="budgets")
    op.drop_index("ix_budgets_user_period_start", table_name="budgets")
    op.drop_table("budgets")
    for name in (
        "ix_transactions_to_account",
        "ix_transactions_account",
        "ix_transactions_user_type_date",
        "ix_transactions_user_category_date",
        "ix_transactions_user_date",
    ):
        op.drop_index(name, table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user_type", table_name="accounts")
    op.drop_index("ix_accounts_user_active", table_name="accounts")
    op.drop_table("accounts")
