from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from database import atomic
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    CategoryType,
    Goal,
    GoalStatus,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    GoalIn,
    GoalPatch,
    TransactionIn,
    TransactionPatch,
    TransactionQuery,
)

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    """Entity is missing or not owned by the caller."""


class ForbiddenError(ValueError):
    """Entity exists but belongs to another owner."""


class InvalidArgumentError(ValueError):
    """Request is well-formed but breaks a ledger rule."""


def _patch_values(
    patch: BaseModel, nullable: frozenset[str] = frozenset()
) -> dict[str, object]:
    """Return the fields the caller actually sent.

    An explicit null only clears columns listed in ``nullable``; for every
    other field it is treated as absent.
    """
    values: dict[str, object] = {}
    for name in patch.model_fields_set:
        value = getattr(patch, name)
        if value is None and name not in nullable:
            continue
        values[name] = value
    return values


@dataclass(frozen=True)
class LedgerEffect:
    account_id: int
    delta_cents: int


@dataclass(frozen=True)
class LedgerState:
    """The fields of a transaction that determine its ledger effect."""

    type: TransactionType
    amount_cents: int
    account_id: int
    to_account_id: Optional[int]
    category_id: int
    date: date

    @classmethod
    def of(cls, txn: Transaction) -> "LedgerState":
        return cls(
            type=TransactionType(txn.type),
            amount_cents=int(txn.amount_cents),
            account_id=txn.account_id,
            to_account_id=txn.to_account_id,
            category_id=txn.category_id,
            date=txn.date,
        )


def ledger_effects(state: LedgerState) -> list[LedgerEffect]:
    amount = state.amount_cents
    if state.type == TransactionType.income:
        return [LedgerEffect(state.account_id, amount)]
    if state.type == TransactionType.expense:
        return [LedgerEffect(state.account_id, -amount)]
    if state.to_account_id is None:
        raise InvalidArgumentError("Destination account is required for transfers")
    return [
        LedgerEffect(state.account_id, -amount),
        LedgerEffect(state.to_account_id, amount),
    ]


def reversed_effects(state: LedgerState) -> list[LedgerEffect]:
    return [
        LedgerEffect(effect.account_id, -effect.delta_cents)
        for effect in ledger_effects(state)
    ]


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, include_inactive: bool = False) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.type.asc(), Account.name.asc())
        )
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance_cents=data.initial_balance_cents,
            initial_balance_cents=data.initial_balance_cents,
            currency=data.currency.upper(),
            bank_name=data.bank_name,
            description=data.description,
            color=data.color,
            is_active=data.is_active,
            include_in_net_worth=data.include_in_net_worth,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, patch: AccountPatch) -> Account:
        account = self.get(account_id)
        values = _patch_values(
            patch, nullable=frozenset({"bank_name", "description", "color"})
        )
        with atomic(self.session):
            if "initial_balance_cents" in values:
                new_initial = int(values.pop("initial_balance_cents"))
                shift = new_initial - account.initial_balance_cents
                account.initial_balance_cents = new_initial
                if shift:
                    self.adjust(account.id, shift)
            if "name" in values:
                account.name = str(values.pop("name")).strip()
            if "currency" in values:
                account.currency = str(values.pop("currency")).upper()
            for name, value in values.items():
                setattr(account, name, value)
        self.session.refresh(account)
        return account

    def set_balance(self, account_id: int, balance_cents: int) -> Account:
        """Correct the cached balance to a user-supplied figure.

        The initial balance absorbs the correction so that
        ``balance == initial_balance + ledger effects`` still holds.
        """
        if balance_cents <= 0:
            raise InvalidArgumentError("Balance must be a positive number")
        account = self.get(account_id)
        shift = balance_cents - account.balance_cents
        with atomic(self.session):
            account.initial_balance_cents = account.initial_balance_cents + shift
            if shift:
                self.adjust(account.id, shift)
        logger.info(
            f"balance_correction: user={self.user_id} account={account.id} shift={shift}"
        )
        self.session.refresh(account)
        return account

    def remove(self, account_id: int) -> None:
        account = self.get(account_id)
        account.is_active = False
        self.session.commit()

    def adjust(self, account_id: int, delta_cents: int) -> Account:
        """Add ``delta_cents`` to the stored balance in a single UPDATE.

        Does not commit: the caller owns the unit of work.
        """
        self.session.flush()
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(balance_cents=Account.balance_cents + delta_cents)
        )
        if result.rowcount == 0:
            raise NotFoundError("Account not found")
        return self.session.get(Account, account_id)

    def list_by_type(self, account_type: AccountType) -> list[Account]:
        stmt = (
            select(Account)
            .where(
                Account.user_id == self.user_id,
                Account.type == account_type,
                Account.is_active.is_(True),
            )
            .order_by(Account.name.asc())
        )
        return self.session.scalars(stmt).all()

    def net_worth(self) -> int:
        stmt = select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
            Account.user_id == self.user_id,
            Account.is_active.is_(True),
            Account.include_in_net_worth.is_(True),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def summary(self) -> dict[str, object]:
        accounts = self.list_all()
        by_type: dict[str, dict[str, int]] = {
            account_type.value: {"count": 0, "balance_cents": 0}
            for account_type in AccountType
        }
        total_balance = 0
        net_worth = 0
        for account in accounts:
            balance = int(account.balance_cents)
            total_balance += balance
            if account.include_in_net_worth:
                net_worth += balance
            bucket = by_type[AccountType(account.type).value]
            bucket["count"] += 1
            bucket["balance_cents"] += balance
        return {
            "total_accounts": len(accounts),
            "total_balance_cents": total_balance,
            "net_worth_cents": net_worth,
            "by_type": by_type,
        }

    def expected_balances(self) -> dict[int, int]:
        """Replay the ledger: initial balance plus every transaction's effect."""
        expected = {
            account.id: int(account.initial_balance_cents)
            for account in self.list_all(include_inactive=True)
        }
        signed_amount = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            else_=-Transaction.amount_cents,
        )
        outgoing = self.session.execute(
            select(Transaction.account_id, func.sum(signed_amount).label("delta"))
            .where(Transaction.user_id == self.user_id)
            .group_by(Transaction.account_id)
        )
        for row in outgoing:
            if row.account_id in expected:
                expected[row.account_id] += int(row.delta or 0)
        incoming = self.session.execute(
            select(
                Transaction.to_account_id,
                func.sum(Transaction.amount_cents).label("delta"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.transfer,
                Transaction.to_account_id.isnot(None),
            )
            .group_by(Transaction.to_account_id)
        )
        for row in incoming:
            if row.to_account_id in expected:
                expected[row.to_account_id] += int(row.delta or 0)
        return expected

    def reconcile(self, repair: bool = False) -> list[dict[str, object]]:
        expected = self.expected_balances()
        drifted: list[dict[str, object]] = []
        for account in self.list_all(include_inactive=True):
            want = expected[account.id]
            if account.balance_cents == want:
                continue
            drifted.append(
                {
                    "account_id": account.id,
                    "name": account.name,
                    "cached_balance_cents": int(account.balance_cents),
                    "expected_balance_cents": want,
                    "drift_cents": int(account.balance_cents) - want,
                }
            )
            logger.warning(
                f"balance_drift: user={self.user_id} account={account.id} "
                f"cached={account.balance_cents} expected={want}"
            )
        if repair and drifted:
            with atomic(self.session):
                for row in drifted:
                    self.adjust(int(row["account_id"]), -int(row["drift_cents"]))
            logger.info(
                f"balance_repair: user={self.user_id} accounts={len(drifted)}"
            )
        return drifted


def reconcile_all_users(session: Session, repair: bool = False) -> int:
    user_ids = session.scalars(select(Account.user_id).distinct()).all()
    drifted = 0
    for user_id in user_ids:
        drifted += len(AccountService(session, user_id).reconcile(repair=repair))
    return drifted


DEFAULT_CATEGORIES: list[tuple[str, CategoryType, str, str]] = [
    ("Food & Dining", CategoryType.expense, "#FF6B6B", "🍽️"),
    ("Transportation", CategoryType.expense, "#4ECDC4", "🚗"),
    ("Shopping", CategoryType.expense, "#45B7D1", "🛍️"),
    ("Entertainment", CategoryType.expense, "#96CEB4", "🎬"),
    ("Bills & Utilities", CategoryType.expense, "#FFEAA7", "💡"),
    ("Healthcare", CategoryType.expense, "#DDA0DD", "🏥"),
    ("Education", CategoryType.expense, "#98D8C8", "📚"),
    ("Travel", CategoryType.expense, "#F7DC6F", "✈️"),
    ("Home & Garden", CategoryType.expense, "#BB8FCE", "🏠"),
    ("Personal Care", CategoryType.expense, "#F8C471", "💄"),
    ("Salary", CategoryType.income, "#58D68D", "💰"),
    ("Freelance", CategoryType.income, "#5DADE2", "💻"),
    ("Investments", CategoryType.income, "#F1948A", "📈"),
    ("Other Income", CategoryType.income, "#85C1E9", "💵"),
]


def ensure_default_categories(session: Session) -> int:
    existing = session.execute(
        select(func.count(Category.id)).where(Category.user_id.is_(None))
    ).scalar_one()
    if existing:
        return 0
    for name, category_type, color, icon in DEFAULT_CATEGORIES:
        session.add(
            Category(
                user_id=None, name=name, type=category_type, color=color, icon=icon
            )
        )
    session.commit()
    logger.info(f"default_categories: created={len(DEFAULT_CATEGORIES)}")
    return len(DEFAULT_CATEGORIES)


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, category_type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(
                or_(Category.user_id == self.user_id, Category.user_id.is_(None)),
                Category.is_active.is_(True),
            )
            .order_by(Category.user_id.is_(None).asc(), Category.name.asc())
        )
        if category_type:
            stmt = stmt.where(Category.type == category_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        if category.user_id is not None and category.user_id != self.user_id:
            raise ForbiddenError("Access denied to this category")
        return category

    def create(self, data: CategoryIn) -> Category:
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _spent_from_ledger(self, category_id: int, start: date, end: date) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.category_id == category_id,
            Transaction.date.between(start, end),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        if data.start_date > data.end_date:
            raise InvalidArgumentError("Budget start date must not be after end date")
        CategoryService(self.session, self.user_id).get(data.category_id)

        with atomic(self.session):
            spent = self._spent_from_ledger(
                data.category_id, data.start_date, data.end_date
            )
            budget = Budget(
                user_id=self.user_id,
                name=data.name.strip(),
                amount_cents=data.amount_cents,
                spent_cents=spent,
                remaining_cents=data.amount_cents - spent,
                period=data.period,
                start_date=data.start_date,
                end_date=data.end_date,
                category_id=data.category_id,
                description=data.description,
                alert_threshold=data.alert_threshold,
                alert_enabled=data.alert_enabled,
                is_recurring=data.is_recurring,
                is_active=data.is_active,
            )
            self.session.add(budget)
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, patch: BudgetPatch) -> Budget:
        budget = self.get(budget_id)
        values = _patch_values(
            patch, nullable=frozenset({"description", "alert_threshold"})
        )
        new_category_id = values.get("category_id", budget.category_id)
        new_start = values.get("start_date", budget.start_date)
        new_end = values.get("end_date", budget.end_date)
        if new_start > new_end:
            raise InvalidArgumentError("Budget start date must not be after end date")
        if new_category_id != budget.category_id:
            CategoryService(self.session, self.user_id).get(new_category_id)
        rollup_scope_changed = (
            new_category_id != budget.category_id
            or new_start != budget.start_date
            or new_end != budget.end_date
        )

        with atomic(self.session):
            if "name" in values:
                values["name"] = str(values["name"]).strip()
            for name, value in values.items():
                setattr(budget, name, value)
            self.session.flush()
            self._derive_rollup(budget.id, rebuild_spent=rollup_scope_changed)
        self.session.refresh(budget)
        return budget

    def recompute(self, budget_id: int) -> Budget:
        budget = self.get(budget_id)
        with atomic(self.session):
            self._derive_rollup(budget.id, rebuild_spent=True)
        self.session.refresh(budget)
        return budget

    def _derive_rollup(self, budget_id: int, rebuild_spent: bool) -> None:
        """Rewrite the stored rollup of one budget inside the database.

        Both columns are computed by the UPDATE itself, so an expense committed
        by another session after this one loaded the budget is never lost.
        Does not commit.
        """
        target = update(Budget).where(
            Budget.id == budget_id, Budget.user_id == self.user_id
        )
        if rebuild_spent:
            ledger_spent = (
                select(func.coalesce(func.sum(Transaction.amount_cents), 0))
                .where(
                    Transaction.user_id == Budget.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.category_id == Budget.category_id,
                    Transaction.date.between(Budget.start_date, Budget.end_date),
                )
                .scalar_subquery()
            )
            self.session.execute(
                target.values(spent_cents=ledger_spent).execution_options(
                    synchronize_session=False
                )
            )
        self.session.execute(
            target.values(
                remaining_cents=Budget.amount_cents - Budget.spent_cents
            ).execution_options(synchronize_session=False)
        )

    def apply_spending(self, category_id: int, on_date: date, delta_cents: int) -> int:
        """Move ``spent`` of every budget covering the category and date.

        Inactive budgets are kept current too so that reactivating one never
        exposes a stale rollup. Does not commit.
        """
        if not delta_cents:
            return 0
        self.session.flush()
        criteria = (
            Budget.user_id == self.user_id,
            Budget.category_id == category_id,
            Budget.start_date <= on_date,
            Budget.end_date >= on_date,
        )
        result = self.session.execute(
            update(Budget)
            .where(*criteria)
            .values(spent_cents=Budget.spent_cents + delta_cents)
        )
        self.session.execute(
            update(Budget)
            .where(*criteria)
            .values(remaining_cents=Budget.amount_cents - Budget.spent_cents)
        )
        return result.rowcount

    def remove(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        budget.is_active = False
        self.session.commit()

    def summary(self) -> dict[str, int]:
        budgets = self.list_all()
        summary = {
            "total_budgets": len(budgets),
            "total_budget_amount_cents": 0,
            "total_spent_cents": 0,
            "total_remaining_cents": 0,
            "over_budget_count": 0,
        }
        for budget in budgets:
            summary["total_budget_amount_cents"] += budget.amount_cents
            summary["total_spent_cents"] += budget.spent_cents
            summary["total_remaining_cents"] += budget.remaining_cents
            if budget.spent_cents > budget.amount_cents:
                summary["over_budget_count"] += 1
        return summary


def goal_progress(current_cents: int, target_cents: int) -> float:
    if target_cents <= 0:
        return 0.0
    return round(current_cents / target_cents * 100, 2)


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .options(joinedload(Goal.linked_account))
            .where(Goal.user_id == self.user_id, Goal.is_active.is_(True))
            .order_by(Goal.target_date.asc(), Goal.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        if data.linked_account_id is not None:
            AccountService(self.session, self.user_id).get(data.linked_account_id)
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            description=data.description,
            type=data.type,
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=0,
            progress_percentage=0.0,
            start_date=data.start_date,
            target_date=data.target_date,
            status=GoalStatus.active,
            monthly_contribution_cents=data.monthly_contribution_cents,
            linked_account_id=data.linked_account_id,
            color=data.color,
            icon=data.icon,
            notes=data.notes,
            auto_contribute=data.auto_contribute,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, patch: GoalPatch) -> Goal:
        goal = self.get(goal_id)
        values = _patch_values(
            patch,
            nullable=frozenset(
                {"description", "color", "icon", "notes", "linked_account_id"}
            ),
        )
        linked = values.get("linked_account_id")
        if linked is not None and linked != goal.linked_account_id:
            AccountService(self.session, self.user_id).get(int(linked))

        with atomic(self.session):
            if "name" in values:
                values["name"] = str(values["name"]).strip()
            for name, value in values.items():
                setattr(goal, name, value)
            if "target_amount_cents" in values:
                goal.progress_percentage = goal_progress(
                    goal.current_amount_cents, goal.target_amount_cents
                )
        self.session.refresh(goal)
        return goal

    def update_progress(self, goal_id: int, current_amount_cents: int) -> Goal:
        if current_amount_cents < 0:
            raise InvalidArgumentError("Progress amount must not be negative")
        goal = self.get(goal_id)
        goal.current_amount_cents = current_amount_cents
        goal.progress_percentage = goal_progress(
            current_amount_cents, goal.target_amount_cents
        )
        if goal.progress_percentage >= 100:
            goal.status = GoalStatus.completed
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def remove(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        goal.is_active = False
        self.session.commit()

    def summary(self) -> dict[str, object]:
        goals = self.list_all()
        summary: dict[str, object] = {
            "total_goals": len(goals),
            "active_goals": sum(1 for g in goals if g.status == GoalStatus.active),
            "completed_goals": sum(
                1 for g in goals if g.status == GoalStatus.completed
            ),
            "total_target_amount_cents": sum(g.target_amount_cents for g in goals),
            "total_current_amount_cents": sum(g.current_amount_cents for g in goals),
            "average_progress": 0.0,
        }
        if goals:
            summary["average_progress"] = sum(
                float(g.progress_percentage) for g in goals
            ) / len(goals)
        return summary


SORT_FIELDS = {
    "date": Transaction.date,
    "amount": Transaction.amount_cents,
    "description": Transaction.description,
}


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.accounts = AccountService(session, user_id)
        self.categories = CategoryService(session, user_id)
        self.budgets = BudgetService(session, user_id)

    def _validate_transfer(
        self, account_id: int, to_account_id: Optional[int]
    ) -> int:
        if to_account_id is None:
            raise InvalidArgumentError("Destination account is required for transfers")
        if to_account_id == account_id:
            raise InvalidArgumentError(
                "Transfer source and destination accounts must differ"
            )
        self.accounts.get(to_account_id)
        return to_account_id

    def _apply(self, state: LedgerState, *, reverse: bool = False) -> None:
        effects = reversed_effects(state) if reverse else ledger_effects(state)
        for effect in effects:
            self.accounts.adjust(effect.account_id, effect.delta_cents)
        if state.type == TransactionType.expense:
            delta = -state.amount_cents if reverse else state.amount_cents
            self.budgets.apply_spending(state.category_id, state.date, delta)

    def create(self, data: TransactionIn) -> Transaction:
        self.accounts.get(data.account_id)
        self.categories.get(data.category_id)
        to_account_id = None
        if data.type == TransactionType.transfer:
            to_account_id = self._validate_transfer(
                data.account_id, data.to_account_id
            )

        txn = Transaction(
            user_id=self.user_id,
            amount_cents=data.amount_cents,
            type=data.type,
            date=data.date,
            account_id=data.account_id,
            category_id=data.category_id,
            to_account_id=to_account_id,
            is_cleared=data.is_cleared,
            description=data.description,
            notes=data.notes,
            reference=data.reference,
            location=data.location,
            receipt_url=data.receipt_url,
        )
        with atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            self._apply(LedgerState.of(txn))
        logger.info(
            f"ledger_create: user={self.user_id} txn={txn.id} "
            f"type={txn.type.value} amount={txn.amount_cents}"
        )
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.account),
                joinedload(Transaction.to_account),
            )
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .execution_options(populate_existing=True)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        values = _patch_values(
            patch,
            nullable=frozenset(
                {
                    "to_account_id",
                    "description",
                    "notes",
                    "reference",
                    "location",
                    "receipt_url",
                }
            ),
        )

        new_account_id = values.get("account_id", txn.account_id)
        if new_account_id != txn.account_id:
            self.accounts.get(new_account_id)
        new_category_id = values.get("category_id", txn.category_id)
        if new_category_id != txn.category_id:
            self.categories.get(new_category_id)
        new_type = values.get("type", txn.type)
        if new_type == TransactionType.transfer:
            values["to_account_id"] = self._validate_transfer(
                new_account_id, values.get("to_account_id", txn.to_account_id)
            )
        else:
            values["to_account_id"] = None

        before = LedgerState.of(txn)
        with atomic(self.session):
            # Reverse from the stored fields before any of them change.
            self._apply(before, reverse=True)
            for name, value in values.items():
                setattr(txn, name, value)
            self.session.flush()
            self._apply(LedgerState.of(txn))
        logger.info(
            f"ledger_update: user={self.user_id} txn={txn.id} "
            f"fields={sorted(values)}"
        )
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        state = LedgerState.of(txn)
        with atomic(self.session):
            self._apply(state, reverse=True)
            self.session.delete(txn)
        logger.info(f"ledger_delete: user={self.user_id} txn={transaction_id}")

    def _filtered(self, query: TransactionQuery):
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if query.type:
            stmt = stmt.where(Transaction.type == query.type)
        if query.category_id is not None:
            stmt = stmt.where(Transaction.category_id == query.category_id)
        if query.account_id is not None:
            stmt = stmt.where(Transaction.account_id == query.account_id)
        if query.start_date:
            stmt = stmt.where(Transaction.date >= query.start_date)
        if query.end_date:
            stmt = stmt.where(Transaction.date <= query.end_date)
        if query.min_amount_cents is not None:
            stmt = stmt.where(Transaction.amount_cents >= query.min_amount_cents)
        if query.max_amount_cents is not None:
            stmt = stmt.where(Transaction.amount_cents <= query.max_amount_cents)
        if query.search:
            like = f"%{query.search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(func.coalesce(Transaction.description, "")).like(like),
                    func.lower(func.coalesce(Transaction.notes, "")).like(like),
                    func.lower(func.coalesce(Transaction.location, "")).like(like),
                )
            )
        return stmt

    def list(self, query: TransactionQuery) -> dict[str, object]:
        stmt = self._filtered(query)
        total = int(
            self.session.execute(
                select(func.count()).select_from(stmt.subquery())
            ).scalar_one()
            or 0
        )

        sort_column = SORT_FIELDS.get(query.sort_by, Transaction.date)
        if query.sort_order == "asc":
            ordering = (sort_column.asc(), Transaction.id.asc())
        else:
            ordering = (sort_column.desc(), Transaction.id.desc())
        offset = (query.page - 1) * query.limit
        items = (
            self.session.scalars(
                stmt.options(
                    joinedload(Transaction.category),
                    joinedload(Transaction.account),
                    joinedload(Transaction.to_account),
                )
                .order_by(*ordering)
                .offset(offset)
                .limit(query.limit)
            )
            .unique()
            .all()
        )
        return {
            "items": items,
            "page": query.page,
            "limit": query.limit,
            "total": total,
            "total_pages": math.ceil(total / query.limit),
        }

    def summary(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        txn_type: Optional[TransactionType] = None,
    ) -> dict[str, object]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        if start_date:
            stmt = stmt.where(Transaction.date >= start_date)
        if end_date:
            stmt = stmt.where(Transaction.date <= end_date)
        if txn_type:
            stmt = stmt.where(Transaction.type == txn_type)
        transactions = self.session.scalars(stmt).all()

        total_income = 0
        total_expenses = 0
        by_category: dict[int, dict[str, object]] = {}
        for txn in transactions:
            amount = int(txn.amount_cents)
            if txn.type == TransactionType.income:
                total_income += amount
            elif txn.type == TransactionType.expense:
                total_expenses += amount

            bucket = by_category.get(txn.category_id)
            if bucket is None:
                bucket = {
                    "name": txn.category.name if txn.category else "Unknown",
                    "amount_cents": 0,
                    "count": 0,
                }
                by_category[txn.category_id] = bucket
            bucket["amount_cents"] += amount
            bucket["count"] += 1

        return {
            "total_income_cents": total_income,
            "total_expenses_cents": total_expenses,
            "net_income_cents": total_income - total_expenses,
            "transaction_count": len(transactions),
            "by_category": by_category,
        }
