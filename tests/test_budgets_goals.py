from datetime import date

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Budget, BudgetPeriod, CategoryType, GoalStatus, TransactionType
from schemas import (
    AccountIn,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    GoalIn,
    GoalPatch,
    TransactionIn,
    TransactionPatch,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    InvalidArgumentError,
    NotFoundError,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def spend(session, account_id: int, category_id: int, amount: int, day: date):
    return TransactionService(session, 1).create(
        TransactionIn(
            amount_cents=amount,
            type=TransactionType.expense,
            date=day,
            account_id=account_id,
            category_id=category_id,
        )
    )


def make_budget(session, category_id: int, amount: int = 20_000):
    return BudgetService(session, 1).create(
        BudgetIn(
            name="Groceries",
            amount_cents=amount,
            period=BudgetPeriod.monthly,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
            category_id=category_id,
        )
    )


def setup_ledger(session):
    account = AccountService(session, 1).create(
        AccountIn(name="Checking", initial_balance_cents=100_000)
    )
    food = CategoryService(session, 1).create(
        CategoryIn(name="Food", type=CategoryType.expense)
    )
    return account, food


def test_budget_spent_follows_ledger() -> None:
    session = make_session()
    account, food = setup_ledger(session)
    budgets = BudgetService(session, 1)
    budget = make_budget(session, food.id)

    txn = spend(session, account.id, food.id, 5_000, date(2025, 1, 10))
    spend(session, account.id, food.id, 9_999, date(2025, 2, 1))
    assert budgets.get(budget.id).spent_cents == 5_000
    assert budgets.get(budget.id).remaining_cents == 15_000

    TransactionService(session, 1).update(txn.id, TransactionPatch(amount_cents=7_000))
    assert budgets.get(budget.id).spent_cents == 7_000
    assert budgets.get(budget.id).remaining_cents == 13_000

    TransactionService(session, 1).update(txn.id, TransactionPatch(date=date(2025, 3, 1)))
    assert budgets.get(budget.id).spent_cents == 0

    TransactionService(session, 1).delete(txn.id)
    assert budgets.get(budget.id).remaining_cents == 20_000


def test_budget_created_after_spending_counts_existing_expenses() -> None:
    session = make_session()
    account, food = setup_ledger(session)
    spend(session, account.id, food.id, 4_000, date(2025, 1, 3))
    spend(session, account.id, food.id, 1_000, date(2025, 1, 31))

    budget = make_budget(session, food.id)

    assert budget.spent_cents == 5_000
    assert budget.remaining_cents == 15_000


def test_budget_update_keeps_remaining_derived() -> None:
    session = make_session()
    account, food = setup_ledger(session)
    budgets = BudgetService(session, 1)
    budget = make_budget(session, food.id)
    spend(session, account.id, food.id, 7_000, date(2025, 1, 10))

    updated = budgets.update(budget.id, BudgetPatch(amount_cents=3_000))
    assert updated.remaining_cents == -4_000
    assert budgets.summary()["over_budget_count"] == 1

    narrowed = budgets.update(budget.id, BudgetPatch(end_date=date(2025, 1, 5)))
    assert narrowed.spent_cents == 0
    assert narrowed.remaining_cents == 3_000

    with pytest.raises(InvalidArgumentError):
        budgets.update(budget.id, BudgetPatch(start_date=date(2025, 2, 1)))


def test_budget_rejects_inverted_window_and_soft_deletes() -> None:
    session = make_session()
    _, food = setup_ledger(session)
    budgets = BudgetService(session, 1)

    with pytest.raises(InvalidArgumentError):
        budgets.create(
            BudgetIn(
                name="Backwards",
                amount_cents=1_000,
                start_date=date(2025, 2, 1),
                end_date=date(2025, 1, 1),
                category_id=food.id,
            )
        )

    budget = make_budget(session, food.id)
    budgets.remove(budget.id)
    assert budgets.list_all() == []
    assert budgets.get(budget.id).is_active is False
    with pytest.raises(NotFoundError):
        BudgetService(session, 2).get(budget.id)


def make_goal(session, target: int = 100_000):
    return GoalService(session, 1).create(
        GoalIn(
            name="Emergency fund",
            target_amount_cents=target,
            start_date=date(2025, 1, 1),
            target_date=date(2025, 12, 31),
        )
    )


def test_goal_completes_when_target_reached() -> None:
    session = make_session()
    goals = GoalService(session, 1)
    goal = make_goal(session)

    partial = goals.update_progress(goal.id, 25_050)
    assert partial.progress_percentage == 25.05
    assert partial.status == GoalStatus.active

    done = goals.update_progress(goal.id, 100_000)
    assert done.progress_percentage == 100.0
    assert done.status == GoalStatus.completed


def test_goal_target_change_recomputes_progress() -> None:
    session = make_session()
    goals = GoalService(session, 1)
    goal = make_goal(session)
    goals.update_progress(goal.id, 50_000)

    updated = goals.update(goal.id, GoalPatch(target_amount_cents=200_000, name="Cushion"))

    assert updated.progress_percentage == 25.0
    assert updated.name == "Cushion"


def test_goal_summary_averages_active_goals() -> None:
    session = make_session()
    goals = GoalService(session, 1)
    first = make_goal(session)
    second = make_goal(session, target=50_000)
    removed = make_goal(session)
    goals.update_progress(first.id, 20_000)
    goals.update_progress(second.id, 50_000)
    goals.update_progress(removed.id, 90_000)
    goals.remove(removed.id)

    summary = goals.summary()

    assert summary["total_goals"] == 2
    assert summary["completed_goals"] == 1
    assert summary["active_goals"] == 1
    assert summary["total_target_amount_cents"] == 150_000
    assert summary["total_current_amount_cents"] == 70_000
    assert summary["average_progress"] == pytest.approx(60.0)


def test_goal_linked_account_must_belong_to_user() -> None:
    session = make_session()
    foreign = AccountService(session, 2).create(AccountIn(name="Theirs"))

    with pytest.raises(NotFoundError):
        GoalService(session, 1).create(
            GoalIn(
                name="Car",
                target_amount_cents=500_000,
                start_date=date(2025, 1, 1),
                target_date=date(2026, 1, 1),
                linked_account_id=foreign.id,
            )
        )


def test_recompute_restores_spent_from_ledger() -> None:
    session = make_session()
    account, food = setup_ledger(session)
    budgets = BudgetService(session, 1)
    budget = make_budget(session, food.id)
    spend(session, account.id, food.id, 2_500, date(2025, 1, 20))
    budget.spent_cents = 0
    budget.remaining_cents = 0
    session.commit()

    restored = budgets.recompute(budget.id)

    assert restored.spent_cents == 2_500
    assert restored.remaining_cents == 17_500


def test_budget_rollup_is_derived_from_stored_spent() -> None:
    session = make_session()
    account, food = setup_ledger(session)
    budgets = BudgetService(session, 1)
    budget = make_budget(session, food.id)
    # Spending written by another session; this session's copy still says 0.
    session.execute(
        update(Budget)
        .where(Budget.id == budget.id)
        .values(spent_cents=Budget.spent_cents + 3_000)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    assert budget.spent_cents == 0

    updated = budgets.update(budget.id, BudgetPatch(amount_cents=10_000))

    stored = session.execute(
        select(Budget.spent_cents, Budget.remaining_cents).where(Budget.id == budget.id)
    ).one()
    assert tuple(stored) == (3_000, 7_000)
    assert (updated.spent_cents, updated.remaining_cents) == (3_000, 7_000)

    spend(session, account.id, food.id, 2_000, date(2025, 1, 15))
    restored = budgets.recompute(budget.id)

    stored = session.execute(
        select(Budget.spent_cents, Budget.remaining_cents).where(Budget.id == budget.id)
    ).one()
    assert tuple(stored) == (2_000, 8_000)
    assert (restored.spent_cents, restored.remaining_cents) == (2_000, 8_000)
