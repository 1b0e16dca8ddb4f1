import random
from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    Account,
    AccountType,
    Budget,
    CategoryType,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    TransactionIn,
    TransactionPatch,
    TransactionQuery,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ForbiddenError,
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


def balance(session, account_id: int) -> int:
    return session.scalar(
        select(Account.balance_cents).where(Account.id == account_id)
    )


def seed(session, user_id: int = 1):
    accounts = AccountService(session, user_id)
    checking = accounts.create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance_cents=10_000)
    )
    savings = accounts.create(
        AccountIn(name="Savings", type=AccountType.savings, initial_balance_cents=2_000)
    )
    categories = CategoryService(session, user_id)
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    return checking, savings, food, salary


def test_expense_create_edit_delete_moves_balance() -> None:
    session = make_session()
    checking, _, food, _ = seed(session)
    txns = TransactionService(session, 1)

    txn = txns.create(
        TransactionIn(
            amount_cents=3_000,
            type=TransactionType.expense,
            date=date(2025, 1, 5),
            account_id=checking.id,
            category_id=food.id,
            description="Groceries",
        )
    )
    assert balance(session, checking.id) == 7_000

    txns.update(txn.id, TransactionPatch(amount_cents=5_000))
    assert balance(session, checking.id) == 5_000

    txns.delete(txn.id)
    assert balance(session, checking.id) == 10_000


def test_transfer_moves_money_between_accounts() -> None:
    session = make_session()
    checking, savings, food, _ = seed(session)

    txn = TransactionService(session, 1).create(
        TransactionIn(
            amount_cents=4_000,
            type=TransactionType.transfer,
            date=date(2025, 1, 6),
            account_id=checking.id,
            to_account_id=savings.id,
            category_id=food.id,
        )
    )

    assert balance(session, checking.id) == 6_000
    assert balance(session, savings.id) == 6_000
    assert txn.to_account.id == savings.id
    assert txn.account.name == "Checking"


def test_edit_is_equivalent_to_delete_and_recreate() -> None:
    session = make_session()
    checking, savings, food, salary = seed(session)
    txns = TransactionService(session, 1)

    txn = txns.create(
        TransactionIn(
            amount_cents=1_500,
            type=TransactionType.expense,
            date=date(2025, 2, 1),
            account_id=checking.id,
            category_id=food.id,
        )
    )
    txns.update(
        txn.id,
        TransactionPatch(
            type=TransactionType.income,
            amount_cents=2_500,
            account_id=savings.id,
            category_id=salary.id,
        ),
    )

    assert balance(session, checking.id) == 10_000
    assert balance(session, savings.id) == 4_500


def test_changing_transfer_to_expense_clears_destination() -> None:
    session = make_session()
    checking, savings, food, _ = seed(session)
    txns = TransactionService(session, 1)

    txn = txns.create(
        TransactionIn(
            amount_cents=4_000,
            type=TransactionType.transfer,
            date=date(2025, 1, 6),
            account_id=checking.id,
            to_account_id=savings.id,
            category_id=food.id,
        )
    )
    updated = txns.update(txn.id, TransactionPatch(type=TransactionType.expense))

    assert updated.to_account_id is None
    assert updated.to_account is None
    assert balance(session, checking.id) == 6_000
    assert balance(session, savings.id) == 2_000


def test_non_transfer_ignores_destination() -> None:
    session = make_session()
    checking, savings, _, salary = seed(session)

    txn = TransactionService(session, 1).create(
        TransactionIn(
            amount_cents=1_000,
            type=TransactionType.income,
            date=date(2025, 1, 6),
            account_id=checking.id,
            to_account_id=savings.id,
            category_id=salary.id,
        )
    )

    assert txn.to_account_id is None
    assert balance(session, checking.id) == 11_000
    assert balance(session, savings.id) == 2_000


def test_transfer_without_destination_is_rejected_without_side_effects() -> None:
    session = make_session()
    checking, savings, food, _ = seed(session)
    txns = TransactionService(session, 1)

    with pytest.raises(InvalidArgumentError):
        txns.create(
            TransactionIn(
                amount_cents=4_000,
                type=TransactionType.transfer,
                date=date(2025, 1, 6),
                account_id=checking.id,
                category_id=food.id,
            )
        )
    with pytest.raises(InvalidArgumentError):
        txns.create(
            TransactionIn(
                amount_cents=4_000,
                type=TransactionType.transfer,
                date=date(2025, 1, 6),
                account_id=checking.id,
                to_account_id=checking.id,
                category_id=food.id,
            )
        )

    assert balance(session, checking.id) == 10_000
    assert balance(session, savings.id) == 2_000
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_patch_to_transfer_requires_destination() -> None:
    session = make_session()
    checking, _, food, _ = seed(session)
    txns = TransactionService(session, 1)
    txn = txns.create(
        TransactionIn(
            amount_cents=1_000,
            type=TransactionType.expense,
            date=date(2025, 1, 6),
            account_id=checking.id,
            category_id=food.id,
        )
    )

    with pytest.raises(InvalidArgumentError):
        txns.update(txn.id, TransactionPatch(type=TransactionType.transfer))

    assert balance(session, checking.id) == 9_000
    assert txns.get(txn.id).type == TransactionType.expense


def test_double_delete_raises_not_found() -> None:
    session = make_session()
    checking, _, food, _ = seed(session)
    txns = TransactionService(session, 1)
    txn = txns.create(
        TransactionIn(
            amount_cents=1_000,
            type=TransactionType.expense,
            date=date(2025, 1, 6),
            account_id=checking.id,
            category_id=food.id,
        )
    )

    txns.delete(txn.id)
    with pytest.raises(NotFoundError):
        txns.delete(txn.id)
    assert balance(session, checking.id) == 10_000


def test_accounts_and_transactions_are_scoped_to_owner() -> None:
    session = make_session()
    checking, _, food, _ = seed(session, user_id=1)
    _, _, other_food, _ = seed(session, user_id=2)

    txn = TransactionService(session, 1).create(
        TransactionIn(
            amount_cents=1_000,
            type=TransactionType.expense,
            date=date(2025, 1, 6),
            account_id=checking.id,
            category_id=food.id,
        )
    )

    outsider = TransactionService(session, 2)
    with pytest.raises(NotFoundError):
        outsider.get(txn.id)
    with pytest.raises(NotFoundError):
        AccountService(session, 2).get(checking.id)
    with pytest.raises(ForbiddenError):
        TransactionService(session, 1).create(
            TransactionIn(
                amount_cents=1_000,
                type=TransactionType.expense,
                date=date(2025, 1, 6),
                account_id=checking.id,
                category_id=other_food.id,
            )
        )


def test_ownerless_category_is_usable_by_everyone() -> None:
    session = make_session()
    checking, _, _, _ = seed(session)
    shared = CategoryService(session, 1).create(
        CategoryIn(name="Misc", type=CategoryType.expense)
    )
    shared.user_id = None
    session.commit()

    txn = TransactionService(session, 1).create(
        TransactionIn(
            amount_cents=500,
            type=TransactionType.expense,
            date=date(2025, 1, 6),
            account_id=checking.id,
            category_id=shared.id,
        )
    )

    assert txn.category.name == "Misc"
    assert shared in CategoryService(session, 2).list_all()


def test_list_sorts_paginates_and_searches() -> None:
    session = make_session()
    checking, _, food, _ = seed(session)
    txns = TransactionService(session, 1)
    for day, amount, text in [
        (3, 700, "Coffee beans"),
        (1, 300, "Bakery"),
        (2, 900, "Supermarket"),
    ]:
        txns.create(
            TransactionIn(
                amount_cents=amount,
                type=TransactionType.expense,
                date=date(2025, 3, day),
                account_id=checking.id,
                category_id=food.id,
                description=text,
            )
        )

    page = txns.list(TransactionQuery(sort_by="amount", sort_order="asc", limit=2))
    assert [t.amount_cents for t in page["items"]] == [300, 700]
    assert page["total"] == 3
    assert page["total_pages"] == 2

    fallback = txns.list(TransactionQuery(sort_by="account_id; drop table"))
    assert [t.date.day for t in fallback["items"]] == [3, 2, 1]

    second = txns.list(TransactionQuery(sort_by="amount", page=2, limit=2))
    assert [t.amount_cents for t in second["items"]] == [300]

    found = txns.list(TransactionQuery(search="COFFEE"))
    assert [t.description for t in found["items"]] == ["Coffee beans"]

    ranged = txns.list(TransactionQuery(min_amount_cents=500, max_amount_cents=800))
    assert [t.amount_cents for t in ranged["items"]] == [700]


def test_summary_excludes_transfers_from_totals() -> None:
    session = make_session()
    checking, savings, food, salary = seed(session)
    txns = TransactionService(session, 1)
    txns.create(
        TransactionIn(
            amount_cents=10_000,
            type=TransactionType.income,
            date=date(2025, 4, 1),
            account_id=checking.id,
            category_id=salary.id,
        )
    )
    txns.create(
        TransactionIn(
            amount_cents=3_000,
            type=TransactionType.expense,
            date=date(2025, 4, 2),
            account_id=checking.id,
            category_id=food.id,
        )
    )
    txns.create(
        TransactionIn(
            amount_cents=4_000,
            type=TransactionType.transfer,
            date=date(2025, 4, 3),
            account_id=checking.id,
            to_account_id=savings.id,
            category_id=food.id,
        )
    )

    summary = txns.summary(date(2025, 4, 1), date(2025, 4, 30))
    assert summary["total_income_cents"] == 10_000
    assert summary["total_expenses_cents"] == 3_000
    assert summary["net_income_cents"] == 7_000
    assert summary["transaction_count"] == 3
    assert summary["by_category"][food.id]["amount_cents"] == 7_000

    expenses_only = txns.summary(
        date(2025, 4, 1), date(2025, 4, 30), TransactionType.expense
    )
    assert expenses_only["transaction_count"] == 1
    assert expenses_only["by_category"][food.id]["amount_cents"] == 3_000


def test_failed_transfer_leg_rolls_back_everything(monkeypatch) -> None:
    session = make_session()
    checking, savings, food, _ = seed(session)
    txns = TransactionService(session, 1)
    real_adjust = AccountService.adjust
    calls = []

    def adjust_then_fail(self, account_id: int, delta_cents: int):
        calls.append(account_id)
        if len(calls) == 2:
            raise NotFoundError("Account not found")
        return real_adjust(self, account_id, delta_cents)

    monkeypatch.setattr(AccountService, "adjust", adjust_then_fail)

    with pytest.raises(NotFoundError):
        txns.create(
            TransactionIn(
                amount_cents=4_000,
                type=TransactionType.transfer,
                date=date(2025, 1, 6),
                account_id=checking.id,
                to_account_id=savings.id,
                category_id=food.id,
            )
        )

    assert calls == [checking.id, savings.id]
    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert balance(session, checking.id) == 10_000
    assert balance(session, savings.id) == 2_000


def test_random_edit_sequence_keeps_balances_and_budget_in_step() -> None:
    session = make_session()
    checking, savings, food, salary = seed(session)
    budget = BudgetService(session, 1).create(
        BudgetIn(
            name="Food Jan",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
            category_id=food.id,
        )
    )
    txns = TransactionService(session, 1)
    rng = random.Random(20251019)
    account_ids = [checking.id, savings.id]
    live: list[int] = []

    def random_fields() -> dict:
        txn_type = rng.choice(list(TransactionType))
        source = rng.choice(account_ids)
        return {
            "amount_cents": rng.randint(0, 9_999),
            "type": txn_type,
            "date": date(2025, rng.randint(1, 2), rng.randint(1, 28)),
            "account_id": source,
            "category_id": salary.id if txn_type == TransactionType.income else food.id,
            "to_account_id": next(a for a in account_ids if a != source)
            if txn_type == TransactionType.transfer
            else None,
        }

    for _ in range(200):
        action = rng.choice(["create", "create", "update", "delete"]) if live else "create"
        if action == "create":
            live.append(txns.create(TransactionIn(**random_fields())).id)
        elif action == "update":
            txns.update(rng.choice(live), TransactionPatch(**random_fields()))
        else:
            txns.delete(live.pop(rng.randrange(len(live))))

    assert AccountService(session, 1).reconcile() == []
    assert session.scalar(select(func.count(Transaction.id))) == len(live)

    ledger_spent = session.scalar(
        select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.type == TransactionType.expense,
            Transaction.category_id == food.id,
            Transaction.date.between(date(2025, 1, 1), date(2025, 1, 31)),
        )
    )
    spent, remaining = session.execute(
        select(Budget.spent_cents, Budget.remaining_cents).where(Budget.id == budget.id)
    ).one()
    assert spent == ledger_spent
    assert remaining == 50_000 - ledger_spent
