from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidReferenceError, NotFoundError, ValidationError
from periods import Period
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    DateRangeQuery,
    ExpenseIn,
    PaginationQuery,
)
from services import BudgetService, CategoryService, ExpenseService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _budget(category_id: str, **overrides) -> BudgetIn:
    values = {
        "name": "Monthly Groceries",
        "amount": Decimal("500"),
        "start_date": date(2025, 1, 1),
        "end_date": date(2025, 1, 31),
        "category_id": category_id,
    }
    values.update(overrides)
    return BudgetIn(**values)


def _expense(category_id: str, amount: str, on: date, budget_id=None) -> ExpenseIn:
    return ExpenseIn(
        amount=Decimal(amount),
        description="Shopping",
        date=on,
        category_id=category_id,
        budget_id=budget_id,
    )


def test_budget_detail_reports_spent_and_remaining() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    budgets = BudgetService(session, "user-a")
    budget = budgets.create(_budget(food.id))

    expenses = ExpenseService(session, "user-a")
    expenses.create(_expense(food.id, "100", date(2025, 1, 3), budget.id))
    expenses.create(_expense(food.id, "50", date(2025, 1, 9), budget.id))
    expenses.create(_expense(food.id, "999", date(2025, 1, 9)))

    detail = budgets.detail(budget.id)

    assert detail.balance.total_spent == Decimal("150")
    assert detail.balance.remaining == Decimal("350")
    assert [e.amount for e in detail.expenses] == [Decimal("50"), Decimal("100")]
    assert detail.budget.category.name == "Food"


def test_budget_with_foreign_category_is_invalid_reference() -> None:
    session = make_session()
    other = CategoryService(session, "user-b").create(CategoryIn(name="Food"))

    with pytest.raises(InvalidReferenceError, match="Invalid category"):
        BudgetService(session, "user-a").create(_budget(other.id))


def test_budget_of_another_owner_is_not_found() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    budget = BudgetService(session, "user-a").create(_budget(food.id))

    with pytest.raises(NotFoundError, match="Budget not found"):
        BudgetService(session, "user-b").detail(budget.id)


def test_update_checks_dates_against_stored_values() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    budgets = BudgetService(session, "user-a")
    budget = budgets.create(_budget(food.id))

    with pytest.raises(ValidationError) as exc_info:
        budgets.update(budget.id, BudgetUpdate(end_date=date(2024, 12, 31)))
    assert exc_info.value.errors[0]["field"] == "end_date"

    updated = budgets.update(
        budget.id, BudgetUpdate(amount=Decimal("650"), end_date=date(2025, 2, 28))
    )
    assert updated.amount == Decimal("650")
    assert updated.end_date == date(2025, 2, 28)
    assert updated.name == "Monthly Groceries"


def test_update_rejects_foreign_category() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    other = CategoryService(session, "user-b").create(CategoryIn(name="Other"))
    budgets = BudgetService(session, "user-a")
    budget = budgets.create(_budget(food.id))

    with pytest.raises(InvalidReferenceError):
        budgets.update(budget.id, BudgetUpdate(category_id=other.id))


def test_deleting_budget_clears_expense_reference() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    budgets = BudgetService(session, "user-a")
    budget = budgets.create(_budget(food.id))
    expenses = ExpenseService(session, "user-a")
    expense = expenses.create(_expense(food.id, "20", date(2025, 1, 2), budget.id))

    budgets.delete(budget.id)
    session.expire_all()

    assert expenses.get(expense.id).budget_id is None
    with pytest.raises(NotFoundError):
        budgets.get(budget.id)


def test_list_filters_by_date_range() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    budgets = BudgetService(session, "user-a")
    budgets.create(_budget(food.id, name="January"))
    budgets.create(
        _budget(
            food.id,
            name="February",
            start_date=date(2025, 2, 1),
            end_date=date(2025, 2, 28),
        )
    )
    budgets.create(
        _budget(
            food.id,
            name="Quarter",
            start_date=date(2025, 1, 1),
            end_date=date(2025, 3, 31),
        )
    )

    page = budgets.list(
        PaginationQuery(),
        DateRangeQuery(start_date=date(2025, 1, 1), end_date=date(2025, 2, 28)),
    )
    assert page.count == 2
    assert [b.name for b in page.items] == ["February", "January"]

    everything = budgets.list(PaginationQuery(), DateRangeQuery())
    assert everything.count == 3


def test_summary_counts_only_expenses_inside_period() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    budgets = BudgetService(session, "user-a")
    january = budgets.create(_budget(food.id, name="January", amount=Decimal("300")))
    budgets.create(
        _budget(
            food.id,
            name="March",
            start_date=date(2025, 3, 1),
            end_date=date(2025, 3, 31),
        )
    )
    expenses = ExpenseService(session, "user-a")
    expenses.create(_expense(food.id, "100", date(2025, 1, 10), january.id))
    expenses.create(_expense(food.id, "25.50", date(2025, 1, 20), january.id))
    expenses.create(_expense(food.id, "50", date(2025, 2, 2), january.id))

    rows = budgets.summary(Period(date(2025, 1, 1), date(2025, 1, 31)))

    assert len(rows) == 1
    row = rows[0]
    assert row["budget_id"] == january.id
    assert row["category_name"] == "Food"
    assert row["budget_amount"] == Decimal("300")
    assert row["total_spent"] == Decimal("125.50")
    assert row["remaining"] == Decimal("174.50")


def test_summary_includes_budgets_without_spend() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    BudgetService(session, "user-a").create(_budget(food.id))

    rows = BudgetService(session, "user-a").summary(
        Period(date(2025, 1, 15), date(2025, 2, 15))
    )

    assert [r["total_spent"] for r in rows] == [Decimal("0")]
    assert rows[0]["remaining"] == Decimal("500")
    assert BudgetService(session, "user-b").summary(
        Period(date(2025, 1, 1), date(2025, 1, 31))
    ) == []
