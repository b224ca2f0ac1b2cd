from datetime import date
from decimal import Decimal
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidReferenceError, NotFoundError
from periods import Period
from schemas import (
    BudgetIn,
    CategoryIn,
    ExpenseIn,
    ExpenseUpdate,
    PaginationQuery,
)
from services import BudgetService, CategoryService, ExpenseFilters, ExpenseService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_create_expense_defaults_to_today_and_loads_names() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))

    expense = ExpenseService(session, "user-a").create(
        ExpenseIn(amount=Decimal("9.99"), description="Coffee beans", category_id=food.id)
    )

    assert expense.user_id == "user-a"
    assert expense.date == date.today()
    assert expense.amount == Decimal("9.99")
    assert expense.category.name == "Food"
    assert expense.budget is None


def test_foreign_category_is_invalid_reference_not_missing() -> None:
    session = make_session()
    other = CategoryService(session, "user-b").create(CategoryIn(name="Food"))

    with pytest.raises(InvalidReferenceError, match="Invalid category") as exc_info:
        ExpenseService(session, "user-a").create(
            ExpenseIn(amount=1, description="Snack", category_id=other.id)
        )
    assert not isinstance(exc_info.value, NotFoundError)


def test_unknown_budget_is_invalid_reference() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))

    with pytest.raises(InvalidReferenceError, match="Invalid budget"):
        ExpenseService(session, "user-a").create(
            ExpenseIn(
                amount=1,
                description="Snack",
                category_id=food.id,
                budget_id=uuid.uuid4(),
            )
        )


def test_update_checks_references_and_existence() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    other = CategoryService(session, "user-b").create(CategoryIn(name="Other"))
    expenses = ExpenseService(session, "user-a")
    expense = expenses.create(
        ExpenseIn(amount=5, description="Bread", date=date(2025, 1, 2), category_id=food.id)
    )

    with pytest.raises(InvalidReferenceError):
        expenses.update(expense.id, ExpenseUpdate(category_id=other.id))
    with pytest.raises(NotFoundError, match="Expense not found"):
        expenses.update(str(uuid.uuid4()), ExpenseUpdate(description="Rolls"))
    with pytest.raises(NotFoundError):
        ExpenseService(session, "user-b").get(expense.id)


def test_update_moves_expense_between_category_and_budget() -> None:
    session = make_session()
    categories = CategoryService(session, "user-a")
    food = categories.create(CategoryIn(name="Food"))
    travel = categories.create(CategoryIn(name="Travel"))
    budget = BudgetService(session, "user-a").create(
        BudgetIn(
            name="Trip",
            amount=800,
            start_date=date(2025, 6, 1),
            end_date=date(2025, 6, 30),
            category_id=travel.id,
        )
    )
    expenses = ExpenseService(session, "user-a")
    expense = expenses.create(
        ExpenseIn(amount=40, description="Train", date=date(2025, 6, 3), category_id=food.id)
    )

    moved = expenses.update(
        expense.id, ExpenseUpdate(category_id=travel.id, budget_id=budget.id)
    )
    assert moved.category.name == "Travel"
    assert moved.budget.name == "Trip"
    assert moved.description == "Train"

    cleared = expenses.update(expense.id, ExpenseUpdate(budget_id=None))
    assert cleared.budget_id is None


def test_summary_groups_by_category_largest_first() -> None:
    session = make_session()
    categories = CategoryService(session, "user-a")
    food = categories.create(CategoryIn(name="Food"))
    travel = categories.create(CategoryIn(name="Travel"))
    expenses = ExpenseService(session, "user-a")
    expenses.create(ExpenseIn(amount=30, description="Bus", date=date(2025, 3, 1), category_id=travel.id))
    expenses.create(ExpenseIn(amount=100, description="Market", date=date(2025, 3, 2), category_id=food.id))
    expenses.create(ExpenseIn(amount=50, description="Bakery", date=date(2025, 3, 3), category_id=food.id))
    expenses.create(ExpenseIn(amount=70, description="Old", date=date(2025, 2, 28), category_id=travel.id))

    other_food = CategoryService(session, "user-b").create(CategoryIn(name="Food"))
    ExpenseService(session, "user-b").create(
        ExpenseIn(amount=500, description="Feast", date=date(2025, 3, 2), category_id=other_food.id)
    )

    totals = expenses.summary(Period(date(2025, 3, 1), date(2025, 3, 31)))

    assert [(t.name, t.total) for t in totals] == [
        ("Food", Decimal("150")),
        ("Travel", Decimal("30")),
    ]
    assert totals[0].id == food.id


def test_list_filters_by_category_and_dates() -> None:
    session = make_session()
    categories = CategoryService(session, "user-a")
    food = categories.create(CategoryIn(name="Food"))
    travel = categories.create(CategoryIn(name="Travel"))
    expenses = ExpenseService(session, "user-a")
    for day in (1, 5, 9):
        expenses.create(ExpenseIn(amount=day, description=f"Food {day}", date=date(2025, 4, day), category_id=food.id))
    expenses.create(ExpenseIn(amount=3, description="Taxi", date=date(2025, 4, 5), category_id=travel.id))

    page = expenses.list(
        PaginationQuery(),
        ExpenseFilters(
            start_date=date(2025, 4, 2),
            end_date=date(2025, 4, 30),
            category_id=food.id,
        ),
    )
    assert page.count == 2
    assert [e.description for e in page.items] == ["Food 9", "Food 5"]

    first = expenses.list(PaginationQuery(page=1, limit=3), ExpenseFilters())
    assert first.count == 4
    assert len(first.items) == 3


def test_delete_expense() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    expenses = ExpenseService(session, "user-a")
    expense = expenses.create(ExpenseIn(amount=2, description="Gum", category_id=food.id))

    with pytest.raises(NotFoundError):
        ExpenseService(session, "user-b").delete(expense.id)

    expenses.delete(expense.id)
    with pytest.raises(NotFoundError):
        expenses.get(expense.id)


def test_update_rejects_unknown_or_foreign_budget() -> None:
    session = make_session()
    food = CategoryService(session, "user-a").create(CategoryIn(name="Food"))
    other_category = CategoryService(session, "user-b").create(CategoryIn(name="Food"))
    foreign_budget = BudgetService(session, "user-b").create(
        BudgetIn(
            name="Theirs",
            amount=100,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
            category_id=other_category.id,
        )
    )
    expenses = ExpenseService(session, "user-a")
    expense = expenses.create(
        ExpenseIn(amount=5, description="Bread", date=date(2025, 1, 2), category_id=food.id)
    )

    for budget_id in (foreign_budget.id, str(uuid.uuid4())):
        with pytest.raises(InvalidReferenceError, match="Invalid budget"):
            expenses.update(expense.id, ExpenseUpdate(budget_id=budget_id))

    assert expenses.get(expense.id).budget_id is None
