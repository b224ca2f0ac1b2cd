from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from functools import wraps
from typing import Any, Callable, Optional, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from aggregation import (
    BudgetBalance,
    CategoryTotal,
    as_decimal,
    budget_balance,
    summarize_by_category,
)
from errors import (
    BackendError,
    ConflictError,
    InvalidReferenceError,
    NotFoundError,
    ValidationError,
)
from models import Budget, Category, Expense
from periods import Period
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    DateRangeQuery,
    ExpenseIn,
    ExpenseUpdate,
    PaginationQuery,
)


logger = logging.getLogger(__name__)

CATEGORY_NAME_CONFLICT = "A category with this name already exists"
CATEGORY_IN_USE = "Category is still used by budgets or expenses"

F = TypeVar("F", bound=Callable[..., Any])


def backend_call(conflict: Optional[str] = None) -> Callable[[F], F]:
    """Translate store failures raised inside a service method.

    An ``IntegrityError`` becomes a ``ConflictError`` carrying ``conflict``
    when one is given; every other store failure becomes a ``BackendError``.
    The session is rolled back before the domain error is raised.
    """

    def decorator(fn: F) -> F:
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except IntegrityError as exc:
                self.session.rollback()
                if conflict is None:
                    logger.error(f"integrity_error: call={fn.__qualname__} error={exc.orig}")
                    raise BackendError(str(exc.orig)) from exc
                logger.info(f"conflict: call={fn.__qualname__} user_id={self.user_id}")
                raise ConflictError(conflict) from exc
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.error(f"backend_error: call={fn.__qualname__} error={exc}")
                raise BackendError(str(exc)) from exc

        return wrapper  # type: ignore[return-value]

    return decorator


def _as_id(value: Any) -> Any:
    return str(value) if isinstance(value, UUID) else value


def _normalized_changes(changes: dict[str, Any]) -> dict[str, Any]:
    return {key: _as_id(value) for key, value in changes.items()}


@dataclass
class Page:
    items: Sequence[Any]
    count: int


@dataclass
class ExpenseFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category_id: Optional[str] = None


@dataclass
class BudgetDetail:
    budget: Budget
    balance: BudgetBalance
    expenses: list[Expense] = field(default_factory=list)


def _paginate(
    session: Session,
    stmt: Select,
    pagination: PaginationQuery,
    *options: Any,
) -> Page:
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    count = int(session.execute(count_stmt).scalar_one() or 0)
    page_stmt = stmt.options(*options).offset(pagination.offset).limit(pagination.limit)
    items = session.scalars(page_stmt).unique().all()
    return Page(items=items, count=count)


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    @backend_call()
    def list(self, pagination: PaginationQuery) -> Page:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name.asc(), Category.id.asc())
        )
        return _paginate(self.session, stmt, pagination)

    @backend_call()
    def get(self, category_id: str) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )
        if not category:
            raise NotFoundError("Category not found")
        return category

    @backend_call(conflict=CATEGORY_NAME_CONFLICT)
    def create(self, data: CategoryIn) -> Category:
        category = Category(
            user_id=self.user_id,
            name=data.name,
            description=data.description,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        logger.info(f"category_created: id={category.id} user_id={self.user_id}")
        return category

    @backend_call(conflict=CATEGORY_NAME_CONFLICT)
    def update(self, category_id: str, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        for key, value in data.changes().items():
            setattr(category, key, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    @backend_call(conflict=CATEGORY_IN_USE)
    def delete(self, category_id: str) -> None:
        category = self.get(category_id)
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: id={category_id} user_id={self.user_id}")


def _owned_category(session: Session, user_id: str, category_id: str) -> Optional[str]:
    return session.scalar(
        select(Category.id).where(
            Category.id == category_id, Category.user_id == user_id
        )
    )


def _owned_budget(session: Session, user_id: str, budget_id: str) -> Optional[str]:
    return session.scalar(
        select(Budget.id).where(Budget.id == budget_id, Budget.user_id == user_id)
    )


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _require_category(self, category_id: str) -> None:
        if not _owned_category(self.session, self.user_id, category_id):
            raise InvalidReferenceError("Invalid category")

    @backend_call()
    def list(self, pagination: PaginationQuery, date_range: DateRangeQuery) -> Page:
        stmt = select(Budget).where(Budget.user_id == self.user_id)
        if date_range.start_date:
            stmt = stmt.where(Budget.start_date >= date_range.start_date)
        if date_range.end_date:
            stmt = stmt.where(Budget.end_date <= date_range.end_date)
        stmt = stmt.order_by(Budget.start_date.desc(), Budget.name.asc())
        return _paginate(
            self.session, stmt, pagination, joinedload(Budget.category)
        )

    @backend_call()
    def get(self, budget_id: str) -> Budget:
        budget = self.session.scalar(
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.id == budget_id, Budget.user_id == self.user_id)
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    @backend_call()
    def detail(self, budget_id: str) -> BudgetDetail:
        budget = self.get(budget_id)
        expenses = self.session.scalars(
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.budget_id == budget.id, Expense.user_id == self.user_id)
            .order_by(Expense.date.desc(), Expense.created_at.desc())
        ).all()
        return BudgetDetail(
            budget=budget,
            balance=budget_balance(budget.amount, expenses),
            expenses=list(expenses),
        )

    @backend_call()
    def create(self, data: BudgetIn) -> Budget:
        category_id = str(data.category_id)
        self._require_category(category_id)
        budget = Budget(
            user_id=self.user_id,
            name=data.name,
            amount=data.amount,
            start_date=data.start_date,
            end_date=data.end_date,
            category_id=category_id,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(f"budget_created: id={budget.id} user_id={self.user_id}")
        return budget

    @backend_call()
    def update(self, budget_id: str, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        changes = _normalized_changes(data.changes())
        if "category_id" in changes:
            self._require_category(changes["category_id"])

        start_date = changes.get("start_date", budget.start_date)
        end_date = changes.get("end_date", budget.end_date)
        if end_date < start_date:
            raise ValidationError.for_field(
                "end_date", "End date must be after start date"
            )

        for key, value in changes.items():
            setattr(budget, key, value)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    @backend_call()
    def delete(self, budget_id: str) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: id={budget_id} user_id={self.user_id}")

    @backend_call()
    def summary(self, period: Period) -> list[dict[str, Any]]:
        """Spend against every budget whose span overlaps ``period``.

        The grouping and arithmetic run in the store as a single aggregate
        query; only expenses dated inside the period count as spent.
        """
        spent = func.coalesce(func.sum(Expense.amount), 0)
        stmt = (
            select(
                Budget.id.label("budget_id"),
                Budget.name.label("budget_name"),
                Category.id.label("category_id"),
                Category.name.label("category_name"),
                Budget.amount.label("budget_amount"),
                spent.label("total_spent"),
                (Budget.amount - spent).label("remaining"),
            )
            .join(Category, Budget.category_id == Category.id)
            .outerjoin(
                Expense,
                and_(
                    Expense.budget_id == Budget.id,
                    Expense.user_id == self.user_id,
                    Expense.date.between(period.start, period.end),
                ),
            )
            .where(
                Budget.user_id == self.user_id,
                Budget.start_date <= period.end,
                Budget.end_date >= period.start,
            )
            .group_by(
                Budget.id,
                Budget.name,
                Budget.start_date,
                Budget.amount,
                Category.id,
                Category.name,
            )
            .order_by(Budget.start_date.desc(), Budget.name.asc())
        )
        rows = []
        for row in self.session.execute(stmt):
            data = dict(row._mapping)
            for key in ("budget_amount", "total_spent", "remaining"):
                data[key] = as_decimal(data[key])
            rows.append(data)
        return rows


class ExpenseService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _check_references(
        self, category_id: Optional[str], budget_id: Optional[str]
    ) -> None:
        if category_id and not _owned_category(
            self.session, self.user_id, category_id
        ):
            raise InvalidReferenceError("Invalid category")
        if budget_id and not _owned_budget(self.session, self.user_id, budget_id):
            raise InvalidReferenceError("Invalid budget")

    @backend_call()
    def list(self, pagination: PaginationQuery, filters: ExpenseFilters) -> Page:
        stmt = select(Expense).where(Expense.user_id == self.user_id)
        if filters.start_date:
            stmt = stmt.where(Expense.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Expense.date <= filters.end_date)
        if filters.category_id:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        stmt = stmt.order_by(Expense.date.desc(), Expense.created_at.desc())
        return _paginate(
            self.session,
            stmt,
            pagination,
            joinedload(Expense.category),
            joinedload(Expense.budget),
        )

    @backend_call()
    def get(self, expense_id: str) -> Expense:
        expense = self.session.scalar(
            select(Expense)
            .options(joinedload(Expense.category), joinedload(Expense.budget))
            .where(Expense.id == expense_id, Expense.user_id == self.user_id)
        )
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    @backend_call()
    def create(self, data: ExpenseIn) -> Expense:
        category_id = str(data.category_id)
        budget_id = _as_id(data.budget_id)
        self._check_references(category_id, budget_id)
        expense = Expense(
            user_id=self.user_id,
            amount=data.amount,
            description=data.description,
            date=data.date,
            category_id=category_id,
            budget_id=budget_id,
        )
        self.session.add(expense)
        self.session.commit()
        logger.info(f"expense_created: id={expense.id} user_id={self.user_id}")
        return self.get(expense.id)

    @backend_call()
    def update(self, expense_id: str, data: ExpenseUpdate) -> Expense:
        changes = _normalized_changes(data.changes())
        self._check_references(changes.get("category_id"), changes.get("budget_id"))
        expense = self.get(expense_id)
        for key, value in changes.items():
            setattr(expense, key, value)
        self.session.commit()
        self.session.expire(expense)
        return self.get(expense_id)

    @backend_call()
    def delete(self, expense_id: str) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()
        logger.info(f"expense_deleted: id={expense_id} user_id={self.user_id}")

    @backend_call()
    def summary(self, period: Period) -> list[CategoryTotal]:
        expenses = self.session.scalars(
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == self.user_id,
                Expense.date.between(period.start, period.end),
            )
            .order_by(Expense.date.asc(), Expense.created_at.asc())
        ).all()
        return summarize_by_category(expenses)
