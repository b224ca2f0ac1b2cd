from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Union

from errors import BackendError
from models import Expense


Amount = Union[Decimal, int, float, str]


@dataclass
class CategoryTotal:
    id: str
    name: str
    total: Decimal


@dataclass(frozen=True)
class BudgetBalance:
    total_spent: Decimal
    remaining: Decimal


def as_decimal(value: Amount) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def summarize_by_category(expenses: Iterable[Expense]) -> list[CategoryTotal]:
    """Group expenses by category and total them, largest total first.

    Equal totals keep the order in which their category was first seen.
    """
    groups: dict[str, CategoryTotal] = {}
    for expense in expenses:
        category = expense.category
        if category is None:
            raise BackendError(f"Expense {expense.id} has no linked category")
        group = groups.get(category.id)
        if group is None:
            group = CategoryTotal(id=category.id, name=category.name, total=Decimal("0"))
            groups[category.id] = group
        group.total += as_decimal(expense.amount)
    return sorted(groups.values(), key=lambda g: g.total, reverse=True)


def budget_balance(amount: Amount, expenses: Iterable[Expense]) -> BudgetBalance:
    total_spent = sum((as_decimal(e.amount) for e in expenses), Decimal("0"))
    return BudgetBalance(
        total_spent=total_spent, remaining=as_decimal(amount) - total_spent
    )
