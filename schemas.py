import datetime as dt
from decimal import Decimal
from typing import Any, ClassVar, Optional
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)


DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def _check_date_order(
    end_date: Optional[dt.date], info: ValidationInfo
) -> Optional[dt.date]:
    start_date = info.data.get("start_date")
    if start_date is not None and end_date is not None and end_date < start_date:
        raise ValueError("End date must be after start date")
    return end_date


class PartialUpdate(BaseModel):
    """Base for PATCH payloads: every field optional, only sent fields apply."""

    nullable_fields: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_null_required(self) -> "PartialUpdate":
        for name in sorted(self.model_fields_set):
            if getattr(self, name) is None and name not in self.nullable_fields:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CategoryIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class CategoryUpdate(PartialUpdate):
    model_config = ConfigDict(str_strip_whitespace=True)
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"description"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class BudgetIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    start_date: dt.date
    end_date: dt.date
    category_id: UUID

    @field_validator("end_date")
    @classmethod
    def _end_after_start(
        cls, value: Optional[dt.date], info: ValidationInfo
    ) -> Optional[dt.date]:
        return _check_date_order(value, info)


class BudgetUpdate(PartialUpdate):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    category_id: Optional[UUID] = None

    @field_validator("end_date")
    @classmethod
    def _end_after_start(
        cls, value: Optional[dt.date], info: ValidationInfo
    ) -> Optional[dt.date]:
        return _check_date_order(value, info)


class ExpenseIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=255)
    date: dt.date = Field(default_factory=dt.date.today)
    category_id: UUID
    budget_id: Optional[UUID] = None


class ExpenseUpdate(PartialUpdate):
    model_config = ConfigDict(str_strip_whitespace=True)
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"budget_id"})

    amount: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )
    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    date: Optional[dt.date] = None
    category_id: Optional[UUID] = None
    budget_id: Optional[UUID] = None


class PaginationQuery(BaseModel):
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    # Malformed values fall back to the defaults instead of failing.
    @field_validator("page", "limit", mode="before")
    @classmethod
    def _coerce(cls, value: Any, info: ValidationInfo) -> int:
        default = DEFAULT_PAGE if info.field_name == "page" else DEFAULT_LIMIT
        try:
            number = int(value)
        except (TypeError, ValueError):
            return default
        if number < 1:
            return default
        if info.field_name == "limit":
            return min(number, MAX_LIMIT)
        return number

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class DateRangeQuery(BaseModel):
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _blank_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value
