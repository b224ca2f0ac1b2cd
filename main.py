import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from aggregation import CategoryTotal
from auth import TokenVerifier, resolve_user_id
from config import Settings, get_settings
from database import Database
from errors import ServiceError, ValidationError
from models import Budget, Category, Expense
from periods import resolve_period
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
from services import (
    BudgetDetail,
    BudgetService,
    CategoryService,
    ExpenseFilters,
    ExpenseService,
    Page,
)


logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong"
RATE_LIMIT_MESSAGE = "Too many requests, please try again later"
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


# Dependencies


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


def get_user_id(
    request: Request, authorization: Optional[str] = Header(default=None)
) -> str:
    state = request.app.state
    return resolve_user_id(authorization, state.token_verifier, state.settings)


def pagination_params(
    page: Optional[str] = None, limit: Optional[str] = None
) -> PaginationQuery:
    return PaginationQuery(page=page, limit=limit)


def date_range_params(
    start_date: Optional[str] = None, end_date: Optional[str] = None
) -> DateRangeQuery:
    return DateRangeQuery(start_date=start_date, end_date=end_date)


# Response shaping


def success(data: Any, **extra: Any) -> dict[str, Any]:
    return {"status": "success", **extra, "data": data}


def paginated(page: Page, pagination: PaginationQuery, data: list) -> dict[str, Any]:
    return success(
        data, count=page.count, page=pagination.page, limit=pagination.limit
    )


def category_json(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "user_id": category.user_id,
        "created_at": category.created_at.isoformat(),
        "updated_at": category.updated_at.isoformat(),
    }


def budget_json(budget: Budget) -> dict[str, Any]:
    return {
        "id": budget.id,
        "name": budget.name,
        "amount": float(budget.amount),
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat(),
        "category_id": budget.category_id,
        "category_name": budget.category.name if budget.category else None,
        "user_id": budget.user_id,
        "created_at": budget.created_at.isoformat(),
        "updated_at": budget.updated_at.isoformat(),
    }


def budget_detail_json(detail: BudgetDetail) -> dict[str, Any]:
    data = budget_json(detail.budget)
    data.update(
        {
            "total_spent": float(detail.balance.total_spent),
            "remaining": float(detail.balance.remaining),
            "expenses": [expense_json(e) for e in detail.expenses],
        }
    )
    return data


def expense_json(expense: Expense) -> dict[str, Any]:
    return {
        "id": expense.id,
        "amount": float(expense.amount),
        "description": expense.description,
        "date": expense.date.isoformat(),
        "category_id": expense.category_id,
        "category_name": expense.category.name if expense.category else None,
        "budget_id": expense.budget_id,
        "budget_name": expense.budget.name if expense.budget else None,
        "user_id": expense.user_id,
        "created_at": expense.created_at.isoformat(),
        "updated_at": expense.updated_at.isoformat(),
    }


def category_total_json(total: CategoryTotal) -> dict[str, Any]:
    return {"id": total.id, "name": total.name, "total": float(total.total)}


def budget_summary_json(row: dict[str, Any]) -> dict[str, Any]:
    data = dict(row)
    for key in ("budget_amount", "total_spent", "remaining"):
        data[key] = float(data[key])
    return data


def error_response(
    settings: Settings,
    status_code: int,
    message: str,
    errors: Optional[list[dict[str, str]]] = None,
) -> JSONResponse:
    if settings.is_production and status_code >= 500:
        message = GENERIC_ERROR_MESSAGE
    body: dict[str, Any] = {"status": "error", "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(body, status_code=status_code)


def _field_errors(raw_errors: list[dict[str, Any]]) -> list[dict[str, str]]:
    errors = []
    for err in raw_errors:
        loc = [str(part) for part in err.get("loc", ())]
        if err.get("type") == "json_invalid":
            # loc carries the character offset of the syntax error
            loc = []
        elif loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        message = str(err.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        errors.append({"field": ".".join(loc) or "body", "message": message})
    return errors


# Routes

router = APIRouter(prefix="/api", dependencies=[Depends(get_user_id)])


@router.get("/categories")
def list_categories(
    pagination: PaginationQuery = Depends(pagination_params),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    page = CategoryService(db, user_id).list(pagination)
    return paginated(page, pagination, [category_json(c) for c in page.items])


@router.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).create(payload)
    return success(category_json(category))


@router.get("/categories/{category_id}")
def get_category(
    category_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return success(category_json(CategoryService(db, user_id).get(category_id)))


@router.patch("/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryUpdate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).update(category_id, payload)
    return success(category_json(category))


@router.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).delete(category_id)
    return Response(status_code=204)


@router.get("/budgets")
def list_budgets(
    pagination: PaginationQuery = Depends(pagination_params),
    date_range: DateRangeQuery = Depends(date_range_params),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    page = BudgetService(db, user_id).list(pagination, date_range)
    return paginated(page, pagination, [budget_json(b) for b in page.items])


@router.post("/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user_id).create(payload)
    return success(budget_json(budget))


@router.get("/budgets/summary")
def budget_summary(
    date_range: DateRangeQuery = Depends(date_range_params),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    period = resolve_period(date_range.start_date, date_range.end_date)
    rows = BudgetService(db, user_id).summary(period)
    return success([budget_summary_json(r) for r in rows])


@router.get("/budgets/{budget_id}")
def get_budget(
    budget_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return success(budget_detail_json(BudgetService(db, user_id).detail(budget_id)))


@router.patch("/budgets/{budget_id}")
def update_budget(
    budget_id: str,
    payload: BudgetUpdate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user_id).update(budget_id, payload)
    return success(budget_json(budget))


@router.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    BudgetService(db, user_id).delete(budget_id)
    return Response(status_code=204)


@router.get("/expenses")
def list_expenses(
    category_id: Optional[str] = None,
    pagination: PaginationQuery = Depends(pagination_params),
    date_range: DateRangeQuery = Depends(date_range_params),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    filters = ExpenseFilters(
        start_date=date_range.start_date,
        end_date=date_range.end_date,
        category_id=category_id or None,
    )
    page = ExpenseService(db, user_id).list(pagination, filters)
    return paginated(page, pagination, [expense_json(e) for e in page.items])


@router.post("/expenses", status_code=201)
def create_expense(
    payload: ExpenseIn,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user_id).create(payload)
    return success(expense_json(expense))


@router.get("/expenses/summary")
def expense_summary(
    date_range: DateRangeQuery = Depends(date_range_params),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    period = resolve_period(date_range.start_date, date_range.end_date)
    totals = ExpenseService(db, user_id).summary(period)
    return success([category_total_json(t) for t in totals])


@router.get("/expenses/{expense_id}")
def get_expense(
    expense_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return success(expense_json(ExpenseService(db, user_id).get(expense_id)))


@router.patch("/expenses/{expense_id}")
def update_expense(
    expense_id: str,
    payload: ExpenseUpdate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user_id).update(expense_id, payload)
    return success(expense_json(expense))


@router.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    ExpenseService(db, user_id).delete(expense_id)
    return Response(status_code=204)


# Application


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        settings = request.app.state.settings
        if exc.status_code >= 500:
            logger.error(
                f"request_failed: path={request.url.path} status={exc.status_code} error={exc.message}"
            )
        else:
            logger.warning(
                f"request_rejected: path={request.url.path} status={exc.status_code} error={exc.message}"
            )
        errors = exc.errors if isinstance(exc, ValidationError) else None
        return error_response(settings, exc.status_code, exc.message, errors)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"request_rejected: path={request.url.path} status=400 error=validation")
        return error_response(
            request.app.state.settings,
            400,
            "Validation failed",
            _field_errors(list(exc.errors())),
        )

    @app.exception_handler(PydanticValidationError)
    async def query_validation_handler(request: Request, exc: PydanticValidationError):
        logger.warning(f"request_rejected: path={request.url.path} status=400 error=validation")
        return error_response(
            request.app.state.settings,
            400,
            "Validation failed",
            _field_errors(list(exc.errors())),
        )

    @app.exception_handler(SQLAlchemyError)
    async def backend_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"backend_error: path={request.url.path} error={exc}")
        return error_response(request.app.state.settings, 500, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(
            f"request_rejected: path={request.url.path} status={exc.status_code} error={exc.detail}"
        )
        response = error_response(
            request.app.state.settings, exc.status_code, str(exc.detail)
        )
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    # SlowAPIMiddleware calls this handler without awaiting it
    @app.exception_handler(RateLimitExceeded)
    def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        logger.warning(
            f"rate_limited: path={request.url.path} client={get_remote_address(request)} limit={exc.detail}"
        )
        return error_response(request.app.state.settings, 429, RATE_LIMIT_MESSAGE)


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    token_verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ok = app.state.database.ping()
        logger.info(
            f"startup: environment={settings.environment} version={APP_VERSION} database_ok={ok}"
        )
        yield
        app.state.database.dispose()
        logger.info("shutdown: database disposed")

    app = FastAPI(title="Budget API", version=APP_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database or Database(settings.database_url)
    app.state.token_verifier = token_verifier or TokenVerifier.from_settings(settings)
    # one limiter per app; counters live in process memory, keyed by client address
    app.state.limiter = Limiter(
        key_func=get_remote_address, default_limits=[settings.rate_limit]
    )

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                f"unhandled_error: method={request.method} path={request.url.path}"
            )
            response = error_response(
                request.app.state.settings, 500, str(exc) or "Internal server error"
            )
        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"request: method={request.method} path={request.url.path} "
            f"status={response.status_code} duration_ms={duration_ms:.1f}"
        )
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    _register_error_handlers(app)

    @app.get("/health")
    def health():
        return {"status": "UP", "timestamp": datetime.now(timezone.utc).isoformat()}

    app.include_router(router)

    return app


def main():
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
