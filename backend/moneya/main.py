import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Hashable, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth_utils import api_key_prefix, generate_api_key, hash_api_key
from .config import Settings
from .persistence import Persistence, StoreError, get_persistence
from .schemas import (
    AdminPlanUpdate,
    AdminStatsResponse,
    AdminSubscriptionExtend,
    AdminUserResponse,
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    ApiKeyUpdate,
    ApiLogResponse,
    AuthResponse,
    CalendarEventCreate,
    CalendarEventResponse,
    CalendarEventUpdate,
    CategoryCreate,
    CategoryInitResponse,
    CategoryResponse,
    CategoryType,
    CheckoutRequest,
    CheckoutResponse,
    ClientCreate,
    ClientResponse,
    ClientUpdate,
    CurrencyChangeRequest,
    CurrencyChangeResponse,
    CurrencySyncRequest,
    CurrencySyncResponse,
    ExchangeRatesResponse,
    HealthResponse,
    InvoiceCreate,
    InvoiceResponse,
    InvoiceStatus,
    InvoiceUpdate,
    LanguageUpdate,
    LoginRequest,
    Notification,
    NotificationLevel,
    NotificationPermissionUpdate,
    PlanCounts,
    PaymentConfirmRequest,
    PaymentConfirmResponse,
    PreferencesResponse,
    ProfilePrivateResponse,
    ProfilePrivateUpdate,
    ProfileResponse,
    ProfileUpdate,
    QuotationCreate,
    QuotationResponse,
    QuotationUpdate,
    RegisterRequest,
    SubscriptionResponse,
    SuspendRequest,
    SystemSettingResponse,
    SystemSettingUpdate,
    TaskCreate,
    TaskReminderResponse,
    TaskResponse,
    TaskToggle,
    TaskUpdate,
    TransactionCreate,
    TransactionResponse,
    TransactionStatsResponse,
    TransactionType,
    TransactionUpdate,
)
from .services.billing import (
    CheckoutGateway,
    activation_values,
    extended_values,
    granted_plan_values,
    is_success_status,
    plan_price,
    resolve_subscription,
    revoked_values,
)
from .services.currency_sync import CurrencySyncError, CurrencySyncService
from .services.exchange_rates import (
    CompositeRateProvider,
    OpenExchangeRatesProvider,
    RateProvider,
    RateProviderUnavailable,
    StaticRateProvider,
)
from .services.external_api import ExternalApiHandler, ExternalClientImporter, ExternalSaleRecorder
from .services.finance import due_reminders, record_invoice_payment, transaction_stats
from .state import (
    SESSION_COOKIE_NAME,
    AppState,
    RequestContext,
    SessionRegistry,
    ViewCache,
    get_context,
    get_owner_context,
    get_state,
    is_owner,
)
from .store import DEFAULT_EXPENSE_CATEGORIES, DEFAULT_INCOME_CATEGORIES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def build_error_response(details: list[ApiErrorDetail], message: str = "Invalid request payload") -> JSONResponse:
    payload = ApiErrorResponse(
        error=ApiErrorPayload(code="VALIDATION_ERROR", message=message, details=details)
    )
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=payload.model_dump())


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


async def store_error_exception_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"store error: {exc}"})


async def currency_sync_exception_handler(request: Request, exc: CurrencySyncError) -> JSONResponse:
    notification = Notification(level=NotificationLevel.error, message=str(exc))
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": str(exc), "notification": notification.model_dump(mode="json")},
    )


def create_app(
    settings: Optional[Settings] = None,
    persistence: Optional[Persistence] = None,
    rate_provider: Optional[RateProvider] = None,
    gateways: Optional[dict[str, CheckoutGateway]] = None,
) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    live_rates = rate_provider or OpenExchangeRatesProvider(
        app_id=settings.exchange_rates_app_id,
        url=settings.exchange_rates_url,
        cache_ttl_seconds=settings.exchange_rates_cache_seconds,
    )
    app = FastAPI(
        title="MONEYA API",
        version="0.1.0",
        description="Finance and client management for freelancers and small businesses.",
    )
    app.state.moneya = AppState(
        settings=settings,
        persistence=persistence or get_persistence(settings),
        sessions=SessionRegistry(settings.session_timeout_minutes, settings.session_max_age_hours),
        views=ViewCache(settings.view_cache_size if settings.storage_backend == "memory" else 0),
        live_rates=live_rates,
        rates=CompositeRateProvider(primary=live_rates, fallback=StaticRateProvider()),
        gateways=dict(gateways or {}),
    )
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValueError, value_error_exception_handler)
    app.add_exception_handler(StoreError, store_error_exception_handler)
    app.add_exception_handler(CurrencySyncError, currency_sync_exception_handler)
    app.include_router(router)
    logger.info("MONEYA API ready with %s storage", settings.storage_backend)
    return app


def _cached(state: AppState, ctx: RequestContext, view: str, params: Hashable, loader: Callable[[], Any]) -> Any:
    return state.views.get_or_load(ctx.user_id, view, params, loader)


def _system_setting(state: AppState, key: str, default: Any = None) -> Any:
    for row in state.persistence.list_system_settings():
        if row["setting_key"] == key:
            return row["setting_value"]
    return default


def _enforce_free_limit(state: AppState, ctx: RequestContext, table: str, setting_key: str, since: Optional[datetime] = None) -> None:
    limit = _system_setting(state, setting_key)
    if limit is None or resolve_subscription(state.persistence.get_owned_singleton("subscriptions", ctx.user_id)).isPaid:
        return
    rows = state.persistence.list_rows(table, ctx.user_id, ranges={"created_at": (since, None)} if since else None)
    if len(rows) >= int(limit):
        raise HTTPException(status_code=403, detail=f"free plan limit reached: {setting_key}")


def _grant_owner_role(state: AppState, user: dict[str, Any]) -> None:
    if user["email"].lower() in state.settings.owner_emails and not is_owner(state, user["id"]):
        state.persistence.insert_row("user_roles", user["id"], {"role": "owner"})
        logger.info("granted owner role to user %s", user["id"])


def _start_session(state: AppState, user: dict[str, Any], response: Response) -> AuthResponse:
    created = state.persistence.ensure_profiles(
        user["id"], user["email"], user.get("full_name"), state.settings.default_language
    )
    if created:
        logger.info("created profile rows for user %s", user["id"])
    _grant_owner_role(state, user)
    token = state.sessions.create(user["id"])
    response.set_cookie(SESSION_COOKIE_NAME, token, httponly=True, samesite="lax", secure=False)
    return AuthResponse(token=token, userId=user["id"], email=user["email"], fullName=user.get("full_name"))


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
async def auth_register(payload: RegisterRequest, response: Response, state: AppState = Depends(get_state)) -> AuthResponse:
    if not _system_setting(state, "registration_enabled", True):
        raise HTTPException(status_code=403, detail="registration disabled")
    user = state.persistence.register_user(payload.email, payload.password, payload.fullName)
    return _start_session(state, user, response)


@router.post("/auth/login", response_model=AuthResponse)
async def auth_login(payload: LoginRequest, response: Response, state: AppState = Depends(get_state)) -> AuthResponse:
    user = state.persistence.authenticate_user(payload.email, payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="invalid email or password")
    if _system_setting(state, "maintenance_mode", False) and user["email"].lower() not in state.settings.owner_emails:
        raise HTTPException(status_code=503, detail="maintenance in progress")
    profile = state.persistence.get_owned_singleton("profiles", user["id"]) or {}
    if profile.get("is_suspended"):
        raise HTTPException(status_code=403, detail="account suspended")
    return _start_session(state, user, response)


@router.get("/auth/me", response_model=AuthResponse)
async def auth_me(ctx: RequestContext = Depends(get_context)) -> AuthResponse:
    return AuthResponse(token=ctx.token, userId=ctx.user_id, email=ctx.email, fullName=ctx.full_name)


@router.post("/auth/logout")
async def auth_logout(
    response: Response,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.sessions.revoke(ctx.token)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return {"ok": True}


@router.delete("/auth/me")
async def delete_my_account(
    response: Response,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_user(ctx.user_id)
    state.sessions.revoke_user(ctx.user_id)
    state.views.invalidate_user(ctx.user_id)
    response.delete_cookie(SESSION_COOKIE_NAME)
    logger.info("deleted account %s", ctx.user_id)
    return {"deleted": True}


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(ctx: RequestContext = Depends(get_context), state: AppState = Depends(get_state)) -> ProfileResponse:
    row = state.persistence.get_owned_singleton("profiles", ctx.user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="profile not found")
    return ProfileResponse.from_row(row)


@router.put("/profile", response_model=ProfileResponse)
async def update_profile(
    payload: ProfileUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> ProfileResponse:
    row = state.persistence.upsert_owned_singleton("profiles", ctx.user_id, payload.to_columns(exclude_unset=True))
    return ProfileResponse.from_row(row)


@router.get("/profile/private", response_model=ProfilePrivateResponse)
async def get_private_profile(
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> ProfilePrivateResponse:
    row = state.persistence.get_owned_singleton("profiles_private", ctx.user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="profile not found")
    return ProfilePrivateResponse.from_row(row)


@router.put("/profile/private", response_model=ProfilePrivateResponse)
async def update_private_profile(
    payload: ProfilePrivateUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> ProfilePrivateResponse:
    row = state.persistence.upsert_owned_singleton("profiles_private", ctx.user_id, payload.to_columns(exclude_unset=True))
    return ProfilePrivateResponse.from_row(row)


def _preferences(state: AppState, user_id: UUID) -> PreferencesResponse:
    prefs = state.persistence.get_owned_singleton("user_preferences", user_id) or {}
    profile = state.persistence.get_owned_singleton("profiles", user_id) or {}
    return PreferencesResponse(
        language=prefs.get("language") or state.settings.default_language,
        currency=profile.get("currency_preference") or state.settings.default_currency,
        currencyPopupDismissedAt=prefs.get("currency_popup_dismissed_at"),
        categoriesInitialized=bool(prefs.get("categories_initialized")),
        notificationPermission=prefs.get("notification_permission") or "default",
    )


@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(ctx: RequestContext = Depends(get_context), state: AppState = Depends(get_state)) -> PreferencesResponse:
    return _preferences(state, ctx.user_id)


@router.put("/preferences/language", response_model=PreferencesResponse)
async def update_language(
    payload: LanguageUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> PreferencesResponse:
    state.persistence.upsert_owned_singleton("user_preferences", ctx.user_id, {"language": payload.language.value})
    return _preferences(state, ctx.user_id)


def _sync_service(state: AppState) -> CurrencySyncService:
    return CurrencySyncService(state.persistence, state.views, state.settings.currency_sync_max_attempts)


@router.put("/preferences/currency", response_model=CurrencyChangeResponse)
def update_currency(
    payload: CurrencyChangeRequest,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> CurrencyChangeResponse:
    sync: Optional[CurrencySyncResponse] = None
    if payload.convertRecords and payload.currency != ctx.currency:
        rates = payload.rates or state.rates.get_rates()
        sync = _sync_service(state).sync(ctx.user_id, ctx.currency, payload.currency, rates)
    state.persistence.upsert_owned_singleton("profiles", ctx.user_id, {"currency_preference": payload.currency})
    return CurrencyChangeResponse(currency=payload.currency, sync=sync)


@router.post("/preferences/currency-popup/dismiss", response_model=PreferencesResponse)
async def dismiss_currency_popup(
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> PreferencesResponse:
    state.persistence.upsert_owned_singleton(
        "user_preferences", ctx.user_id, {"currency_popup_dismissed_at": datetime.now(timezone.utc)}
    )
    return _preferences(state, ctx.user_id)


@router.put("/preferences/notifications", response_model=PreferencesResponse)
async def update_notification_permission(
    payload: NotificationPermissionUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> PreferencesResponse:
    state.persistence.upsert_owned_singleton(
        "user_preferences", ctx.user_id, {"notification_permission": payload.permission}
    )
    return _preferences(state, ctx.user_id)


@router.post("/currency-sync", response_model=CurrencySyncResponse)
def run_currency_sync(
    payload: CurrencySyncRequest,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> CurrencySyncResponse:
    rates = payload.rates or state.rates.get_rates()
    return _sync_service(state).sync(ctx.user_id, payload.oldCurrency, payload.newCurrency, rates, payload.scope)


@router.get("/exchange-rates", response_model=ExchangeRatesResponse)
def get_exchange_rates(state: AppState = Depends(get_state)) -> Any:
    try:
        rates = state.live_rates.get_rates()
    except RateProviderUnavailable as exc:
        logger.error("error fetching exchange rates: %s", exc)
        return JSONResponse(status_code=500, content={"result": "error", "error": str(exc)})
    return ExchangeRatesResponse(result="success", base="EUR", rates={code: float(rate) for code, rate in rates.items()})


@router.get("/clients", response_model=list[ClientResponse])
async def list_clients(ctx: RequestContext = Depends(get_context), state: AppState = Depends(get_state)) -> list[ClientResponse]:
    return _cached(
        state,
        ctx,
        "clients",
        None,
        lambda: [
            ClientResponse.from_row(row)
            for row in state.persistence.list_rows("clients", ctx.user_id, order_by=[("name", False)])
        ],
    )


@router.post("/clients", response_model=ClientResponse, status_code=201)
async def create_client(
    payload: ClientCreate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> ClientResponse:
    _enforce_free_limit(state, ctx, "clients", "free_max_clients")
    row = state.persistence.insert_row("clients", ctx.user_id, payload.to_columns())
    state.views.invalidate(ctx.user_id, "clients")
    return ClientResponse.from_row(row)


@router.put("/clients/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: UUID,
    payload: ClientUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> ClientResponse:
    row = state.persistence.update_row("clients", ctx.user_id, client_id, payload.to_columns(exclude_unset=True))
    state.views.invalidate(ctx.user_id, "clients")
    return ClientResponse.from_row(row)


@router.delete("/clients/{client_id}")
async def delete_client(
    client_id: UUID,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_row("clients", ctx.user_id, client_id)
    state.views.invalidate(ctx.user_id, "clients")
    return {"deleted": True}


def _with_currency(values: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
    if values.get("currency_code") is None:
        values["currency_code"] = ctx.currency
    return values


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    type: Optional[TransactionType] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> list[TransactionResponse]:
    filters = {"type": type.value} if type else None
    return _cached(
        state,
        ctx,
        "transactions",
        (type, start, end),
        lambda: [
            TransactionResponse.from_row(row)
            for row in state.persistence.list_rows(
                "transactions",
                ctx.user_id,
                filters=filters,
                ranges={"date": (start, end)},
                order_by=[("date", True), ("created_at", True)],
            )
        ],
    )


@router.get("/transactions/stats", response_model=TransactionStatsResponse)
async def get_transaction_stats(
    start: Optional[date] = None,
    end: Optional[date] = None,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> TransactionStatsResponse:
    return _cached(
        state,
        ctx,
        "transaction-stats",
        (start, end),
        lambda: transaction_stats(
            state.persistence.list_rows("transactions", ctx.user_id, ranges={"date": (start, end)})
        ),
    )


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(
    payload: TransactionCreate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> TransactionResponse:
    row = state.persistence.insert_row("transactions", ctx.user_id, _with_currency(payload.to_columns(), ctx))
    state.views.invalidate(ctx.user_id, "transactions", "transaction-stats")
    return TransactionResponse.from_row(row)


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
async def update_transaction(
    transaction_id: UUID,
    payload: TransactionUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> TransactionResponse:
    row = state.persistence.update_row(
        "transactions", ctx.user_id, transaction_id, payload.to_columns(exclude_unset=True)
    )
    state.views.invalidate(ctx.user_id, "transactions", "transaction-stats")
    return TransactionResponse.from_row(row)


@router.delete("/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: UUID,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_row("transactions", ctx.user_id, transaction_id)
    state.views.invalidate(ctx.user_id, "transactions", "transaction-stats")
    return {"deleted": True}


@router.get("/invoices", response_model=list[InvoiceResponse])
async def list_invoices(ctx: RequestContext = Depends(get_context), state: AppState = Depends(get_state)) -> list[InvoiceResponse]:
    return _cached(
        state,
        ctx,
        "invoices",
        None,
        lambda: [
            InvoiceResponse.from_row(row)
            for row in state.persistence.list_rows(
                "invoices", ctx.user_id, order_by=[("issue_date", True), ("created_at", True)]
            )
        ],
    )


@router.post("/invoices", response_model=InvoiceResponse, status_code=201)
async def create_invoice(
    payload: InvoiceCreate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> InvoiceResponse:
    month_start = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    _enforce_free_limit(state, ctx, "invoices", "free_max_invoices_per_month", since=month_start)
    row = state.persistence.insert_row("invoices", ctx.user_id, _with_currency(payload.to_columns(), ctx))
    state.views.invalidate(ctx.user_id, "invoices")
    return InvoiceResponse.from_row(row)


@router.put("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: UUID,
    payload: InvoiceUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> InvoiceResponse:
    values = payload.to_columns(exclude_unset=True)
    current = state.persistence.get_row("invoices", ctx.user_id, invoice_id)
    if current is None:
        raise HTTPException(status_code=404, detail=f"invoices not found or access denied: {invoice_id}")
    due_date = values.get("due_date") or current["due_date"]
    issue_date = values.get("issue_date") or current["issue_date"]
    if due_date < issue_date:
        raise ValueError("dueDate must be >= issueDate")
    row = state.persistence.update_row("invoices", ctx.user_id, invoice_id, values)
    state.views.invalidate(ctx.user_id, "invoices")
    if payload.status == InvoiceStatus.paid:
        if record_invoice_payment(state.persistence, ctx.user_id, row) is not None:
            state.views.invalidate(ctx.user_id, "transactions", "transaction-stats")
    return InvoiceResponse.from_row(row)


@router.delete("/invoices/{invoice_id}")
async def delete_invoice(
    invoice_id: UUID,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_row("invoices", ctx.user_id, invoice_id)
    state.views.invalidate(ctx.user_id, "invoices")
    return {"deleted": True}


@router.get("/quotations", response_model=list[QuotationResponse])
async def list_quotations(ctx: RequestContext = Depends(get_context), state: AppState = Depends(get_state)) -> list[QuotationResponse]:
    return _cached(
        state,
        ctx,
        "quotations",
        None,
        lambda: [
            QuotationResponse.from_row(row)
            for row in state.persistence.list_rows(
                "quotations", ctx.user_id, order_by=[("issue_date", True), ("created_at", True)]
            )
        ],
    )


@router.post("/quotations", response_model=QuotationResponse, status_code=201)
async def create_quotation(
    payload: QuotationCreate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> QuotationResponse:
    row = state.persistence.insert_row("quotations", ctx.user_id, _with_currency(payload.to_columns(), ctx))
    state.views.invalidate(ctx.user_id, "quotations")
    return QuotationResponse.from_row(row)


@router.put("/quotations/{quotation_id}", response_model=QuotationResponse)
async def update_quotation(
    quotation_id: UUID,
    payload: QuotationUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> QuotationResponse:
    row = state.persistence.update_row("quotations", ctx.user_id, quotation_id, payload.to_columns(exclude_unset=True))
    state.views.invalidate(ctx.user_id, "quotations")
    return QuotationResponse.from_row(row)


@router.delete("/quotations/{quotation_id}")
async def delete_quotation(
    quotation_id: UUID,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_row("quotations", ctx.user_id, quotation_id)
    state.views.invalidate(ctx.user_id, "quotations")
    return {"deleted": True}


@router.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(
    dueDate: Optional[date] = None,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> list[TaskResponse]:
    filters = {"due_date": dueDate} if dueDate else None
    return _cached(
        state,
        ctx,
        "tasks",
        dueDate,
        lambda: [
            TaskResponse.from_row(row)
            for row in state.persistence.list_rows(
                "tasks", ctx.user_id, filters=filters, order_by=[("due_date", False), ("due_time", False)]
            )
        ],
    )


@router.post("/tasks", response_model=TaskResponse, status_code=201)
async def create_task(
    payload: TaskCreate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> TaskResponse:
    row = state.persistence.insert_row("tasks", ctx.user_id, payload.to_columns())
    state.views.invalidate(ctx.user_id, "tasks", "calendar-events")
    return TaskResponse.from_row(row)


@router.post("/tasks/reminders/due", response_model=list[TaskReminderResponse])
async def fire_due_reminders(
    at: Optional[datetime] = None,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> list[TaskReminderResponse]:
    now = at.replace(tzinfo=None) if at else datetime.now()
    candidates = state.persistence.list_rows(
        "tasks", ctx.user_id, filters={"completed": False, "reminder_sent": False}
    )
    reminders = []
    for task in due_reminders(candidates, now):
        state.persistence.update_row("tasks", ctx.user_id, task["id"], {"reminder_sent": True})
        reminders.append(
            TaskReminderResponse(
                taskId=task["id"],
                title=task["title"],
                reminderMinutes=task["reminder_minutes"],
                notification=Notification(
                    level=NotificationLevel.info,
                    message=f"À faire dans {task['reminder_minutes']} minutes",
                ),
            )
        )
    if reminders:
        state.views.invalidate(ctx.user_id, "tasks")
    return reminders


@router.put("/tasks/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: UUID,
    payload: TaskUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> TaskResponse:
    row = state.persistence.update_row("tasks", ctx.user_id, task_id, payload.to_columns(exclude_unset=True))
    state.views.invalidate(ctx.user_id, "tasks", "calendar-events")
    return TaskResponse.from_row(row)


@router.post("/tasks/{task_id}/toggle", response_model=TaskResponse)
async def toggle_task(
    task_id: UUID,
    payload: TaskToggle,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> TaskResponse:
    row = state.persistence.update_row("tasks", ctx.user_id, task_id, {"completed": payload.completed})
    state.views.invalidate(ctx.user_id, "tasks", "calendar-events")
    return TaskResponse.from_row(row)


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: UUID,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_row("tasks", ctx.user_id, task_id)
    state.views.invalidate(ctx.user_id, "tasks", "calendar-events")
    return {"deleted": True}


@router.get("/calendar-events", response_model=list[CalendarEventResponse])
async def list_calendar_events(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> list[CalendarEventResponse]:
    return _cached(
        state,
        ctx,
        "calendar-events",
        (start, end),
        lambda: [
            CalendarEventResponse.from_row(row)
            for row in state.persistence.list_rows(
                "calendar_events",
                ctx.user_id,
                ranges={"start_date": (start, None), "end_date": (None, end)},
                order_by=[("start_date", False)],
            )
        ],
    )


@router.post("/calendar-events", response_model=CalendarEventResponse, status_code=201)
async def create_calendar_event(
    payload: CalendarEventCreate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> CalendarEventResponse:
    row = state.persistence.insert_row("calendar_events", ctx.user_id, payload.to_columns())
    state.views.invalidate(ctx.user_id, "calendar-events")
    return CalendarEventResponse.from_row(row)


@router.put("/calendar-events/{event_id}", response_model=CalendarEventResponse)
async def update_calendar_event(
    event_id: UUID,
    payload: CalendarEventUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> CalendarEventResponse:
    row = state.persistence.update_row("calendar_events", ctx.user_id, event_id, payload.to_columns(exclude_unset=True))
    state.views.invalidate(ctx.user_id, "calendar-events")
    return CalendarEventResponse.from_row(row)


@router.delete("/calendar-events/{event_id}")
async def delete_calendar_event(
    event_id: UUID,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_row("calendar_events", ctx.user_id, event_id)
    state.views.invalidate(ctx.user_id, "calendar-events")
    return {"deleted": True}


@router.get("/categories", response_model=list[CategoryResponse])
async def list_categories(
    type: Optional[CategoryType] = None,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> list[CategoryResponse]:
    filters = {"category_type": type.value} if type else None
    return _cached(
        state,
        ctx,
        "categories",
        type,
        lambda: [
            CategoryResponse.from_row(row)
            for row in state.persistence.list_rows(
                "user_categories", ctx.user_id, filters=filters, order_by=[("name", False)]
            )
        ],
    )


@router.post("/categories", response_model=CategoryResponse, status_code=201)
async def create_category(
    payload: CategoryCreate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> CategoryResponse:
    values = payload.to_columns()
    if state.persistence.list_rows("user_categories", ctx.user_id, filters=values, limit=1):
        raise HTTPException(status_code=409, detail="category already exists")
    row = state.persistence.insert_row("user_categories", ctx.user_id, values)
    state.views.invalidate(ctx.user_id, "categories")
    return CategoryResponse.from_row(row)


@router.post("/categories/initialize", response_model=CategoryInitResponse)
async def initialize_categories(
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> CategoryInitResponse:
    prefs = state.persistence.get_owned_singleton("user_preferences", ctx.user_id) or {}
    if prefs.get("categories_initialized"):
        return CategoryInitResponse(initialized=True, created=0)
    existing = {
        (row["name"], row["category_type"])
        for row in state.persistence.list_rows("user_categories", ctx.user_id)
    }
    defaults = [(name, "expense") for name in DEFAULT_EXPENSE_CATEGORIES]
    defaults += [(name, "income") for name in DEFAULT_INCOME_CATEGORIES]
    created = 0
    for name, category_type in defaults:
        if (name, category_type) in existing:
            continue
        state.persistence.insert_row("user_categories", ctx.user_id, {"name": name, "category_type": category_type})
        created += 1
    state.persistence.upsert_owned_singleton("user_preferences", ctx.user_id, {"categories_initialized": True})
    state.views.invalidate(ctx.user_id, "categories")
    return CategoryInitResponse(initialized=True, created=created)


@router.delete("/categories/{category_id}")
async def delete_category(
    category_id: UUID,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_row("user_categories", ctx.user_id, category_id)
    state.views.invalidate(ctx.user_id, "categories")
    return {"deleted": True}


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(ctx: RequestContext = Depends(get_context), state: AppState = Depends(get_state)) -> SubscriptionResponse:
    return resolve_subscription(state.persistence.get_owned_singleton("subscriptions", ctx.user_id))


@router.post("/checkout/{provider}", response_model=CheckoutResponse)
def create_checkout(
    provider: str,
    payload: CheckoutRequest,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> CheckoutResponse:
    gateway = state.gateways.get(provider)
    if gateway is None:
        logger.error("checkout requested for unconfigured provider %s", provider)
        raise HTTPException(status_code=500, detail="Payment service not configured")
    try:
        price = plan_price(provider, payload.plan)
    except LookupError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    session = gateway.create_payment(
        user_id=ctx.user_id,
        email=ctx.email,
        user_name=payload.userName or ctx.full_name,
        plan=payload.plan,
        price=price,
    )
    state.persistence.insert_row(
        "payments",
        ctx.user_id,
        {
            "provider": provider,
            "provider_payment_id": session.payment_id,
            "plan": payload.plan,
            "amount": price.amount,
            "currency": price.currency,
            "status": "pending",
            "metadata": {"user_id": str(ctx.user_id), "plan": payload.plan},
        },
    )
    logger.info("created %s checkout %s for user %s", provider, session.payment_id, ctx.user_id)
    return CheckoutResponse(paymentUrl=session.payment_url, paymentId=session.payment_id)


@router.post("/payments/confirm", response_model=PaymentConfirmResponse)
async def confirm_payment(payload: PaymentConfirmRequest, state: AppState = Depends(get_state)) -> PaymentConfirmResponse:
    payment = state.persistence.find_payment(payload.paymentId)
    if payment is None:
        raise HTTPException(status_code=404, detail="payment not found")
    user_id = payment["user_id"]
    payment = state.persistence.update_row("payments", user_id, payment["id"], {"status": payload.status})
    if not is_success_status(payload.status):
        logger.info("payment %s status %s, subscription unchanged", payload.paymentId, payload.status)
        return PaymentConfirmResponse(received=True, processed=False, status=payload.status)
    current = state.persistence.get_owned_singleton("subscriptions", user_id)
    values = activation_values(current, payment)
    state.persistence.upsert_owned_singleton("subscriptions", user_id, values)
    logger.info("subscription %s active for user %s until %s", values["plan"], user_id, values["expires_at"])
    return PaymentConfirmResponse(received=True, processed=True, status=payload.status)


@router.get("/api-keys", response_model=list[ApiKeyResponse])
async def list_api_keys(ctx: RequestContext = Depends(get_context), state: AppState = Depends(get_state)) -> list[ApiKeyResponse]:
    rows = state.persistence.list_rows("api_keys", ctx.user_id, order_by=[("created_at", True)])
    return [ApiKeyResponse.from_row(row) for row in rows]


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
async def create_api_key(
    payload: ApiKeyCreate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> ApiKeyCreatedResponse:
    raw_key = generate_api_key()
    row = state.persistence.insert_row(
        "api_keys",
        ctx.user_id,
        {
            "name": payload.name,
            "key_prefix": api_key_prefix(raw_key),
            "key_hash": hash_api_key(raw_key),
            "expires_at": payload.expiresAt,
        },
    )
    logger.info("created API key %s for user %s", row["key_prefix"], ctx.user_id)
    return ApiKeyCreatedResponse(**ApiKeyResponse.from_row(row).model_dump(), key=raw_key)


@router.put("/api-keys/{key_id}", response_model=ApiKeyResponse)
async def update_api_key(
    key_id: UUID,
    payload: ApiKeyUpdate,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> ApiKeyResponse:
    row = state.persistence.update_row("api_keys", ctx.user_id, key_id, payload.to_columns(exclude_unset=True))
    return ApiKeyResponse.from_row(row)


@router.delete("/api-keys/{key_id}")
async def delete_api_key(
    key_id: UUID,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> dict[str, bool]:
    state.persistence.delete_row("api_keys", ctx.user_id, key_id)
    return {"deleted": True}


@router.get("/api-logs", response_model=list[ApiLogResponse])
async def list_api_logs(
    limit: int = 100,
    ctx: RequestContext = Depends(get_context),
    state: AppState = Depends(get_state),
) -> list[ApiLogResponse]:
    rows = state.persistence.list_rows("api_logs", ctx.user_id, order_by=[("created_at", True)], limit=max(1, min(limit, 500)))
    return [ApiLogResponse.from_row(row) for row in rows]


async def _run_external(handler_type: type[ExternalApiHandler], request: Request, api_key: Optional[str], state: AppState) -> JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        body = None
    ip_address = request.headers.get("x-forwarded-for") or (request.client.host if request.client else None)
    handler = handler_type(state.persistence, state.views, state.settings.default_currency)
    status_code, content = handler.handle(api_key, body, ip_address)
    return JSONResponse(status_code=status_code, content=content)


@router.post("/external/clients")
async def external_create_client(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
    state: AppState = Depends(get_state),
) -> JSONResponse:
    return await _run_external(ExternalClientImporter, request, x_api_key, state)


@router.post("/external/sales")
async def external_record_sale(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
    state: AppState = Depends(get_state),
) -> JSONResponse:
    return await _run_external(ExternalSaleRecorder, request, x_api_key, state)


def _admin_user(state: AppState, user: dict[str, Any]) -> AdminUserResponse:
    profile = state.persistence.get_owned_singleton("profiles", user["id"]) or {}
    roles = [row["role"] for row in state.persistence.list_rows("user_roles", user["id"])]
    subscription = resolve_subscription(state.persistence.get_owned_singleton("subscriptions", user["id"]))
    return AdminUserResponse(
        userId=user["id"],
        email=user["email"],
        fullName=profile.get("full_name") or user.get("full_name"),
        isSuspended=bool(profile.get("is_suspended")),
        roles=roles,
        subscriptionPlan=subscription.plan,
        subscriptionExpiresAt=subscription.expiresAt,
        createdAt=user["created_at"],
    )


@router.get("/admin/users", response_model=list[AdminUserResponse])
async def admin_list_users(
    limit: int = 50,
    ctx: RequestContext = Depends(get_owner_context),
    state: AppState = Depends(get_state),
) -> list[AdminUserResponse]:
    return [_admin_user(state, user) for user in state.persistence.list_users(limit=max(1, min(limit, 500)))]


@router.put("/admin/users/{user_id}/suspension", response_model=AdminUserResponse)
async def admin_suspend_user(
    user_id: UUID,
    payload: SuspendRequest,
    ctx: RequestContext = Depends(get_owner_context),
    state: AppState = Depends(get_state),
) -> AdminUserResponse:
    user = state.persistence.get_user_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="user not found")
    state.persistence.upsert_owned_singleton("profiles", user_id, {"is_suspended": payload.suspended})
    if payload.suspended:
        state.sessions.revoke_user(user_id)
    logger.info("user %s suspended=%s by %s", user_id, payload.suspended, ctx.user_id)
    return _admin_user(state, user)


def _target_user(state: AppState, user_id: UUID) -> dict[str, Any]:
    user = state.persistence.get_user_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="user not found")
    return user


@router.put("/admin/users/{user_id}/subscription", response_model=SubscriptionResponse)
async def admin_set_plan(
    user_id: UUID,
    payload: AdminPlanUpdate,
    ctx: RequestContext = Depends(get_owner_context),
    state: AppState = Depends(get_state),
) -> SubscriptionResponse:
    _target_user(state, user_id)
    row = state.persistence.upsert_owned_singleton(
        "subscriptions", user_id, granted_plan_values(payload.plan, payload.durationDays)
    )
    logger.info("plan of user %s set to %s for %d days by %s", user_id, payload.plan, payload.durationDays, ctx.user_id)
    return resolve_subscription(row)


@router.post("/admin/users/{user_id}/subscription/extend", response_model=SubscriptionResponse)
async def admin_extend_subscription(
    user_id: UUID,
    payload: AdminSubscriptionExtend,
    ctx: RequestContext = Depends(get_owner_context),
    state: AppState = Depends(get_state),
) -> SubscriptionResponse:
    _target_user(state, user_id)
    try:
        values = extended_values(state.persistence.get_owned_singleton("subscriptions", user_id), payload.days)
    except LookupError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    row = state.persistence.upsert_owned_singleton("subscriptions", user_id, values)
    logger.info("subscription of user %s extended by %d days by %s", user_id, payload.days, ctx.user_id)
    return resolve_subscription(row)


@router.delete("/admin/users/{user_id}/subscription", response_model=SubscriptionResponse)
async def admin_revoke_subscription(
    user_id: UUID,
    ctx: RequestContext = Depends(get_owner_context),
    state: AppState = Depends(get_state),
) -> SubscriptionResponse:
    _target_user(state, user_id)
    row = state.persistence.upsert_owned_singleton("subscriptions", user_id, revoked_values())
    logger.info("subscription of user %s revoked by %s", user_id, ctx.user_id)
    return resolve_subscription(row)


@router.get("/admin/stats", response_model=AdminStatsResponse)
async def admin_stats(
    ctx: RequestContext = Depends(get_owner_context),
    state: AppState = Depends(get_state),
) -> AdminStatsResponse:
    total_users = state.persistence.count_rows("profiles")
    counts = PlanCounts()
    for row in state.persistence.list_all_rows("subscriptions"):
        plan = resolve_subscription(row).plan
        if plan in ("pro", "business"):
            setattr(counts, plan, getattr(counts, plan) + 1)
    counts.free = total_users - counts.pro - counts.business
    return AdminStatsResponse(
        totalUsers=total_users,
        totalInvoices=state.persistence.count_rows("invoices"),
        totalQuotations=state.persistence.count_rows("quotations"),
        usersByPlan=counts,
    )


def _setting_response(row: dict[str, Any]) -> SystemSettingResponse:
    return SystemSettingResponse(
        key=row["setting_key"],
        value=row["setting_value"],
        description=row.get("description"),
        updatedAt=row["updated_at"],
    )


@router.get("/admin/settings", response_model=list[SystemSettingResponse])
async def admin_list_settings(
    ctx: RequestContext = Depends(get_owner_context),
    state: AppState = Depends(get_state),
) -> list[SystemSettingResponse]:
    return [_setting_response(row) for row in state.persistence.list_system_settings()]


@router.put("/admin/settings/{key}", response_model=SystemSettingResponse)
async def admin_update_setting(
    key: str,
    payload: SystemSettingUpdate,
    ctx: RequestContext = Depends(get_owner_context),
    state: AppState = Depends(get_state),
) -> SystemSettingResponse:
    row = state.persistence.upsert_system_setting(key, payload.value, payload.description)
    logger.info("system setting %s updated by %s", key, ctx.user_id)
    return _setting_response(row)


app = create_app()
