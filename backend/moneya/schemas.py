import datetime as dt
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def normalize_currency_code(value: str) -> str:
    up = value.strip().upper()
    if len(up) != 3 or not up.isalpha():
        raise ValueError("must be 3-letter ISO code")
    return up


def normalize_rate_table(rates: Optional[dict[str, Decimal]]) -> Optional[dict[str, Decimal]]:
    if rates is None:
        return rates
    normalized = {normalize_currency_code(code): rate for code, rate in rates.items()}
    for code, rate in normalized.items():
        if rate <= 0:
            raise ValueError(f"rate for {code} must be > 0")
    return normalized


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    savings = "savings"


class InvoiceStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


class QuotationStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    accepted = "accepted"
    rejected = "rejected"
    expired = "expired"


class ClientStatus(str, Enum):
    active = "active"
    prospect = "prospect"
    former = "former"


class TaskPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class EventType(str, Enum):
    task = "task"
    appointment = "appointment"
    reminder = "reminder"


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class Language(str, Enum):
    fr = "fr"
    en = "en"


class SyncScope(str, Enum):
    all = "all"
    transactions = "transactions"
    documents = "documents"


class NotificationLevel(str, Enum):
    success = "success"
    error = "error"
    info = "info"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str


class Notification(BaseModel):
    level: NotificationLevel
    message: str


class RowPayload(BaseModel):
    """Request body whose camelCase fields map onto snake_case store columns."""

    columns: ClassVar[dict[str, str]] = {}
    not_null: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def reject_explicit_nulls(self) -> "RowPayload":
        nulls = [name for name in self.not_null if name in self.model_fields_set and getattr(self, name) is None]
        if nulls:
            raise ValueError(f"{', '.join(nulls)} must not be null")
        return self

    def to_columns(self, exclude_unset: bool = False) -> dict[str, Any]:
        data = self.model_dump(exclude_unset=exclude_unset)
        return {
            self.columns.get(key, key): value.value if isinstance(value, Enum) else value
            for key, value in data.items()
        }


class RowResponse(BaseModel):
    columns: ClassVar[dict[str, str]] = {}

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RowResponse":
        values = {field: row.get(cls.columns.get(field, field)) for field in cls.model_fields}
        return cls(**values)


class LineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    description: str = ""
    quantity: Decimal = Field(default=Decimal("1"), ge=0)
    unit_price: Decimal = Field(default=Decimal("0"), alias="unitPrice")


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8, max_length=200)
    fullName: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("invalid email format")
        return value


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class AuthResponse(BaseModel):
    token: str
    userId: UUID
    email: str
    fullName: Optional[str] = None


class ClientCreate(RowPayload):
    name: str = Field(min_length=1, max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    status: ClientStatus = ClientStatus.active
    notes: Optional[str] = None


class ClientUpdate(RowPayload):
    not_null = ("name", "status")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    status: Optional[ClientStatus] = None
    notes: Optional[str] = None


class ClientResponse(RowResponse):
    columns = {"createdAt": "created_at", "updatedAt": "updated_at"}

    id: UUID
    name: str
    email: Optional[str]
    phone: Optional[str]
    company: Optional[str]
    status: ClientStatus
    notes: Optional[str]
    createdAt: datetime
    updatedAt: datetime


_TRANSACTION_COLUMNS = {"clientId": "client_id", "currencyCode": "currency_code"}


class TransactionCreate(RowPayload):
    columns = _TRANSACTION_COLUMNS

    type: TransactionType
    amount: Decimal = Field(ge=0)
    description: str = Field(default="", max_length=500)
    category: str = Field(min_length=1, max_length=100)
    date: dt.date
    clientId: Optional[UUID] = None
    currencyCode: Optional[str] = None

    @field_validator("currencyCode")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return normalize_currency_code(value) if value is not None else value


class TransactionUpdate(RowPayload):
    columns = _TRANSACTION_COLUMNS
    not_null = ("type", "amount", "description", "category", "date")

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    date: Optional[dt.date] = None
    clientId: Optional[UUID] = None
    currencyCode: Optional[str] = None

    @field_validator("currencyCode")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return normalize_currency_code(value) if value is not None else value


class TransactionResponse(RowResponse):
    columns = {**_TRANSACTION_COLUMNS, "createdAt": "created_at", "updatedAt": "updated_at"}

    id: UUID
    type: TransactionType
    amount: Decimal
    currencyCode: Optional[str]
    description: str
    category: str
    date: dt.date
    clientId: Optional[UUID]
    createdAt: datetime
    updatedAt: datetime


class TransactionStatsResponse(BaseModel):
    totalIncome: Decimal
    totalExpenses: Decimal
    totalSavings: Decimal
    balance: Decimal
    percentageSpent: int


_INVOICE_COLUMNS = {
    "invoiceNumber": "invoice_number",
    "clientId": "client_id",
    "issueDate": "issue_date",
    "dueDate": "due_date",
    "currencyCode": "currency_code",
}


class InvoiceCreate(RowPayload):
    columns = _INVOICE_COLUMNS

    invoiceNumber: str = Field(min_length=1, max_length=100)
    clientId: Optional[UUID] = None
    amount: Decimal = Field(ge=0)
    status: InvoiceStatus = InvoiceStatus.draft
    issueDate: date
    dueDate: date
    items: list[LineItem] = Field(default_factory=list)
    notes: Optional[str] = None
    currencyCode: Optional[str] = None

    @field_validator("currencyCode")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return normalize_currency_code(value) if value is not None else value

    @model_validator(mode="after")
    def validate_dates(self) -> "InvoiceCreate":
        if self.dueDate < self.issueDate:
            raise ValueError("dueDate must be >= issueDate")
        return self


class InvoiceUpdate(RowPayload):
    columns = _INVOICE_COLUMNS
    not_null = ("invoiceNumber", "amount", "status", "issueDate", "dueDate", "items")

    invoiceNumber: Optional[str] = Field(default=None, min_length=1, max_length=100)
    clientId: Optional[UUID] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    status: Optional[InvoiceStatus] = None
    issueDate: Optional[date] = None
    dueDate: Optional[date] = None
    items: Optional[list[LineItem]] = None
    notes: Optional[str] = None
    currencyCode: Optional[str] = None

    @field_validator("currencyCode")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return normalize_currency_code(value) if value is not None else value


class InvoiceResponse(RowResponse):
    columns = {**_INVOICE_COLUMNS, "createdAt": "created_at", "updatedAt": "updated_at"}

    id: UUID
    invoiceNumber: str
    clientId: Optional[UUID]
    amount: Decimal
    status: InvoiceStatus
    issueDate: date
    dueDate: date
    items: list[LineItem]
    notes: Optional[str]
    currencyCode: Optional[str]
    createdAt: datetime
    updatedAt: datetime


_QUOTATION_COLUMNS = {
    "quotationNumber": "quotation_number",
    "clientId": "client_id",
    "issueDate": "issue_date",
    "validUntil": "valid_until",
    "currencyCode": "currency_code",
}


class QuotationCreate(RowPayload):
    columns = _QUOTATION_COLUMNS

    quotationNumber: str = Field(min_length=1, max_length=100)
    clientId: Optional[UUID] = None
    amount: Decimal = Field(ge=0)
    status: QuotationStatus = QuotationStatus.draft
    issueDate: date
    validUntil: date
    items: list[LineItem] = Field(default_factory=list)
    notes: Optional[str] = None
    currencyCode: Optional[str] = None

    @field_validator("currencyCode")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return normalize_currency_code(value) if value is not None else value

    @model_validator(mode="after")
    def validate_dates(self) -> "QuotationCreate":
        if self.validUntil < self.issueDate:
            raise ValueError("validUntil must be >= issueDate")
        return self


class QuotationUpdate(RowPayload):
    columns = _QUOTATION_COLUMNS
    not_null = ("quotationNumber", "amount", "status", "issueDate", "validUntil", "items")

    quotationNumber: Optional[str] = Field(default=None, min_length=1, max_length=100)
    clientId: Optional[UUID] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    status: Optional[QuotationStatus] = None
    issueDate: Optional[date] = None
    validUntil: Optional[date] = None
    items: Optional[list[LineItem]] = None
    notes: Optional[str] = None
    currencyCode: Optional[str] = None

    @field_validator("currencyCode")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return normalize_currency_code(value) if value is not None else value


class QuotationResponse(RowResponse):
    columns = {**_QUOTATION_COLUMNS, "createdAt": "created_at", "updatedAt": "updated_at"}

    id: UUID
    quotationNumber: str
    clientId: Optional[UUID]
    amount: Decimal
    status: QuotationStatus
    issueDate: date
    validUntil: date
    items: list[LineItem]
    notes: Optional[str]
    currencyCode: Optional[str]
    createdAt: datetime
    updatedAt: datetime


_TASK_COLUMNS = {
    "dueDate": "due_date",
    "dueTime": "due_time",
    "clientId": "client_id",
    "reminderMinutes": "reminder_minutes",
    "reminderSent": "reminder_sent",
}


class TaskCreate(RowPayload):
    columns = _TASK_COLUMNS

    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.medium
    dueDate: Optional[date] = None
    dueTime: Optional[time] = None
    clientId: Optional[UUID] = None
    reminderMinutes: Optional[int] = Field(default=None, ge=0)


class TaskUpdate(RowPayload):
    columns = _TASK_COLUMNS
    not_null = ("title", "priority", "completed", "reminderSent")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    completed: Optional[bool] = None
    dueDate: Optional[date] = None
    dueTime: Optional[time] = None
    clientId: Optional[UUID] = None
    reminderMinutes: Optional[int] = Field(default=None, ge=0)
    reminderSent: Optional[bool] = None


class TaskToggle(BaseModel):
    completed: bool


class TaskResponse(RowResponse):
    columns = {**_TASK_COLUMNS, "createdAt": "created_at", "updatedAt": "updated_at"}

    id: UUID
    title: str
    description: Optional[str]
    priority: TaskPriority
    completed: bool
    dueDate: Optional[date]
    dueTime: Optional[time]
    clientId: Optional[UUID]
    reminderMinutes: Optional[int]
    reminderSent: bool
    createdAt: datetime
    updatedAt: datetime


class TaskReminderResponse(BaseModel):
    taskId: UUID
    title: str
    reminderMinutes: int
    notification: Notification


_EVENT_COLUMNS = {
    "eventType": "event_type",
    "startDate": "start_date",
    "endDate": "end_date",
    "allDay": "all_day",
    "taskId": "task_id",
    "clientId": "client_id",
}


class CalendarEventCreate(RowPayload):
    columns = _EVENT_COLUMNS

    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    eventType: EventType = EventType.appointment
    startDate: datetime
    endDate: datetime
    allDay: bool = False
    taskId: Optional[UUID] = None
    clientId: Optional[UUID] = None
    color: Optional[str] = Field(default=None, max_length=32)

    @model_validator(mode="after")
    def validate_period(self) -> "CalendarEventCreate":
        if self.endDate < self.startDate:
            raise ValueError("endDate must be >= startDate")
        return self


class CalendarEventUpdate(RowPayload):
    columns = _EVENT_COLUMNS
    not_null = ("title", "eventType", "startDate", "endDate", "allDay")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    eventType: Optional[EventType] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    allDay: Optional[bool] = None
    taskId: Optional[UUID] = None
    clientId: Optional[UUID] = None
    color: Optional[str] = Field(default=None, max_length=32)


class CalendarEventResponse(RowResponse):
    columns = {**_EVENT_COLUMNS, "createdAt": "created_at", "updatedAt": "updated_at"}

    id: UUID
    title: str
    description: Optional[str]
    eventType: EventType
    startDate: datetime
    endDate: datetime
    allDay: bool
    taskId: Optional[UUID]
    clientId: Optional[UUID]
    color: Optional[str]
    createdAt: datetime
    updatedAt: datetime


class CategoryCreate(RowPayload):
    columns = {"categoryType": "category_type"}

    name: str = Field(min_length=1, max_length=100)
    categoryType: CategoryType

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class CategoryResponse(RowResponse):
    columns = {"categoryType": "category_type", "createdAt": "created_at"}

    id: UUID
    name: str
    categoryType: CategoryType
    createdAt: datetime


class CategoryInitResponse(BaseModel):
    initialized: bool
    created: int


_PROFILE_COLUMNS = {
    "userId": "user_id",
    "fullName": "full_name",
    "avatarUrl": "avatar_url",
    "companyName": "company_name",
    "companyLogo": "company_logo",
    "isSuspended": "is_suspended",
    "currencyPreference": "currency_preference",
}


class ProfileUpdate(RowPayload):
    columns = _PROFILE_COLUMNS

    fullName: Optional[str] = Field(default=None, max_length=200)
    avatarUrl: Optional[str] = None
    companyName: Optional[str] = Field(default=None, max_length=200)
    companyLogo: Optional[str] = None


class ProfileResponse(RowResponse):
    columns = _PROFILE_COLUMNS

    userId: UUID
    fullName: Optional[str]
    avatarUrl: Optional[str]
    companyName: Optional[str]
    companyLogo: Optional[str]
    isSuspended: bool
    currencyPreference: Optional[str]


class ProfilePrivateUpdate(RowPayload):
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class ProfilePrivateResponse(RowResponse):
    columns = {"userId": "user_id"}

    userId: UUID
    email: Optional[str]
    phone: Optional[str]
    address: Optional[str]


class PreferencesResponse(BaseModel):
    language: Language
    currency: str
    currencyPopupDismissedAt: Optional[datetime] = None
    categoriesInitialized: bool = False
    notificationPermission: str = "default"


class LanguageUpdate(BaseModel):
    language: Language


class NotificationPermissionUpdate(BaseModel):
    permission: Literal["default", "granted", "denied"]


class CurrencySyncRequest(BaseModel):
    oldCurrency: str
    newCurrency: str
    rates: Optional[dict[str, Decimal]] = None
    scope: SyncScope = SyncScope.all

    @field_validator("oldCurrency", "newCurrency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return normalize_currency_code(value)

    @field_validator("rates")
    @classmethod
    def validate_rates(cls, value: Optional[dict[str, Decimal]]) -> Optional[dict[str, Decimal]]:
        return normalize_rate_table(value)


class SyncCounts(BaseModel):
    converted: int = 0
    unchanged: int = 0
    failed: int = 0


class CurrencySyncResponse(BaseModel):
    oldCurrency: str
    newCurrency: str
    transactions: SyncCounts
    documents: SyncCounts
    attempts: int
    notification: Optional[Notification] = None


class CurrencyChangeRequest(BaseModel):
    currency: str
    convertRecords: bool = True
    rates: Optional[dict[str, Decimal]] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return normalize_currency_code(value)

    @field_validator("rates")
    @classmethod
    def validate_rates(cls, value: Optional[dict[str, Decimal]]) -> Optional[dict[str, Decimal]]:
        return normalize_rate_table(value)


class CurrencyChangeResponse(BaseModel):
    currency: str
    sync: Optional[CurrencySyncResponse] = None


class ExchangeRatesResponse(BaseModel):
    result: str
    base: str
    rates: dict[str, float]


class SubscriptionResponse(BaseModel):
    plan: str
    status: str
    isActive: bool
    isPaid: bool
    startedAt: Optional[datetime] = None
    expiresAt: Optional[datetime] = None
    paymentId: Optional[str] = None


class CheckoutRequest(BaseModel):
    plan: str
    userName: Optional[str] = None


class CheckoutResponse(BaseModel):
    paymentUrl: str
    paymentId: str


class PaymentConfirmRequest(BaseModel):
    paymentId: str = Field(min_length=1)
    status: str = Field(min_length=1)


class PaymentConfirmResponse(BaseModel):
    received: bool
    processed: bool
    status: str


class ApiKeyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    expiresAt: Optional[datetime] = None


class ApiKeyUpdate(RowPayload):
    columns = {"isActive": "is_active"}
    not_null = ("name", "isActive")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    isActive: Optional[bool] = None


class ApiKeyResponse(RowResponse):
    columns = {
        "keyPrefix": "key_prefix",
        "isActive": "is_active",
        "createdAt": "created_at",
        "lastUsedAt": "last_used_at",
        "expiresAt": "expires_at",
    }

    id: UUID
    name: str
    keyPrefix: str
    isActive: bool
    createdAt: datetime
    lastUsedAt: Optional[datetime]
    expiresAt: Optional[datetime]


class ApiKeyCreatedResponse(ApiKeyResponse):
    key: str


class ApiLogResponse(RowResponse):
    columns = {
        "apiKeyId": "api_key_id",
        "statusCode": "status_code",
        "errorMessage": "error_message",
        "ipAddress": "ip_address",
        "responseTimeMs": "response_time_ms",
        "createdAt": "created_at",
    }

    id: UUID
    apiKeyId: Optional[UUID]
    endpoint: str
    method: str
    source: Optional[str]
    statusCode: int
    errorMessage: Optional[str]
    ipAddress: Optional[str]
    responseTimeMs: Optional[int]
    createdAt: datetime


class ExternalClientRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[ClientStatus] = None
    source: Optional[str] = None


class AdminUserResponse(BaseModel):
    userId: UUID
    email: str
    fullName: Optional[str]
    isSuspended: bool
    roles: list[str]
    subscriptionPlan: str
    subscriptionExpiresAt: Optional[datetime]
    createdAt: datetime


class SuspendRequest(BaseModel):
    suspended: bool


class SystemSettingResponse(BaseModel):
    key: str
    value: Any
    description: Optional[str]
    updatedAt: datetime


class SystemSettingUpdate(BaseModel):
    value: Any
    description: Optional[str] = None


class ExternalSaleRequest(BaseModel):
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=100)
    source: Optional[str] = Field(default=None, max_length=100)
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=500)
    client_email: Optional[str] = None
    client_phone: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return normalize_currency_code(value) if value is not None else value


class AdminPlanUpdate(BaseModel):
    plan: Literal["free", "pro", "business"]
    durationDays: int = Field(default=365, ge=1, le=3650)


class AdminSubscriptionExtend(BaseModel):
    days: int = Field(ge=1, le=3650)


class PlanCounts(BaseModel):
    free: int = 0
    pro: int = 0
    business: int = 0


class AdminStatsResponse(BaseModel):
    totalUsers: int
    totalInvoices: int
    totalQuotations: int
    usersByPlan: PlanCounts
