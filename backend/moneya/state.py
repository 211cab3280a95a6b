import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Hashable, Optional
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, Request

from .auth_utils import new_session_token
from .config import Settings
from .persistence import Persistence
from .services.billing import CheckoutGateway
from .services.exchange_rates import CompositeRateProvider, RateProvider

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "moneya_session"


class SessionRegistry:
    """Bearer sessions kept in process memory; expired ones are purged whenever a session is created."""

    def __init__(self, timeout_minutes: Optional[int] = None, max_age_hours: Optional[int] = None) -> None:
        self.timeout_minutes = timeout_minutes
        self.max_age_hours = max_age_hours
        self._sessions: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: dict[str, Any], now: datetime) -> bool:
        if self.timeout_minutes and (now - session["last_seen"]) > timedelta(minutes=self.timeout_minutes):
            return True
        return bool(self.max_age_hours) and (now - session["created_at"]) > timedelta(hours=self.max_age_hours)

    def purge_expired(self) -> int:
        now = datetime.now(timezone.utc)
        with self._lock:
            expired = [token for token, session in self._sessions.items() if self._expired(session, now)]
            for token in expired:
                del self._sessions[token]
        if expired:
            logger.debug("purged %d expired sessions", len(expired))
        return len(expired)

    def create(self, user_id: UUID) -> str:
        self.purge_expired()
        token = new_session_token()
        now = datetime.now(timezone.utc)
        with self._lock:
            self._sessions[token] = {"user_id": user_id, "created_at": now, "last_seen": now}
        return token

    def resolve(self, token: Optional[str]) -> Optional[UUID]:
        if not token:
            return None
        now = datetime.now(timezone.utc)
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            if self._expired(session, now):
                del self._sessions[token]
                return None
            session["last_seen"] = now
            return session["user_id"]

    def revoke(self, token: Optional[str]) -> None:
        if token:
            with self._lock:
                self._sessions.pop(token, None)

    def revoke_user(self, user_id: UUID) -> None:
        with self._lock:
            for token in [t for t, data in self._sessions.items() if data["user_id"] == user_id]:
                del self._sessions[token]


class ViewCache:
    """Per-owner cache of list views, dropped whenever the owner writes to them.

    Holds at most ``max_entries`` views, evicting the least recently used one.
    ``max_entries=0`` turns caching off: every read goes to the store. The
    cache lives in one process, so it is only enabled for the in-memory backend.
    """

    def __init__(self, max_entries: int = 1024) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[UUID, str, Hashable], Any] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get_or_load(self, user_id: UUID, view: str, params: Hashable, loader: Callable[[], Any]) -> Any:
        if self.max_entries <= 0:
            return loader()
        key = (user_id, view, params)
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return self._entries[key]
        value = loader()
        with self._lock:
            self._entries[key] = value
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return value

    def invalidate(self, user_id: UUID, *views: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == user_id and k[1] in views]:
                del self._entries[key]

    def invalidate_user(self, user_id: UUID) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == user_id]:
                del self._entries[key]

    def cached_views(self, user_id: UUID) -> set[str]:
        with self._lock:
            return {view for owner, view, _ in self._entries if owner == user_id}


@dataclass
class AppState:
    settings: Settings
    persistence: Persistence
    sessions: SessionRegistry
    views: ViewCache
    live_rates: RateProvider
    rates: CompositeRateProvider
    gateways: dict[str, CheckoutGateway] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestContext:
    user_id: UUID
    email: str
    full_name: Optional[str]
    language: str
    currency: str
    token: str


def get_state(request: Request) -> AppState:
    return request.app.state.moneya


def _token_from_header(authorization: Optional[str]) -> str:
    parts = (authorization or "").split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="invalid Authorization header")
    return parts[1].strip()


def get_context(
    state: AppState = Depends(get_state),
    authorization: Optional[str] = Header(default=None),
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> RequestContext:
    token = _token_from_header(authorization) if authorization else session_token
    if not token:
        raise HTTPException(status_code=401, detail="missing session token")
    user_id = state.sessions.resolve(token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="invalid or expired token")
    user = state.persistence.get_user_by_id(user_id)
    if user is None:
        state.sessions.revoke(token)
        raise HTTPException(status_code=401, detail="user not found")
    profile = state.persistence.get_owned_singleton("profiles", user_id) or {}
    if profile.get("is_suspended"):
        raise HTTPException(status_code=403, detail="account suspended")
    preferences = state.persistence.get_owned_singleton("user_preferences", user_id) or {}
    return RequestContext(
        user_id=user_id,
        email=user["email"],
        full_name=user.get("full_name"),
        language=preferences.get("language") or state.settings.default_language,
        currency=profile.get("currency_preference") or state.settings.default_currency,
        token=token,
    )


def is_owner(state: AppState, user_id: UUID) -> bool:
    return bool(state.persistence.list_rows("user_roles", user_id, filters={"role": "owner"}, limit=1))


def get_owner_context(
    state: AppState = Depends(get_state),
    ctx: RequestContext = Depends(get_context),
) -> RequestContext:
    if not is_owner(state, ctx.user_id):
        raise HTTPException(status_code=403, detail="owner role required")
    return ctx
