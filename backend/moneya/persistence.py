from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterable
from uuid import UUID, uuid4

from fastapi import HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .auth_utils import hash_password, verify_password
from .config import Settings
from .store import OWNED_TABLES, InMemoryStore

if TYPE_CHECKING:
    from .services.currency_sync import PlannedConversion

logger = logging.getLogger(__name__)

Filters = dict[str, Any]
Ranges = dict[str, tuple[Any, Any]]
Ordering = list[tuple[str, bool]]

JSON_COLUMNS = {"items", "metadata", "setting_value"}

TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "clients": ("name", "email", "phone", "company", "status", "notes"),
    "transactions": ("type", "amount", "currency_code", "description", "category", "date", "client_id"),
    "invoices": ("invoice_number", "client_id", "amount", "status", "issue_date", "due_date", "items", "notes", "currency_code"),
    "quotations": ("quotation_number", "client_id", "amount", "status", "issue_date", "valid_until", "items", "notes", "currency_code"),
    "tasks": ("title", "description", "priority", "completed", "due_date", "due_time", "client_id", "reminder_minutes", "reminder_sent"),
    "calendar_events": ("title", "description", "event_type", "start_date", "end_date", "all_day", "task_id", "client_id", "color"),
    "user_categories": ("name", "category_type"),
    "subscriptions": ("plan", "status", "payment_id", "amount", "currency", "started_at", "expires_at"),
    "payments": ("provider", "provider_payment_id", "plan", "amount", "currency", "status", "metadata"),
    "profiles": ("full_name", "avatar_url", "company_name", "company_logo", "is_suspended", "currency_preference"),
    "profiles_private": ("email", "phone", "address"),
    "user_preferences": ("language", "currency_popup_dismissed_at", "categories_initialized", "notification_permission"),
    "api_keys": ("name", "key_prefix", "key_hash", "is_active", "last_used_at", "expires_at"),
    "api_logs": ("api_key_id", "endpoint", "method", "source", "status_code", "error_message", "ip_address", "request_body", "response_time_ms"),
    "user_roles": ("role",),
}

ROW_DEFAULTS: dict[str, dict[str, Any]] = {
    "clients": {"status": "active"},
    "tasks": {"priority": "medium", "completed": False, "reminder_sent": False},
    "calendar_events": {"event_type": "appointment", "all_day": False},
    "invoices": {"status": "draft", "items": []},
    "quotations": {"status": "draft", "items": []},
    "subscriptions": {"plan": "free", "status": "active"},
    "payments": {"status": "pending"},
    "profiles": {"is_suspended": False},
    "user_preferences": {"categories_initialized": False, "notification_permission": "default"},
    "api_keys": {"is_active": True},
}


class StoreError(RuntimeError):
    """Raised when the backing store fails (network, SQL, constraint)."""


def _check_columns(table: str, values: dict[str, Any]) -> None:
    allowed = TABLE_COLUMNS.get(table)
    if allowed is None:
        raise ValueError(f"unknown table: {table}")
    unknown = set(values) - set(allowed)
    if unknown:
        raise ValueError(f"unknown columns for {table}: {', '.join(sorted(unknown))}")


def _not_found(table: str, row_id: UUID) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{table} not found or access denied: {row_id}")


class Persistence:
    def register_user(self, email: str, password: str, full_name: str | None) -> dict[str, Any]:
        raise NotImplementedError

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_users(self, limit: int = 50) -> list[dict[str, Any]]:
        raise NotImplementedError

    def delete_user(self, user_id: UUID) -> None:
        raise NotImplementedError

    def count_rows(self, table: str) -> int:
        """Row count across every owner, for admin dashboards."""
        raise NotImplementedError

    def list_all_rows(self, table: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def insert_row(self, table: str, user_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_rows(
        self,
        table: str,
        user_id: UUID,
        filters: Filters | None = None,
        ranges: Ranges | None = None,
        order_by: Ordering | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get_row(self, table: str, user_id: UUID, row_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_row(self, table: str, user_id: UUID, row_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def delete_row(self, table: str, user_id: UUID, row_id: UUID) -> None:
        raise NotImplementedError

    def get_owned_singleton(self, table: str, user_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def upsert_owned_singleton(self, table: str, user_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def ensure_profiles(self, user_id: UUID, email: str | None, full_name: str | None, default_language: str) -> bool:
        raise NotImplementedError

    def find_api_key_by_hash(self, key_hash: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def find_payment(self, provider_payment_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def apply_currency_conversions(self, user_id: UUID, conversions: Iterable[PlannedConversion]) -> set[UUID]:
        raise NotImplementedError

    def list_system_settings(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    def upsert_system_setting(self, key: str, value: Any, description: str | None) -> dict[str, Any]:
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store or InMemoryStore()

    def register_user(self, email: str, password: str, full_name: str | None) -> dict[str, Any]:
        for row in self.store.users.values():
            if row["email"] == email:
                raise HTTPException(status_code=409, detail="email already registered")
        user_id = self.store.make_id()
        user_row = {"id": user_id, "email": email, "full_name": full_name, "created_at": self.store.now()}
        self.store.users[user_id] = user_row
        self.store.user_credentials[user_id] = hash_password(password)
        return dict(user_row)

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        for user_id, row in self.store.users.items():
            if row["email"] == email:
                stored_hash = self.store.user_credentials.get(user_id)
                if stored_hash and verify_password(password, stored_hash):
                    return dict(row)
                return None
        return None

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        row = self.store.users.get(user_id)
        return dict(row) if row else None

    def list_users(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = sorted(self.store.users.values(), key=lambda r: r["created_at"], reverse=True)
        return [dict(r) for r in rows[:limit]]

    def delete_user(self, user_id: UUID) -> None:
        self.store.users.pop(user_id, None)
        self.store.user_credentials.pop(user_id, None)
        for name in OWNED_TABLES:
            table = self.store.table(name)
            for row_id in [k for k, v in table.items() if v.get("user_id") == user_id]:
                del table[row_id]

    def count_rows(self, table: str) -> int:
        _check_columns(table, {})
        return len(self.store.table(table))

    def list_all_rows(self, table: str) -> list[dict[str, Any]]:
        _check_columns(table, {})
        return [dict(row) for row in self.store.table(table).values()]

    def insert_row(self, table: str, user_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        _check_columns(table, values)
        now = self.store.now()
        row = {column: None for column in TABLE_COLUMNS[table]}
        row.update(ROW_DEFAULTS.get(table, {}))
        row.update(values)
        row.update({"id": self.store.make_id(), "user_id": user_id, "created_at": now, "updated_at": now})
        self.store.table(table)[row["id"]] = row
        return dict(row)

    def _owned(self, table: str, user_id: UUID) -> list[dict[str, Any]]:
        return [row for row in self.store.table(table).values() if row.get("user_id") == user_id]

    def list_rows(
        self,
        table: str,
        user_id: UUID,
        filters: Filters | None = None,
        ranges: Ranges | None = None,
        order_by: Ordering | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = self._owned(table, user_id)
        for column, expected in (filters or {}).items():
            rows = [r for r in rows if r.get(column) == expected]
        for column, (low, high) in (ranges or {}).items():
            if low is not None:
                rows = [r for r in rows if r.get(column) is not None and r[column] >= low]
            if high is not None:
                rows = [r for r in rows if r.get(column) is not None and r[column] <= high]
        for column, descending in reversed(order_by or []):
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=descending)
            rows = missing + present if descending else present + missing
        if limit is not None:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    def get_row(self, table: str, user_id: UUID, row_id: UUID) -> dict[str, Any] | None:
        row = self.store.table(table).get(row_id)
        if row is None or row.get("user_id") != user_id:
            return None
        return dict(row)

    def update_row(self, table: str, user_id: UUID, row_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        _check_columns(table, values)
        row = self.store.table(table).get(row_id)
        if row is None or row.get("user_id") != user_id:
            raise _not_found(table, row_id)
        row.update(values)
        row["updated_at"] = self.store.now()
        return dict(row)

    def delete_row(self, table: str, user_id: UUID, row_id: UUID) -> None:
        rows = self.store.table(table)
        row = rows.get(row_id)
        if row is None or row.get("user_id") != user_id:
            raise _not_found(table, row_id)
        del rows[row_id]

    def get_owned_singleton(self, table: str, user_id: UUID) -> dict[str, Any] | None:
        rows = self._owned(table, user_id)
        return dict(rows[0]) if rows else None

    def upsert_owned_singleton(self, table: str, user_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        _check_columns(table, values)
        rows = self._owned(table, user_id)
        if not rows:
            return self.insert_row(table, user_id, values)
        return self.update_row(table, user_id, rows[0]["id"], values)

    def ensure_profiles(self, user_id: UUID, email: str | None, full_name: str | None, default_language: str) -> bool:
        created = False
        if not self._owned("profiles", user_id):
            self.insert_row("profiles", user_id, {"full_name": full_name})
            created = True
        if not self._owned("profiles_private", user_id):
            self.insert_row("profiles_private", user_id, {"email": email})
            created = True
        if not self._owned("user_preferences", user_id):
            self.insert_row("user_preferences", user_id, {"language": default_language})
            created = True
        return created

    def find_api_key_by_hash(self, key_hash: str) -> dict[str, Any] | None:
        for row in self.store.table("api_keys").values():
            if row.get("key_hash") == key_hash:
                return dict(row)
        return None

    def find_payment(self, provider_payment_id: str) -> dict[str, Any] | None:
        for row in self.store.table("payments").values():
            if row.get("provider_payment_id") == provider_payment_id:
                return dict(row)
        return None

    def apply_currency_conversions(self, user_id: UUID, conversions: Iterable[PlannedConversion]) -> set[UUID]:
        # Validate every guard before touching a row so the batch lands all at once.
        accepted: list[tuple[dict[str, Any], PlannedConversion]] = []
        for conversion in conversions:
            row = self.store.table(conversion.table).get(conversion.record_id)
            if row is None or row.get("user_id") != user_id:
                continue
            if row.get("currency_code") != conversion.expected_currency_code:
                continue
            if Decimal(str(row.get("amount") or 0)) != conversion.expected_amount:
                continue
            accepted.append((row, conversion))
        now = self.store.now()
        for row, conversion in accepted:
            row["amount"] = conversion.amount
            if conversion.items is not None:
                row["items"] = conversion.items
            row["currency_code"] = conversion.currency_code
            row["updated_at"] = now
        return {conversion.record_id for _, conversion in accepted}

    def list_system_settings(self) -> list[dict[str, Any]]:
        return sorted((dict(r) for r in self.store.system_settings.values()), key=lambda r: r["setting_key"])

    def upsert_system_setting(self, key: str, value: Any, description: str | None) -> dict[str, Any]:
        now = self.store.now()
        row = self.store.system_settings.get(key)
        if row is None:
            row = {"id": self.store.make_id(), "setting_key": key, "description": description, "created_at": now}
            self.store.system_settings[key] = row
        row["setting_value"] = value
        if description is not None:
            row["description"] = description
        row["updated_at"] = now
        return dict(row)


class PostgresPersistence(Persistence):
    def __init__(self, database_url: str) -> None:
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)

    @staticmethod
    def _bind(values: dict[str, Any]) -> dict[str, Any]:
        return {
            key: json.dumps(value, default=str) if key in JSON_COLUMNS and value is not None else value
            for key, value in values.items()
        }

    @staticmethod
    def _placeholder(column: str) -> str:
        return f"cast(:{column} as jsonb)" if column in JSON_COLUMNS else f":{column}"

    def _execute(self, conn: Connection, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        result = conn.execute(text(sql), params or {})
        if result.returns_rows:
            return [dict(row._mapping) for row in result.fetchall()]
        return []

    def _run(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                return self._execute(conn, sql, params)
        except SQLAlchemyError as exc:
            logger.error("postgres statement failed: %s", exc.__class__.__name__)
            raise StoreError(exc.__class__.__name__) from exc

    def register_user(self, email: str, password: str, full_name: str | None) -> dict[str, Any]:
        existing = self._run("select id from users where lower(email) = lower(:email) limit 1", {"email": email})
        if existing:
            raise HTTPException(status_code=409, detail="email already registered")
        return self._run(
            """
            insert into users (id, email, password_hash, full_name)
            values (:id, :email, :password_hash, :full_name)
            returning id, email, full_name, created_at
            """,
            {"id": uuid4(), "email": email, "password_hash": hash_password(password), "full_name": full_name},
        )[0]

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        rows = self._run(
            "select id, email, full_name, created_at, password_hash from users where lower(email) = lower(:email) limit 1",
            {"email": email},
        )
        if not rows or not verify_password(password, rows[0]["password_hash"]):
            return None
        row = rows[0]
        row.pop("password_hash", None)
        return row

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        rows = self._run("select id, email, full_name, created_at from users where id = :id", {"id": user_id})
        return rows[0] if rows else None

    def list_users(self, limit: int = 50) -> list[dict[str, Any]]:
        return self._run(
            "select id, email, full_name, created_at from users order by created_at desc limit :limit",
            {"limit": limit},
        )

    def delete_user(self, user_id: UUID) -> None:
        # Owned tables reference users(id) on delete cascade.
        self._run("delete from users where id = :id", {"id": user_id})

    def count_rows(self, table: str) -> int:
        _check_columns(table, {})
        return self._run(f"select count(*) as total from {table}")[0]["total"]

    def list_all_rows(self, table: str) -> list[dict[str, Any]]:
        _check_columns(table, {})
        return self._run(f"select * from {table} order by created_at")

    def insert_row(self, table: str, user_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        _check_columns(table, values)
        merged = {**ROW_DEFAULTS.get(table, {}), **values}
        columns = ["id", "user_id", *merged.keys()]
        placeholders = [":id", ":user_id", *(self._placeholder(c) for c in merged)]
        return self._run(
            f"insert into {table} ({', '.join(columns)}) values ({', '.join(placeholders)}) returning *",
            {"id": uuid4(), "user_id": user_id, **self._bind(merged)},
        )[0]

    def list_rows(
        self,
        table: str,
        user_id: UUID,
        filters: Filters | None = None,
        ranges: Ranges | None = None,
        order_by: Ordering | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        if table not in TABLE_COLUMNS:
            raise ValueError(f"unknown table: {table}")
        known = set(TABLE_COLUMNS[table]) | {"id", "created_at", "updated_at"}
        clauses = ["user_id = :user_id"]
        params: dict[str, Any] = {"user_id": user_id}
        for idx, (column, expected) in enumerate((filters or {}).items()):
            if column not in known:
                raise ValueError(f"unknown column for {table}: {column}")
            clauses.append(f"{column} = :f{idx}")
            params[f"f{idx}"] = expected
        for idx, (column, (low, high)) in enumerate((ranges or {}).items()):
            if column not in known:
                raise ValueError(f"unknown column for {table}: {column}")
            if low is not None:
                clauses.append(f"{column} >= :lo{idx}")
                params[f"lo{idx}"] = low
            if high is not None:
                clauses.append(f"{column} <= :hi{idx}")
                params[f"hi{idx}"] = high
        sql = f"select * from {table} where {' and '.join(clauses)}"
        if order_by:
            for column, _ in order_by:
                if column not in known:
                    raise ValueError(f"unknown column for {table}: {column}")
            sql += " order by " + ", ".join(f"{c} {'desc' if d else 'asc'}" for c, d in order_by)
        if limit is not None:
            sql += " limit :limit"
            params["limit"] = limit
        return self._run(sql, params)

    def get_row(self, table: str, user_id: UUID, row_id: UUID) -> dict[str, Any] | None:
        rows = self.list_rows(table, user_id, filters={"id": row_id}, limit=1)
        return rows[0] if rows else None

    def update_row(self, table: str, user_id: UUID, row_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        _check_columns(table, values)
        assignments = [f"{c} = {self._placeholder(c)}" for c in values]
        assignments.append("updated_at = now()")
        rows = self._run(
            f"update {table} set {', '.join(assignments)} where id = :id and user_id = :user_id returning *",
            {"id": row_id, "user_id": user_id, **self._bind(values)},
        )
        if not rows:
            raise _not_found(table, row_id)
        return rows[0]

    def delete_row(self, table: str, user_id: UUID, row_id: UUID) -> None:
        if table not in TABLE_COLUMNS:
            raise ValueError(f"unknown table: {table}")
        rows = self._run(
            f"delete from {table} where id = :id and user_id = :user_id returning id",
            {"id": row_id, "user_id": user_id},
        )
        if not rows:
            raise _not_found(table, row_id)

    def get_owned_singleton(self, table: str, user_id: UUID) -> dict[str, Any] | None:
        rows = self.list_rows(table, user_id, limit=1)
        return rows[0] if rows else None

    def upsert_owned_singleton(self, table: str, user_id: UUID, values: dict[str, Any]) -> dict[str, Any]:
        _check_columns(table, values)
        merged = {**ROW_DEFAULTS.get(table, {}), **values}
        columns = ["id", "user_id", *merged.keys()]
        placeholders = [":id", ":user_id", *(self._placeholder(c) for c in merged)]
        updates = [f"{c} = excluded.{c}" for c in values] + ["updated_at = now()"]
        return self._run(
            f"""
            insert into {table} ({', '.join(columns)}) values ({', '.join(placeholders)})
            on conflict (user_id) do update set {', '.join(updates)}
            returning *
            """,
            {"id": uuid4(), "user_id": user_id, **self._bind(merged)},
        )[0]

    def ensure_profiles(self, user_id: UUID, email: str | None, full_name: str | None, default_language: str) -> bool:
        statements = [
            ("insert into profiles (id, user_id, full_name) values (:id, :user_id, :value) on conflict (user_id) do nothing returning id", full_name),
            ("insert into profiles_private (id, user_id, email) values (:id, :user_id, :value) on conflict (user_id) do nothing returning id", email),
            ("insert into user_preferences (id, user_id, language) values (:id, :user_id, :value) on conflict (user_id) do nothing returning id", default_language),
        ]
        created = False
        try:
            with self.engine.begin() as conn:
                for sql, value in statements:
                    if self._execute(conn, sql, {"id": uuid4(), "user_id": user_id, "value": value}):
                        created = True
        except SQLAlchemyError as exc:
            raise StoreError(exc.__class__.__name__) from exc
        return created

    def find_api_key_by_hash(self, key_hash: str) -> dict[str, Any] | None:
        rows = self._run("select * from api_keys where key_hash = :key_hash limit 1", {"key_hash": key_hash})
        return rows[0] if rows else None

    def find_payment(self, provider_payment_id: str) -> dict[str, Any] | None:
        rows = self._run(
            "select * from payments where provider_payment_id = :payment_id limit 1",
            {"payment_id": provider_payment_id},
        )
        return rows[0] if rows else None

    def apply_currency_conversions(self, user_id: UUID, conversions: Iterable[PlannedConversion]) -> set[UUID]:
        applied: set[UUID] = set()
        try:
            with self.engine.begin() as conn:
                for conversion in conversions:
                    if conversion.table not in ("transactions", "invoices", "quotations"):
                        raise ValueError(f"not a monetary table: {conversion.table}")
                    assignments = "amount = :amount, currency_code = :currency_code, updated_at = now()"
                    params: dict[str, Any] = {
                        "id": conversion.record_id,
                        "user_id": user_id,
                        "amount": conversion.amount,
                        "currency_code": conversion.currency_code,
                        "expected_code": conversion.expected_currency_code,
                        "expected_amount": conversion.expected_amount,
                    }
                    if conversion.items is not None:
                        assignments += ", items = cast(:items as jsonb)"
                        params["items"] = json.dumps(conversion.items, default=str)
                    rows = self._execute(
                        conn,
                        f"""
                        update {conversion.table} set {assignments}
                        where id = :id and user_id = :user_id
                          and currency_code is not distinct from :expected_code
                          and amount = :expected_amount
                        returning id
                        """,
                        params,
                    )
                    if rows:
                        applied.add(conversion.record_id)
        except SQLAlchemyError as exc:
            logger.error("currency conversion batch rolled back: %s", exc.__class__.__name__)
            raise StoreError(exc.__class__.__name__) from exc
        return applied

    def list_system_settings(self) -> list[dict[str, Any]]:
        return self._run("select * from system_settings order by setting_key")

    def upsert_system_setting(self, key: str, value: Any, description: str | None) -> dict[str, Any]:
        return self._run(
            """
            insert into system_settings (id, setting_key, setting_value, description)
            values (:id, :key, cast(:value as jsonb), :description)
            on conflict (setting_key) do update
              set setting_value = excluded.setting_value,
                  description = coalesce(excluded.description, system_settings.description),
                  updated_at = now()
            returning *
            """,
            {"id": uuid4(), "key": key, "value": json.dumps(value, default=str), "description": description},
        )[0]


def get_persistence(settings: Settings) -> Persistence:
    if settings.storage_backend == "postgres":
        return PostgresPersistence(settings.database_url)
    return InMemoryPersistence()
