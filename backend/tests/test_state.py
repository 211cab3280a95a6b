import inspect
from dataclasses import replace
from datetime import timedelta
from uuid import uuid4

from moneya import main
from moneya.main import create_app
from moneya.persistence import InMemoryPersistence
from moneya.services.exchange_rates import StaticRateProvider
from moneya.state import SessionRegistry, ViewCache


def test_idle_sessions_are_purged_when_a_session_is_created() -> None:
    registry = SessionRegistry(timeout_minutes=1)
    stale = registry.create(uuid4())
    registry._sessions[stale]["last_seen"] -= timedelta(minutes=5)

    fresh = registry.create(uuid4())
    assert len(registry) == 1
    assert registry.resolve(stale) is None
    assert registry.resolve(fresh) is not None


def test_sessions_expire_after_max_age_even_when_active() -> None:
    registry = SessionRegistry(max_age_hours=1)
    user_id = uuid4()
    token = registry.create(user_id)
    assert registry.resolve(token) == user_id

    registry._sessions[token]["created_at"] -= timedelta(hours=2)
    assert registry.purge_expired() == 1
    assert registry.resolve(token) is None


def test_view_cache_evicts_least_recently_used_view() -> None:
    cache = ViewCache(max_entries=2)
    user_id = uuid4()
    loads: list[str] = []

    def loader(name: str):
        def _load():
            loads.append(name)
            return name

        return _load

    cache.get_or_load(user_id, "clients", None, loader("clients"))
    cache.get_or_load(user_id, "tasks", None, loader("tasks"))
    cache.get_or_load(user_id, "clients", None, loader("clients"))
    cache.get_or_load(user_id, "invoices", None, loader("invoices"))

    assert len(cache) == 2
    assert cache.cached_views(user_id) == {"clients", "invoices"}
    assert loads == ["clients", "tasks", "invoices"]


def test_disabled_view_cache_always_loads() -> None:
    cache = ViewCache(max_entries=0)
    calls = []
    for _ in range(3):
        cache.get_or_load(uuid4(), "clients", None, lambda: calls.append(1))
    assert len(calls) == 3
    assert len(cache) == 0


def test_view_cache_is_off_for_postgres_storage(settings) -> None:
    postgres = replace(settings, storage_backend="postgres")
    app = create_app(postgres, persistence=InMemoryPersistence(), rate_provider=StaticRateProvider())
    assert app.state.moneya.views.max_entries == 0

    memory = create_app(replace(settings, view_cache_size=16), rate_provider=StaticRateProvider())
    assert memory.state.moneya.views.max_entries == 16


def test_handlers_calling_rate_providers_run_in_threadpool() -> None:
    for handler in (main.get_exchange_rates, main.run_currency_sync, main.update_currency, main.create_checkout):
        assert not inspect.iscoroutinefunction(handler), handler.__name__
