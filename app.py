import logging
import sys

from fastapi import FastAPI, HTTPException

from collectors.cost import CostUsageFetcher
from config import Settings, get_settings
from credentials import KeychainSecretStore, MemorySecretStore
from db import UsageStore
from models import CostUsageTokenSnapshot, UsageSnapshot, UsageSummary
from providers.registry import build_default_registry

log = logging.getLogger(__name__)


def build_store(settings: Settings) -> UsageStore:
    secrets = KeychainSecretStore() if sys.platform == "darwin" else MemorySecretStore()
    costs = CostUsageFetcher(settings)
    registry = build_default_registry(settings, secrets, costs=costs)
    return UsageStore(settings, registry, costs=costs)


def create_app(store: UsageStore | None = None) -> FastAPI:
    settings = store.settings if store is not None else get_settings()
    store = store or build_store(settings)
    app = FastAPI(title="AI Usage Monitor")
    app.state.store = store

    @app.on_event("startup")
    async def startup():
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        log.info("Starting with data dir %s", settings.data_dir)
        await store.refresh_all()

    @app.get("/api/summary", response_model=UsageSummary)
    async def summary():
        return await store.get_summary()

    @app.get("/api/usage/{provider}", response_model=UsageSnapshot)
    async def usage(provider: str):
        result = await store.get_service(provider)
        if result is None:
            raise HTTPException(404, f"Unknown provider: {provider}")
        return result

    @app.get("/api/refresh", response_model=UsageSummary)
    async def refresh():
        return await store.refresh_all()

    @app.get("/api/cost/{provider}", response_model=CostUsageTokenSnapshot)
    async def cost(provider: str, refresh: bool = False):
        result = await store.get_cost(provider, force_refresh=refresh)
        if result is None:
            raise HTTPException(404, f"No cost tracking for provider: {provider}")
        return result

    @app.get("/api/providers")
    async def providers():
        return [
            {
                "id": d.id,
                "display_name": d.display_name,
                "primary_label": d.primary_label,
                "secondary_label": d.secondary_label,
                "tertiary_label": d.tertiary_label,
                "dashboard_url": d.dashboard_url,
                "strategies": [{"name": s.name, "kind": s.kind.value, "priority": s.priority} for s in d.strategies],
                "preferences": [p.value for p in d.available_preferences],
                "preference": store.settings.preference_for(d.id).value,
            }
            for d in store.registry.all()
        ]

    return app


app = create_app()
