import asyncio
import logging
import sqlite3
from pathlib import Path

from collectors.cost import CostUsageFetcher
from config import Settings
from models import CostUsageTokenSnapshot, UsageSnapshot, UsageSummary, utcnow
from pricing import CostProvider
from providers.fetcher import UsageFetcher
from providers.registry import ProviderRegistry

log = logging.getLogger(__name__)

# Providers whose local logs (or request history) can back a cost block
_COST_SOURCES = {
    "codex": CostProvider.CODEX,
    "claude": CostProvider.CLAUDE,
    "copilot": CostProvider.COPILOT,
}


class UsageStore:
    """Last snapshot per provider in sqlite, plus the refresh that produces them."""

    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        fetcher: UsageFetcher | None = None,
        costs: CostUsageFetcher | None = None,
        db_path: Path | None = None,
    ):
        self.settings = settings
        self.registry = registry
        self.fetcher = fetcher or UsageFetcher(settings.fetch_timeout_seconds)
        self.costs = costs or CostUsageFetcher(settings)
        self.db_path = Path(db_path or settings.db_path)

    def _get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                provider TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (provider)
            )
        """)
        conn.commit()
        return conn

    def _save(self, snapshots: list[UsageSnapshot], now: str) -> None:
        conn = self._get_conn()
        try:
            for snapshot in snapshots:
                conn.execute(
                    "INSERT OR REPLACE INTO snapshots (provider, data, updated_at) VALUES (?, ?, ?)",
                    (snapshot.provider_id, snapshot.model_dump_json(), now),
                )
            conn.commit()
        finally:
            conn.close()

    def _load(self, provider_id: str | None = None) -> list[tuple[UsageSnapshot, str]]:
        conn = self._get_conn()
        try:
            if provider_id is None:
                rows = conn.execute("SELECT data, updated_at FROM snapshots").fetchall()
            else:
                rows = conn.execute(
                    "SELECT data, updated_at FROM snapshots WHERE provider = ?", (provider_id,)
                ).fetchall()
        finally:
            conn.close()
        return [(UsageSnapshot.model_validate_json(data), updated) for data, updated in rows]

    async def _with_cost(self, snapshot: UsageSnapshot) -> UsageSnapshot:
        """Fill in a cost block from local logs when the live fetch did not bring one."""
        source = _COST_SOURCES.get(snapshot.provider_id)
        if source is None or snapshot.cost is not None:
            return snapshot
        try:
            tokens = await self.costs.load_token_snapshot_async(source)
        except Exception as exc:
            log.warning("Cost scan for %s failed: %s", snapshot.provider_id, exc)
            return snapshot
        cost = tokens.to_provider_cost()
        if cost is not None:
            snapshot = snapshot.model_copy(update={"cost": cost})
        return snapshot

    async def refresh_all(self) -> UsageSummary:
        descriptors = self.registry.all()
        snapshots = await self.fetcher.refresh_all(descriptors, self.settings.strategy_preferences)
        snapshots = list(await asyncio.gather(*(self._with_cost(s) for s in snapshots)))
        now = utcnow().isoformat()
        self._save(snapshots, now)
        failed = [s.provider_id for s in snapshots if not s.ok]
        log.info("Refreshed %d providers (%d with errors: %s)", len(snapshots), len(failed), ", ".join(failed))
        return UsageSummary(snapshots=snapshots, last_refreshed=now)

    async def refresh_one(self, provider_id: str) -> UsageSnapshot | None:
        descriptor = self.registry.get(provider_id)
        if descriptor is None:
            return None
        snapshot = await self.fetcher.fetch(descriptor, self.settings.preference_for(provider_id))
        snapshot = await self._with_cost(snapshot)
        self._save([snapshot], utcnow().isoformat())
        return snapshot

    async def get_summary(self) -> UsageSummary:
        rows = self._load()
        if not rows:
            return await self.refresh_all()
        order = {d.id: i for i, d in enumerate(self.registry.all())}
        rows.sort(key=lambda row: order.get(row[0].provider_id, len(order)))
        return UsageSummary(
            snapshots=[snapshot for snapshot, _ in rows],
            last_refreshed=max(updated for _, updated in rows),
        )

    async def get_service(self, provider_id: str) -> UsageSnapshot | None:
        rows = self._load(provider_id)
        if rows:
            return rows[0][0]
        # Not stored yet, collect fresh
        return await self.refresh_one(provider_id)

    async def get_cost(self, provider_id: str, force_refresh: bool = False) -> CostUsageTokenSnapshot | None:
        source = _COST_SOURCES.get(provider_id)
        if source is None:
            return None
        return await self.costs.load_token_snapshot_async(source, force_refresh)
