from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorKind(str, Enum):
    NOT_CONFIGURED = "not_configured"
    NETWORK = "network"
    AUTH_EXPIRED = "auth_expired"
    PARSE = "parse"  # reached the source but could not read the payload
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class RateWindow(BaseModel):
    used_percent: float = 0.0
    window_minutes: int | None = None
    resets_at: datetime | None = None
    reset_description: str | None = None  # used when no absolute time is known
    used: float | None = None
    limit: float | None = None
    unit: str | None = None
    label: str | None = None  # e.g. "Session", "Weekly", "Sonnet"

    @field_validator("used_percent")
    @classmethod
    def _clamp_percent(cls, value: float) -> float:
        return min(100.0, max(0.0, value))

    @classmethod
    def from_counts(cls, used: float, limit: float, **kwargs) -> "RateWindow":
        """Build a window whose percentage is derived from raw used/limit units."""
        percent = used / limit * 100 if limit > 0 else 0.0
        return cls(used_percent=percent, used=used, limit=limit, **kwargs)


class ProviderIdentity(BaseModel):
    email: str | None = None
    plan_type: str | None = None
    account_id: str | None = None


class ProviderCost(BaseModel):
    session_cost_usd: float | None = None
    session_tokens: int | None = None
    total_cost_usd: float = 0.0
    total_tokens: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    cost_breakdown: dict[str, float] | None = None  # model -> cost


class UsageSnapshot(BaseModel):
    provider_id: str = ""
    primary: RateWindow | None = None
    secondary: RateWindow | None = None
    tertiary: RateWindow | None = None
    cost: ProviderCost | None = None
    identity: ProviderIdentity | None = None
    fetched_at: datetime = Field(default_factory=utcnow)
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    is_loading: bool = False
    requires_reauth: bool = False
    requires_upgrade: bool = False
    upgrade_url: str | None = None

    @property
    def ok(self) -> bool:
        # An error message always wins over whatever data came along with it
        return self.error_message is None

    @classmethod
    def failure(
        cls,
        provider_id: str,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        requires_reauth: bool = False,
    ) -> "UsageSnapshot":
        return cls(
            provider_id=provider_id,
            error_message=message,
            error_kind=kind,
            requires_reauth=requires_reauth,
        )


class ModelBreakdown(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_name: str
    cost_usd: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None


class CostUsageDailyEntry(BaseModel):
    date: str  # YYYY-MM-DD
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None
    total_tokens: int | None = None
    cost_usd: float | None = None
    models_used: list[str] = []
    model_breakdowns: list[ModelBreakdown] = []


class CostUsageSummary(BaseModel):
    total_input_tokens: int | None = None
    total_output_tokens: int | None = None
    total_cache_read_tokens: int | None = None
    total_cache_creation_tokens: int | None = None
    total_tokens: int | None = None
    total_cost_usd: float | None = None


class CostUsageDailyReport(BaseModel):
    data: list[CostUsageDailyEntry] = []
    summary: CostUsageSummary | None = None


class CostUsageTokenSnapshot(BaseModel):
    session_tokens: int | None = None
    session_cost_usd: float | None = None
    last_30_days_tokens: int | None = None
    last_30_days_cost_usd: float | None = None
    daily: list[CostUsageDailyEntry] = []
    updated_at: datetime = Field(default_factory=utcnow)

    def to_provider_cost(self) -> ProviderCost | None:
        if not self.daily:
            return None
        breakdown: dict[str, float] = {}
        for entry in self.daily:
            for item in entry.model_breakdowns:
                if item.cost_usd is not None:
                    breakdown[item.model_name] = breakdown.get(item.model_name, 0.0) + item.cost_usd
        dates = [entry.date for entry in self.daily]
        return ProviderCost(
            session_cost_usd=self.session_cost_usd,
            session_tokens=self.session_tokens,
            total_cost_usd=self.last_30_days_cost_usd or 0.0,
            total_tokens=self.last_30_days_tokens,
            start_date=datetime.fromisoformat(min(dates)).replace(tzinfo=timezone.utc),
            end_date=datetime.fromisoformat(max(dates)).replace(tzinfo=timezone.utc),
            cost_breakdown=breakdown or None,
        )


class UsageSummary(BaseModel):
    snapshots: list[UsageSnapshot] = []
    last_refreshed: str | None = None
