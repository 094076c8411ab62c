"""Runtime settings, read from ``USAGEBAR_*`` environment variables or ``.env``.

A few fields also honour the environment variables the CLIs themselves use
(``CODEX_HOME``, ``CLAUDE_CONFIG_DIR``).
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthPreference(str, Enum):
    AUTO = "auto"
    CLI = "cli"
    OAUTH = "oauth"
    MANUAL = "manual"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="USAGEBAR_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".usagebar")
    codex_home: Path | None = Field(
        default=None,
        validation_alias=AliasChoices("USAGEBAR_CODEX_HOME", "CODEX_HOME"),
    )
    claude_config_dir: str | None = Field(
        default=None,
        validation_alias=AliasChoices("USAGEBAR_CLAUDE_CONFIG_DIR", "CLAUDE_CONFIG_DIR"),
    )
    cost_history_days: int = Field(default=30, ge=1)
    refresh_min_interval_seconds: int = Field(default=60, ge=0)
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)
    strategy_preferences: dict[str, AuthPreference] = Field(default_factory=dict)
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "usage.db"

    @property
    def cost_cache_dir(self) -> Path:
        return self.data_dir / "cost-usage"

    def codex_sessions_root(self) -> Path:
        if self.codex_home is not None:
            return self.codex_home / "sessions"
        return Path.home() / ".codex" / "sessions"

    def claude_projects_roots(self) -> list[Path]:
        if not self.claude_config_dir or not self.claude_config_dir.strip():
            home = Path.home()
            return [home / ".config" / "claude" / "projects", home / ".claude" / "projects"]
        roots = []
        for part in self.claude_config_dir.split(","):
            part = part.strip()
            if not part:
                continue
            path = Path(part)
            roots.append(path if path.name.lower() == "projects" else path / "projects")
        return roots

    def preference_for(self, provider_id: str) -> AuthPreference:
        return self.strategy_preferences.get(provider_id, AuthPreference.AUTO)


@lru_cache
def get_settings() -> Settings:
    return Settings()
