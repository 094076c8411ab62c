from collectors.cost import CostUsageFetcher
from config import Settings
from credentials import SecretStore
from providers import claude, codex, copilot, cursor, zai
from providers.base import ProviderDescriptor
from transport import CommandRunner, HttpClient


class ProviderRegistry:
    """Ordered collection of provider descriptors; registration order is display order."""

    def __init__(self, descriptors: list[ProviderDescriptor] | None = None):
        self._providers: dict[str, ProviderDescriptor] = {}
        for descriptor in descriptors or []:
            self.register(descriptor)

    def register(self, descriptor: ProviderDescriptor) -> None:
        self._providers[descriptor.id] = descriptor

    def get(self, provider_id: str) -> ProviderDescriptor | None:
        return self._providers.get(provider_id)

    def all(self) -> list[ProviderDescriptor]:
        return list(self._providers.values())

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)


def build_default_registry(
    settings: Settings,
    secrets: SecretStore,
    http: HttpClient | None = None,
    runner: CommandRunner | None = None,
    costs: CostUsageFetcher | None = None,
) -> ProviderRegistry:
    """Build the providers in display order.

    When ``costs`` is given, Copilot's per-model premium requests from the
    billing API are recorded into its request history on every fetch.
    """
    http = http or HttpClient(settings.fetch_timeout_seconds)
    runner = runner or CommandRunner()
    copilot_sink = costs.save_copilot_month_usage if costs is not None else None
    return ProviderRegistry([
        codex.build_descriptor(runner, settings.codex_sessions_root()),
        claude.build_descriptor(http, runner, secrets),
        cursor.build_descriptor(http, secrets),
        copilot.build_descriptor(http, secrets, copilot_sink),
        zai.build_descriptor(http, secrets),
    ])
