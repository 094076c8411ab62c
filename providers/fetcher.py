import asyncio
import logging

import transport
from config import AuthPreference
from models import ErrorKind, UsageSnapshot
from providers.base import FetchError, FetchStrategy, ProviderDescriptor
from transport import TransportError

log = logging.getLogger(__name__)

NO_STRATEGIES = "No fetch strategies available"
ALL_FAILED = "All fetch strategies failed"


class UsageFetcher:
    """Runs a provider's strategies in priority order until one succeeds.

    Strategies of one provider are tried strictly one after another; a later
    strategy only runs when every earlier one was skipped or failed. Each
    attempt is bounded by ``timeout`` seconds and a timeout counts as that
    strategy failing. Cancelling the caller aborts the whole provider fetch.

    A timed-out attempt's thread is abandoned, not killed. Its remaining
    transport calls fail fast on the attempt deadline, but work outside
    ``transport`` (such as reading a large local log) can still finish in
    the background while the next strategy runs.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def fetch(
        self,
        descriptor: ProviderDescriptor,
        preference: AuthPreference = AuthPreference.AUTO,
    ) -> UsageSnapshot:
        strategies = descriptor.strategies_for(preference)
        log.debug("[%s] %d strategies available (preference: %s)", descriptor.id, len(strategies), preference.value)
        if not strategies:
            return UsageSnapshot.failure(descriptor.id, NO_STRATEGIES, ErrorKind.NOT_CONFIGURED)

        last_failure: UsageSnapshot | None = None
        all_skipped = True

        for strategy in strategies:
            try:
                ready = await asyncio.to_thread(strategy.can_execute)
            except Exception as exc:
                all_skipped = False
                log.warning("[%s] %s: readiness check failed: %s", descriptor.id, strategy.name, exc)
                last_failure = UsageSnapshot.failure(descriptor.id, str(exc) or type(exc).__name__)
                continue
            if not ready:
                log.debug("[%s] %s: cannot execute, skipping", descriptor.id, strategy.name)
                continue

            all_skipped = False
            log.debug("[%s] %s: executing", descriptor.id, strategy.name)
            snapshot = await self._attempt(descriptor.id, strategy)
            if snapshot.ok:
                log.info("[%s] %s: success", descriptor.id, strategy.name)
                return snapshot
            log.info("[%s] %s: %s", descriptor.id, strategy.name, snapshot.error_message)
            last_failure = snapshot

        if all_skipped:
            log.info("[%s] no strategy could run", descriptor.id)
            return UsageSnapshot.failure(
                descriptor.id,
                descriptor.not_configured_message(preference),
                ErrorKind.NOT_CONFIGURED,
            )

        log.info("[%s] all strategies failed, last error: %s", descriptor.id, last_failure.error_message)
        return UsageSnapshot.failure(
            descriptor.id,
            last_failure.error_message or ALL_FAILED,
            last_failure.error_kind or ErrorKind.UNKNOWN,
            requires_reauth=last_failure.requires_reauth,
        )

    async def _attempt(self, provider_id: str, strategy: FetchStrategy) -> UsageSnapshot:
        # The worker thread cannot be killed; the transport deadline makes its
        # HTTP and CLI calls stop by themselves once the attempt has timed out.
        try:
            with transport.deadline(self.timeout):
                snapshot = await asyncio.wait_for(asyncio.to_thread(strategy.fetch), self.timeout)
        except asyncio.TimeoutError:
            return UsageSnapshot.failure(
                provider_id, f"{strategy.name} timed out after {self.timeout:g}s", ErrorKind.TIMEOUT,
            )
        except FetchError as exc:
            return UsageSnapshot.failure(
                provider_id, exc.message, exc.kind,
                requires_reauth=exc.kind == ErrorKind.AUTH_EXPIRED,
            )
        except TransportError as exc:
            return UsageSnapshot.failure(provider_id, str(exc), ErrorKind.NETWORK)
        except Exception as exc:
            log.exception("[%s] %s raised", provider_id, strategy.name)
            return UsageSnapshot.failure(provider_id, str(exc) or type(exc).__name__)

        if snapshot is None:
            return UsageSnapshot.failure(provider_id, f"{strategy.name} returned no data")
        if not snapshot.provider_id:
            snapshot.provider_id = provider_id
        if not snapshot.ok and snapshot.error_kind is None:
            snapshot.error_kind = ErrorKind.UNKNOWN
        return snapshot

    async def refresh_all(
        self,
        descriptors: list[ProviderDescriptor],
        preferences: dict[str, AuthPreference] | None = None,
    ) -> list[UsageSnapshot]:
        """Fetch every provider concurrently; results keep the input order."""
        preferences = preferences or {}

        async def one(descriptor: ProviderDescriptor) -> UsageSnapshot:
            try:
                return await self.fetch(descriptor, preferences.get(descriptor.id, AuthPreference.AUTO))
            except Exception as exc:
                log.exception("[%s] fetch crashed", descriptor.id)
                return UsageSnapshot.failure(descriptor.id, str(exc) or type(exc).__name__)

        return list(await asyncio.gather(*(one(d) for d in descriptors)))
