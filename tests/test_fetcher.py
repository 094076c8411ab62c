import asyncio
import time

import pytest

import transport
from config import AuthPreference
from conftest import StubStrategy, ok_snapshot
from models import ErrorKind, UsageSnapshot
from providers.base import AuthExpiredError, FetchError, ProviderDescriptor, StrategyKind
from providers.fetcher import NO_STRATEGIES, UsageFetcher
from transport import TransportError


def descriptor(*strategies, **kwargs):
    return ProviderDescriptor("test", "Test", list(strategies), **kwargs)


class SlowStrategy(StubStrategy):
    def fetch(self):
        self.fetch_calls += 1
        time.sleep(0.5)
        return ok_snapshot()


class BrokenCheck(StubStrategy):
    def can_execute(self):
        raise RuntimeError("keychain locked")


@pytest.mark.asyncio
async def test_falls_through_to_first_working_strategy():
    skipped = StubStrategy("p1", 1, ready=False)
    failing = StubStrategy("p2", 2, error=FetchError("boom", ErrorKind.NETWORK))
    working = StubStrategy("p3", 3, result=ok_snapshot(percent=42))
    never = StubStrategy("p4", 4, result=ok_snapshot())

    snapshot = await UsageFetcher().fetch(descriptor(never, working, failing, skipped))

    assert snapshot.ok
    assert snapshot.primary.used_percent == 42
    assert skipped.fetch_calls == 0
    assert failing.fetch_calls == 1
    assert working.fetch_calls == 1
    assert never.check_calls == 0


@pytest.mark.asyncio
async def test_all_skipped_reports_not_configured():
    d = descriptor(StubStrategy("a", 1, ready=False), default_not_configured="Please log in.")
    snapshot = await UsageFetcher().fetch(d)
    assert snapshot.error_message == "Please log in."
    assert snapshot.error_kind == ErrorKind.NOT_CONFIGURED


@pytest.mark.asyncio
async def test_all_failed_reports_last_error():
    d = descriptor(
        StubStrategy("a", 1, error=FetchError("first", ErrorKind.PARSE)),
        StubStrategy("b", 2, error=AuthExpiredError("token expired")),
    )
    snapshot = await UsageFetcher().fetch(d)
    assert snapshot.error_message == "token expired"
    assert snapshot.error_kind == ErrorKind.AUTH_EXPIRED
    assert snapshot.requires_reauth


@pytest.mark.asyncio
async def test_failed_snapshot_counts_as_failure():
    failed = UsageSnapshot.failure("test", "HTTP 500", ErrorKind.NETWORK)
    backup = StubStrategy("b", 2, result=ok_snapshot())
    snapshot = await UsageFetcher().fetch(descriptor(StubStrategy("a", 1, result=failed), backup))
    assert snapshot.ok
    assert backup.fetch_calls == 1


@pytest.mark.asyncio
async def test_transport_and_unexpected_errors_are_classified():
    net = await UsageFetcher().fetch(descriptor(StubStrategy("a", 1, error=TransportError("refused"))))
    assert net.error_kind == ErrorKind.NETWORK
    other = await UsageFetcher().fetch(descriptor(StubStrategy("a", 1, error=KeyError("x"))))
    assert other.error_kind == ErrorKind.UNKNOWN
    assert not other.ok


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    slow = SlowStrategy("slow", 1)
    snapshot = await UsageFetcher(timeout=0.05).fetch(descriptor(slow))
    assert snapshot.error_kind == ErrorKind.TIMEOUT
    assert snapshot.error_message == "slow timed out after 0.05s"


class StallingStrategy(StubStrategy):
    """Stalls, then makes a transport-bounded call like an HTTP strategy would."""

    gave_up = False

    def fetch(self):
        self.fetch_calls += 1
        time.sleep(0.2)
        try:
            transport.remaining_timeout(30.0)
        except TransportError:
            self.gave_up = True
            raise
        return ok_snapshot()


class BudgetRecorder(StubStrategy):
    budget = None

    def fetch(self):
        self.fetch_calls += 1
        self.budget = transport.remaining_timeout(30.0)
        return ok_snapshot()


@pytest.mark.asyncio
async def test_attempt_deadline_bounds_transport_calls():
    recorder = BudgetRecorder("a", 1)
    await UsageFetcher(timeout=2).fetch(descriptor(recorder))
    assert 0 < recorder.budget <= 2
    # Outside an attempt there is no deadline
    assert transport.remaining_timeout(30.0) == 30.0


@pytest.mark.asyncio
async def test_timed_out_attempt_stops_at_its_deadline():
    stalling = StallingStrategy("stalling", 1)
    backup = StubStrategy("backup", 2, result=ok_snapshot(percent=5))

    snapshot = await UsageFetcher(timeout=0.05).fetch(descriptor(stalling, backup))
    assert snapshot.primary.used_percent == 5

    await asyncio.sleep(0.4)
    assert stalling.gave_up


@pytest.mark.asyncio
async def test_readiness_check_errors_count_as_failures():
    snapshot = await UsageFetcher().fetch(descriptor(BrokenCheck("a", 1)))
    assert snapshot.error_message == "keychain locked"
    assert snapshot.error_kind == ErrorKind.UNKNOWN


@pytest.mark.asyncio
async def test_empty_strategy_list():
    snapshot = await UsageFetcher().fetch(descriptor())
    assert snapshot.error_message == NO_STRATEGIES
    assert snapshot.error_kind == ErrorKind.NOT_CONFIGURED


@pytest.mark.asyncio
async def test_provider_id_is_filled_in():
    snapshot = await UsageFetcher().fetch(descriptor(StubStrategy("a", 1, result=ok_snapshot(provider_id=""))))
    assert snapshot.provider_id == "test"


@pytest.mark.asyncio
async def test_preference_filters_strategies_and_adds_hint():
    cli = StubStrategy("cli", 1, ready=False, kind=StrategyKind.CLI)
    oauth = StubStrategy("oauth", 2, result=ok_snapshot(), kind=StrategyKind.OAUTH)
    d = descriptor(cli, oauth, not_configured={AuthPreference.CLI: "CLI not available."})

    snapshot = await UsageFetcher().fetch(d, AuthPreference.CLI)
    assert snapshot.error_message == "CLI not available. (CLI mode selected)"
    assert oauth.check_calls == 0

    assert (await UsageFetcher().fetch(d, AuthPreference.OAUTH)).ok


def test_preference_without_matches_falls_back_to_all():
    cached = StubStrategy("logs", 2, kind=StrategyKind.CACHED)
    cli = StubStrategy("cli", 1, kind=StrategyKind.CLI)
    d = descriptor(cached, cli)
    assert d.strategies_for(AuthPreference.CLI) == [cli, cached]
    assert d.strategies_for(AuthPreference.MANUAL) == [cached]
    assert d.available_preferences == [AuthPreference.AUTO, AuthPreference.CLI]

    bare = descriptor(StubStrategy("x", 1, kind=StrategyKind.OAUTH))
    assert bare.strategies_for(AuthPreference.MANUAL) == bare.strategies


@pytest.mark.asyncio
async def test_refresh_all_isolates_providers():
    good = ProviderDescriptor("good", "Good", [StubStrategy("a", 1, result=ok_snapshot(provider_id="good"))])
    bad = ProviderDescriptor("bad", "Bad", [StubStrategy("a", 1, error=FetchError("down", ErrorKind.NETWORK))])
    idle = ProviderDescriptor("idle", "Idle", [StubStrategy("a", 1, ready=False)])

    results = await UsageFetcher().refresh_all([bad, good, idle], {"idle": AuthPreference.AUTO})

    assert [s.provider_id for s in results] == ["bad", "good", "idle"]
    assert [s.ok for s in results] == [False, True, False]
    assert results[0].error_message == "down"


@pytest.mark.asyncio
async def test_cancellation_propagates():
    slow = SlowStrategy("slow", 1)
    task = asyncio.ensure_future(UsageFetcher(timeout=5).fetch(descriptor(slow)))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
