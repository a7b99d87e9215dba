from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from intake_gate.config import DispatchSettings, QueueSettings, Settings, parse_endpoint_spec
from intake_gate.errors import (
    FatalActionFailure,
    SourceError,
    StorageFailure,
    UpstreamRateLimited,
)
from intake_gate.models import (
    ActionOutcome,
    ActionResult,
    EndpointLimits,
    FetchResult,
    WorkItemStatus,
    WorkItemView,
    WorkItemWrite,
)
from intake_gate.queue.cadence import CadencePolicy
from intake_gate.queue.checkpoint import Checkpoint
from intake_gate.queue.dispatcher import Dispatcher
from intake_gate.queue.rate_limiter import RateLimiter
from intake_gate.queue.usage_store import UsageStore
from intake_gate.queue.work_queue import WorkQueue
from intake_gate.storage.database import Database
from tests.conftest import FakeClock

pytestmark = [
    allure.epic("Intake Gate"),
    allure.feature("Dispatch Cycle"),
]


class FakeSource:
    name = "mentions"

    def __init__(self, *batches: FetchResult | Exception) -> None:
        self.batches = list(batches)
        self.cursors: list[str | None] = []

    def fetch_since(self, cursor: str | None) -> FetchResult:
        self.cursors.append(cursor)
        if not self.batches:
            return FetchResult(items=[])
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


class ScriptedExecutor:
    def __init__(self, script: dict[str, ActionResult | Exception] | None = None) -> None:
        self.script = script or {}
        self.executed: list[str] = []
        self.cycles_ended = 0

    def execute(self, item: WorkItemView) -> ActionResult:
        self.executed.append(item.item_id)
        result = self.script.get(item.item_id, ActionResult(outcome=ActionOutcome.SUCCESS))
        if isinstance(result, Exception):
            raise result
        return result

    def end_cycle(self) -> None:
        self.cycles_ended += 1


def _batch(*ids: int) -> FetchResult:
    return FetchResult(
        items=[WorkItemWrite(item_id=str(item_id), payload="{}") for item_id in ids],
        newest_id=str(ids[-1]) if ids else None,
    )


def _dispatcher(  # noqa: PLR0913
    database: Database,
    clock: FakeClock,
    *,
    source: FakeSource | None,
    executor: ScriptedExecutor,
    fetch_limit: int = 5,
    action_limit: int = 3,
    max_retries: int = 3,
    action_cadence: timedelta | None = None,
) -> Dispatcher:
    endpoints = {
        "fetch": EndpointLimits(name="fetch", short_limit=fetch_limit, fair_share=True),
        "reply": EndpointLimits(
            name="reply",
            short_limit=action_limit,
            fair_share=False,
            priority_exempt=True,
        ),
    }
    return Dispatcher(
        queue=WorkQueue(database, max_retries=max_retries, clock=clock),
        checkpoint=Checkpoint(database, source="mentions", clock=clock),
        rate_limiter=RateLimiter(
            usage_store=UsageStore(database, clock=clock),
            endpoints=endpoints,
            clock=clock,
        ),
        cadence=CadencePolicy(database, clock=clock),
        executor=executor,
        source=source,
        caller_id="agent",
        fetch_endpoint="fetch",
        action_endpoint="reply",
        max_batch=10,
        action_cadence=action_cadence,
    )


def _used(dispatcher: Dispatcher, endpoint: str) -> int:
    return dispatcher.rate_limiter.remaining_capacity(endpoint)[0].used


def test_cycle_fetches_ingests_advances_and_drains(database: Database, clock: FakeClock) -> None:
    source = FakeSource(_batch(1, 2))
    executor = ScriptedExecutor()
    dispatcher = _dispatcher(database, clock, source=source, executor=executor)

    summary = dispatcher.run_cycle()

    assert summary.fetched == 2
    assert summary.ingested == 2
    assert summary.checkpoint == "2"
    assert summary.claimed == 2
    assert summary.completed == 2
    assert executor.executed == ["1", "2"]
    assert executor.cycles_ended == 1
    assert dispatcher.checkpoint.get() == "2"
    assert dispatcher.queue.stats().completed == 2
    assert _used(dispatcher, "fetch") == 1
    assert _used(dispatcher, "reply") == 2

    dispatcher.run_cycle()
    assert source.cursors == [None, "2"]


def test_drain_is_bounded_by_quota_until_window_advances(
    database: Database,
    clock: FakeClock,
) -> None:
    executor = ScriptedExecutor()
    dispatcher = _dispatcher(
        database,
        clock,
        source=FakeSource(_batch(1, 2, 3, 4, 5)),
        executor=executor,
    )

    first = dispatcher.run_cycle()
    second = dispatcher.run_cycle()
    clock.advance(minutes=15)
    third = dispatcher.run_cycle()

    assert (first.affordable, first.claimed, first.completed) == (3, 3, 3)
    assert (second.claimed, second.drain_skipped_reason) == (0, "quota")
    assert (third.claimed, third.completed) == (2, 2)
    assert executor.executed == ["1", "2", "3", "4", "5"]


def test_denied_fetch_is_skipped_and_drain_continues(database: Database, clock: FakeClock) -> None:
    source = FakeSource(_batch(1), _batch(2))
    dispatcher = _dispatcher(
        database,
        clock,
        source=source,
        executor=ScriptedExecutor(),
        fetch_limit=1,
    )
    dispatcher.queue.ingest([WorkItemWrite(item_id="backlog", payload="{}")])

    dispatcher.run_cycle()
    dispatcher.queue.ingest([WorkItemWrite(item_id="late", payload="{}")])
    summary = dispatcher.run_cycle()

    assert summary.fetch_skipped_reason is not None
    assert summary.fetch_skipped_reason.startswith("caller_share_exhausted")
    assert source.cursors == [None]
    assert summary.completed == 1


def test_source_error_is_charged_and_keeps_checkpoint(
    database: Database,
    clock: FakeClock,
) -> None:
    source = FakeSource(SourceError("upstream returned 500", code="http_500"))
    dispatcher = _dispatcher(database, clock, source=source, executor=ScriptedExecutor())
    dispatcher.checkpoint.advance("41")
    dispatcher.queue.ingest([WorkItemWrite(item_id="backlog", payload="{}")])

    summary = dispatcher.run_cycle()

    assert summary.fetch_skipped_reason == "source_error:http_500"
    assert dispatcher.checkpoint.get() == "41"
    assert _used(dispatcher, "fetch") == 1
    assert summary.completed == 1


def test_throttled_fetch_is_not_charged(database: Database, clock: FakeClock) -> None:
    source = FakeSource(UpstreamRateLimited("429", retry_after=60))
    dispatcher = _dispatcher(database, clock, source=source, executor=ScriptedExecutor())

    summary = dispatcher.run_cycle()

    assert summary.fetch_skipped_reason == "rate_limited"
    assert _used(dispatcher, "fetch") == 0


def test_outcomes_map_to_queue_transitions(database: Database, clock: FakeClock) -> None:
    executor = ScriptedExecutor(
        {
            "1": ActionResult(outcome=ActionOutcome.RETRYABLE_ERROR, error="timeout"),
            "2": FatalActionFailure("HTTP 403 duplicate content"),
        },
    )
    dispatcher = _dispatcher(database, clock, source=FakeSource(_batch(1, 2, 3)), executor=executor)

    summary = dispatcher.run_cycle()

    assert (summary.completed, summary.retried, summary.failed) == (1, 1, 1)
    retried = dispatcher.queue.get("1")
    failed = dispatcher.queue.get("2")
    assert retried is not None
    assert failed is not None
    assert retried.status == WorkItemStatus.PENDING
    assert retried.retry_count == 1
    assert failed.status == WorkItemStatus.FAILED
    assert failed.last_error == "HTTP 403 duplicate content"
    assert dispatcher.queue.events("2")[-1].details["matched_rule"] == "typed_fatal"
    assert _used(dispatcher, "reply") == 3


def test_retry_budget_exhaustion_fails_item(database: Database, clock: FakeClock) -> None:
    executor = ScriptedExecutor(
        {"1": ActionResult(outcome=ActionOutcome.RETRYABLE_ERROR, error="503")},
    )
    dispatcher = _dispatcher(
        database,
        clock,
        source=FakeSource(_batch(1)),
        executor=executor,
        max_retries=1,
    )

    summary = dispatcher.run_cycle()

    assert summary.failed == 1
    item = dispatcher.queue.get("1")
    assert item is not None
    assert item.status == WorkItemStatus.FAILED


def test_upstream_throttle_stops_drain_and_releases_rest(
    database: Database,
    clock: FakeClock,
) -> None:
    executor = ScriptedExecutor({"2": UpstreamRateLimited("slow down", retry_after=60)})
    dispatcher = _dispatcher(
        database,
        clock,
        source=FakeSource(_batch(1, 2, 3, 4)),
        executor=executor,
        action_limit=10,
    )

    summary = dispatcher.run_cycle()

    assert executor.executed == ["1", "2"]
    assert (summary.claimed, summary.completed, summary.retried, summary.released) == (4, 1, 0, 3)
    throttled = dispatcher.queue.get("2")
    assert throttled is not None
    assert throttled.status == WorkItemStatus.PENDING
    assert throttled.retry_count == 0
    assert throttled.last_error == "slow down"
    assert dispatcher.queue.events("2")[-1].details["matched_rule"] == "typed_rate_limited"
    for item_id in ("3", "4"):
        released = dispatcher.queue.get(item_id)
        assert released is not None
        assert released.status == WorkItemStatus.PENDING
        assert released.retry_count == 0
    assert _used(dispatcher, "reply") == 1


def test_repeated_upstream_throttle_never_exhausts_retries(
    database: Database,
    clock: FakeClock,
) -> None:
    executor = ScriptedExecutor({"1": UpstreamRateLimited("slow down", retry_after=60)})
    dispatcher = _dispatcher(
        database,
        clock,
        source=FakeSource(_batch(1)),
        executor=executor,
        max_retries=1,
    )

    for _ in range(3):
        summary = dispatcher.run_cycle()
        assert (summary.claimed, summary.released, summary.failed) == (1, 1, 0)
        clock.advance(minutes=15)

    assert executor.executed == ["1", "1", "1"]
    item = dispatcher.queue.get("1")
    assert item is not None
    assert item.status == WorkItemStatus.PENDING
    assert item.retry_count == 0
    assert dispatcher.queue.stats().failed == 0


def test_cadence_allows_one_action_per_interval(database: Database, clock: FakeClock) -> None:
    dispatcher = _dispatcher(
        database,
        clock,
        source=FakeSource(_batch(1, 2, 3)),
        executor=ScriptedExecutor(),
        action_cadence=timedelta(seconds=60),
    )

    first = dispatcher.run_cycle()
    second = dispatcher.run_cycle()
    clock.advance(seconds=60)
    third = dispatcher.run_cycle()

    assert (first.claimed, first.completed) == (1, 1)
    assert (second.claimed, second.drain_skipped_reason) == (0, "cadence")
    assert third.completed == 1
    assert dispatcher.queue.stats().pending == 1


def test_storage_failure_propagates(database: Database, clock: FakeClock) -> None:
    executor = ScriptedExecutor({"1": StorageFailure("disk full")})
    dispatcher = _dispatcher(database, clock, source=FakeSource(_batch(1)), executor=executor)

    with pytest.raises(StorageFailure, match="disk full"):
        dispatcher.run_cycle()


def test_cycle_without_source_only_drains(database: Database, clock: FakeClock) -> None:
    dispatcher = _dispatcher(database, clock, source=None, executor=ScriptedExecutor())
    dispatcher.queue.ingest([WorkItemWrite(item_id="1", payload="{}")])

    summary = dispatcher.run_cycle()

    assert summary.fetch_skipped_reason == "no_source"
    assert summary.completed == 1


def test_from_settings_wires_limits_retries_and_cadence(
    database: Database,
    clock: FakeClock,
) -> None:
    settings = Settings(
        queue=QueueSettings(max_retries=5, max_batch=4),
        dispatch=DispatchSettings(
            caller_id="agent",
            fetch_endpoint="fetch",
            action_endpoint="reply",
            known_callers=("agent", "other"),
            action_cadence_seconds=0,
        ),
        endpoints={
            "fetch": parse_endpoint_spec("fetch:4/-/-:fair"),
            "reply": parse_endpoint_spec("reply:10/-/-:exempt,retries=2"),
        },
    )
    settings.validate()

    dispatcher = Dispatcher.from_settings(
        settings,
        database,
        source=FakeSource(_batch(1, 2, 3, 4, 5, 6)),
        executor=ScriptedExecutor(),
        clock=clock,
    )
    summary = dispatcher.run_cycle()

    assert dispatcher.action_cadence is None
    assert dispatcher.queue.max_retries == 2
    assert summary.claimed == 4
    allocation = dispatcher.rate_limiter.caller_allocation("fetch", "agent")
    assert allocation[0].allowance == 2
    assert allocation[0].used_by_caller == 1
