"""One fetch-ingest-drain cycle over the durable queue."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from intake_gate.config import Settings
from intake_gate.errors import AdmissionDenied, SourceError, StorageFailure, UpstreamRateLimited
from intake_gate.models import (
    ActionOutcome,
    ActionResult,
    CallerPriority,
    CycleSummary,
    WorkItemStatus,
    WorkItemView,
    WorkOutcome,
)
from intake_gate.queue.cadence import CadencePolicy
from intake_gate.queue.checkpoint import Checkpoint
from intake_gate.queue.contracts import ActionExecutor, CycleAwareExecutor, UpstreamSource
from intake_gate.queue.failure_classifier import classify_action_failure
from intake_gate.queue.rate_limiter import RateLimiter
from intake_gate.queue.usage_store import UsageStore
from intake_gate.queue.work_queue import WorkQueue
from intake_gate.storage.common import utc_now
from intake_gate.storage.database import Database

logger = logging.getLogger(__name__)


class Dispatcher:
    """Runs discrete cycles: fetch new items, persist them, drain within quota.

    A cycle never sleeps or waits for quota. Denied admission and source
    errors end the current phase; StorageFailure aborts the cycle.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: WorkQueue,
        checkpoint: Checkpoint,
        rate_limiter: RateLimiter,
        cadence: CadencePolicy,
        executor: ActionExecutor,
        source: UpstreamSource | None,
        caller_id: str,
        action_endpoint: str,
        fetch_endpoint: str | None = None,
        max_batch: int = 10,
        action_cadence: timedelta | None = None,
        priority: CallerPriority = CallerPriority.MEDIUM,
        action_priority: CallerPriority = CallerPriority.MEDIUM,
        owner: str | None = None,
    ) -> None:
        if max_batch <= 0:
            raise ValueError("max_batch must be > 0")
        self.queue = queue
        self.checkpoint = checkpoint
        self.rate_limiter = rate_limiter
        self.cadence = cadence
        self.executor = executor
        self.source = source
        self.caller_id = caller_id
        self.action_endpoint = action_endpoint
        self.fetch_endpoint = fetch_endpoint
        self.max_batch = max_batch
        self.action_cadence = action_cadence
        self.priority = priority
        self.action_priority = action_priority
        self.owner = owner or caller_id

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        database: Database,
        *,
        source: UpstreamSource | None,
        executor: ActionExecutor,
        clock: Callable[[], datetime] = utc_now,
    ) -> Dispatcher:
        """Wire every component against one database from loaded settings."""

        dispatch = settings.dispatch
        max_retries = (
            settings.endpoints[dispatch.action_endpoint].max_retries or settings.queue.max_retries
        )
        return cls(
            queue=WorkQueue(database, max_retries=max_retries, clock=clock),
            checkpoint=Checkpoint(database, source=dispatch.source, clock=clock),
            rate_limiter=RateLimiter(
                usage_store=UsageStore(database, clock=clock),
                endpoints=settings.endpoints,
                known_callers=dispatch.known_callers,
                clock=clock,
            ),
            cadence=CadencePolicy(database, clock=clock),
            executor=executor,
            source=source,
            caller_id=dispatch.caller_id,
            action_endpoint=dispatch.action_endpoint,
            fetch_endpoint=dispatch.fetch_endpoint,
            max_batch=settings.queue.max_batch,
            action_cadence=(
                timedelta(seconds=dispatch.action_cadence_seconds)
                if dispatch.action_cadence_seconds > 0
                else None
            ),
        )

    @property
    def cadence_key(self) -> str:
        return f"action:{self.action_endpoint}"

    def run_cycle(self) -> CycleSummary:
        """Fetch, ingest, advance the checkpoint, then drain what quota allows."""

        summary = CycleSummary()
        self._fetch_and_ingest(summary)
        self._drain(summary)
        if isinstance(self.executor, CycleAwareExecutor):
            self.executor.end_cycle()

        logger.info(
            "Cycle done: fetched=%d ingested=%d claimed=%d completed=%d retried=%d "
            "failed=%d released=%d",
            summary.fetched,
            summary.ingested,
            summary.claimed,
            summary.completed,
            summary.retried,
            summary.failed,
            summary.released,
        )
        return summary

    def _fetch_and_ingest(self, summary: CycleSummary) -> None:
        if self.source is None:
            summary.fetch_skipped_reason = "no_source"
            return

        if self.fetch_endpoint is not None:
            try:
                self.rate_limiter.require(self.fetch_endpoint, self.caller_id, self.priority)
            except AdmissionDenied as denied:
                logger.warning("Skipping fetch: %s", denied)
                summary.fetch_skipped_reason = denied.reason
                return

        cursor = self.checkpoint.get()
        try:
            batch = self.source.fetch_since(cursor)
        except UpstreamRateLimited as error:
            logger.warning("Upstream throttled fetch from %s: %s", self.source.name, error)
            summary.fetch_skipped_reason = "rate_limited"
            return
        except SourceError as error:
            self._record_fetch(success=False)
            logger.warning("Fetch from %s failed (%s): %s", self.source.name, error.code, error)
            summary.fetch_skipped_reason = f"source_error:{error.code}"
            return
        self._record_fetch(success=True, headers=batch.headers)

        summary.fetched = len(batch.items)
        ingested = self.queue.ingest(batch.items)
        summary.ingested = ingested.inserted
        summary.refreshed = ingested.refreshed
        summary.skipped = ingested.skipped

        if batch.newest_id:
            self.checkpoint.advance(batch.newest_id)
            summary.checkpoint = batch.newest_id

    def _record_fetch(self, *, success: bool, headers: dict[str, str] | None = None) -> None:
        if self.fetch_endpoint is None:
            return
        self.rate_limiter.record(self.fetch_endpoint, self.caller_id, success, headers)

    def _drain(self, summary: CycleSummary) -> None:
        budget = self.max_batch
        if self.action_cadence is not None and self.action_cadence > timedelta(0):
            if not self.cadence.allows(self.cadence_key, self.action_cadence):
                summary.drain_skipped_reason = "cadence"
                return
            budget = 1

        affordable = self.rate_limiter.affordable(
            self.action_endpoint,
            self.caller_id,
            self.action_priority,
            cap=budget,
        )
        summary.affordable = affordable
        if affordable == 0:
            summary.drain_skipped_reason = "quota"
            return

        items = self.queue.claim_batch(affordable, owner=self.owner)
        summary.claimed = len(items)
        for index, item in enumerate(items):
            result, details = self._execute(item)
            throttled = self._apply_result(
                item=item,
                result=result,
                details=details,
                summary=summary,
            )
            if throttled:
                summary.released += self.queue.release(
                    [pending.item_id for pending in items[index + 1 :]],
                    owner=self.owner,
                    reason="upstream throttled",
                )
                break

    def _execute(self, item: WorkItemView) -> tuple[ActionResult, dict[str, object] | None]:
        try:
            return self.executor.execute(item), None
        except StorageFailure:
            raise
        except Exception as error:  # noqa: BLE001
            classification = classify_action_failure(error)
            headers = None
            if classification.retry_after is not None:
                headers = {"retry-after": str(classification.retry_after)}
            return (
                ActionResult(
                    outcome=classification.outcome,
                    error=str(error) or type(error).__name__,
                    headers=headers,
                ),
                classification.to_event_details(),
            )

    def _apply_result(
        self,
        *,
        item: WorkItemView,
        result: ActionResult,
        details: dict[str, object] | None,
        summary: CycleSummary,
    ) -> bool:
        """Persist the outcome and book usage; returns True on upstream throttle."""

        if result.outcome == ActionOutcome.SUCCESS:
            view = self.queue.mark_outcome(item.item_id, WorkOutcome.COMPLETED, owner=self.owner)
            self.rate_limiter.record(self.action_endpoint, self.caller_id, True, result.headers)
            if self.action_cadence is not None:
                self.cadence.touch(self.cadence_key)
            if view is None:
                logger.warning("Claim on %s was lost before its outcome was saved", item.item_id)
            else:
                summary.completed += 1
            return False

        if result.outcome == ActionOutcome.FATAL_ERROR:
            view = self.queue.mark_outcome(
                item.item_id,
                WorkOutcome.FAILED,
                result.error,
                owner=self.owner,
                details=details,
            )
            self.rate_limiter.record(self.action_endpoint, self.caller_id, False, result.headers)
            if view is not None:
                summary.failed += 1
            return False

        if result.outcome == ActionOutcome.RATE_LIMITED:
            released = self.queue.release(
                [item.item_id],
                owner=self.owner,
                reason="upstream throttled",
                error=result.error,
                details=details,
            )
            self.rate_limiter.record(
                self.action_endpoint,
                self.caller_id,
                False,
                result.headers,
                rate_limited=True,
            )
            if released:
                summary.released += released
            else:
                logger.warning("Claim on %s was lost before its outcome was saved", item.item_id)
            logger.warning("Upstream throttled %s; stopping drain", self.action_endpoint)
            return True

        view = self.queue.mark_outcome(
            item.item_id,
            WorkOutcome.RETRY,
            result.error,
            owner=self.owner,
            details=details,
        )
        self.rate_limiter.record(self.action_endpoint, self.caller_id, False, result.headers)
        if view is None:
            logger.warning("Claim on %s was lost before its outcome was saved", item.item_id)
        elif view.status == WorkItemStatus.FAILED:
            summary.failed += 1
        else:
            summary.retried += 1
        return False
