"""Collaborator contracts for the dispatcher."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from intake_gate.models import ActionResult, FetchResult, WorkItemView


class UpstreamSource(Protocol):
    """Interface for the upstream item feed."""

    name: str

    def fetch_since(self, cursor: str | None) -> FetchResult:
        """Fetch items newer than the cursor; may raise SourceError."""
        raise NotImplementedError


class ActionExecutor(Protocol):
    """Interface for whatever acts on a claimed item."""

    def execute(self, item: WorkItemView) -> ActionResult:
        """Perform the action; may raise ActionFailure or return a classified result."""
        raise NotImplementedError


@runtime_checkable
class CycleAwareExecutor(Protocol):
    """Optional hook for executors that batch work per dispatcher cycle."""

    def end_cycle(self) -> None:
        """Flush any per-cycle state once the drain phase is over."""
        raise NotImplementedError
