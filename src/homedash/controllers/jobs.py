"""Remote job execution tracked until completion."""

from __future__ import annotations

from typing import Any, Dict, Optional

from homedash.controllers.base import OutcomeReporter
from homedash.core.errors import ProbeExhausted
from homedash.core.models import ActionKind, JobAck, JobStatus
from homedash.core.settings import TrackerPolicy
from homedash.core.store import Slice
from homedash.core.tracker import ActionOutcome, ActionTracker, OutcomeKind, StoreSlot, TrackedAction
from homedash.services.backend import DashboardClient
from homedash.utils.logging import get_logger


def job_failure(status: JobStatus) -> Optional[str]:
    if status.failed:
        return status.error or "unknown error"
    return None


def describe_job(outcome: ActionOutcome) -> str:
    if outcome.outcome is OutcomeKind.SUCCEEDED:
        status: Optional[JobStatus] = outcome.last_status
        produced = len(status.outputs) if status else 0
        return f"Job {outcome.target_id} completed ({produced} outputs)"
    if outcome.outcome is OutcomeKind.CANCELLED:
        return f"Job {outcome.target_id} cancelled"
    if outcome.outcome is OutcomeKind.TIMED_OUT:
        if isinstance(outcome.error, ProbeExhausted):
            return f"Job {outcome.target_id}: status unavailable after {outcome.attempts_used} checks"
        return f"Job {outcome.target_id} timed out after {outcome.attempts_used} checks"
    return f"Job {outcome.target_id} failed: {outcome.reason or 'unknown error'}"


class JobController:
    """Submits job definitions and follows their progress into the ``jobs`` slice."""

    def __init__(
        self,
        *,
        client: DashboardClient,
        tracker: ActionTracker,
        reporter: OutcomeReporter,
        policy: Optional[TrackerPolicy] = None,
    ) -> None:
        self.client = client
        self.tracker = tracker
        self.reporter = reporter
        self.policy = policy or TrackerPolicy(budget=120, interval_seconds=1.0, error_interval_seconds=2.0)
        self.logger = get_logger("JobController")

    def execute(self, target_id: str, definition: Dict[str, Any]) -> TrackedAction:
        async def probe(ack: JobAck) -> JobStatus:
            return await self.client.probe_job_status(ack.job_id)

        self.logger.info("Submitting job %s", target_id)
        action = self.tracker.track(
            target_id,
            ActionKind.JOB_EXECUTE,
            issue=lambda: self.client.issue_job(definition),
            probe=probe,
            is_done=lambda status: status.completed,
            is_failed=job_failure,
            budget=self.policy.budget,
            interval=self.policy.interval_seconds,
            error_interval=self.policy.error_interval_seconds,
            slot=StoreSlot(Slice.JOBS, target_id),
            clear_slot=True,
        )
        self.reporter.watch(action, describe_job)
        return action

    def cancel(self, target_id: str) -> bool:
        return self.tracker.cancel(target_id, ActionKind.JOB_EXECUTE) > 0
