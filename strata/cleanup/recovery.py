"""
Recovery for stacks stuck in DELETE_FAILED.

Each attempt clears orphans, lists the resources that failed to delete and
reissues the delete retaining them. Retained resources are reported back to
the caller; nothing is dropped silently.
"""

import logging
from typing import List, Optional

from ..errors import RecoveryExhausted
from ..events import EventLog, EventTypes
from ..models import BlockingResource, Operation, StackState
from ..stacks.observer import StackObserver
from ..stacks.status import StackReader
from .models import RecoveryReport
from .orphans import OrphanCleaner

logger = logging.getLogger(__name__)


class RecoveryEngine:
    """Bounded delete retries for one stack at a time."""

    def __init__(self, applier, reader: StackReader, observer: StackObserver,
                 orphans: Optional[OrphanCleaner] = None, max_attempts: int = 3,
                 delete_timeout: Optional[float] = None):
        self.applier = applier
        self.reader = reader
        self.observer = observer
        self.orphans = orphans
        self.max_attempts = max_attempts
        self.delete_timeout = delete_timeout

    def recover_delete(self, stack_name: str, orphan_prefix: Optional[str] = None,
                       max_attempts: Optional[int] = None, attempts_used: int = 0,
                       events: Optional[EventLog] = None) -> RecoveryReport:
        """
        Drive ``stack_name`` to deletion within ``max_attempts`` delete calls.

        Args:
            stack_name: Stack to delete
            orphan_prefix: Naming prefix for the orphan sweep before each retry
            max_attempts: Total delete attempts allowed, default from construction
            attempts_used: Delete calls the caller already made
            events: Optional run log for RECOVERY_ATTEMPT events

        Returns:
            RecoveryReport: succeeded=True with every retained resource

        Raises:
            RecoveryExhausted: Carrying the full report
        """
        limit = max_attempts or self.max_attempts
        report = RecoveryReport(stack_name=stack_name, attempts=attempts_used)

        while True:
            state = self.reader.state(stack_name)
            report.final_state = state
            if state.gone:
                report.succeeded = True
                logger.info(f"{stack_name} deleted after {report.attempts} attempt(s)")
                self._log_retained(report)
                return report

            if report.attempts >= limit:
                break

            if state.in_progress:
                # Let a running operation settle before touching the stack
                self.observer.await_terminal(stack_name, Operation.DELETE, self.delete_timeout)
                continue

            blockers: List[BlockingResource] = []
            if state is StackState.DELETE_FAILED:
                if self.orphans and orphan_prefix:
                    sweep = self.orphans.cleanup_orphans(orphan_prefix)
                    report.orphans_removed += sweep.count
                    for resource_id in sweep.deleted:
                        report.orphan_failures.pop(resource_id, None)
                    report.orphan_failures.update(sweep.failed)
                    for resource_id in sweep.still_present:
                        report.orphan_failures.setdefault(resource_id, "still deleting")
                    if events and (sweep.count or sweep.failed):
                        events.emit(EventTypes.ORPHANS_CLEANED, {
                            "prefix": orphan_prefix,
                            "count": sweep.count,
                            "failed": sweep.failed,
                        })
                blockers = self.reader.blocking_resources(stack_name)
                report.retain(blockers)

            report.attempts += 1
            logger.warning(
                f"Recovery attempt {report.attempts}/{limit} for {stack_name}"
                + (f", retaining {len(blockers)} resource(s)" if blockers else "")
            )
            if events:
                events.emit(EventTypes.RECOVERY_ATTEMPT, {
                    "attempt": report.attempts,
                    "retain": [b.logical_id for b in blockers],
                })

            self.applier.issue_delete(stack_name, retain=[b.logical_id for b in blockers])
            observation = self.observer.await_terminal(stack_name, Operation.DELETE, self.delete_timeout)
            report.final_state = observation.state

        raise RecoveryExhausted(
            f"{stack_name} still exists after {report.attempts} delete attempt(s) "
            f"(state {report.final_state.value}); retained: "
            f"{', '.join(r.logical_id for r in report.retained) or 'none'}",
            report=report,
        )

    def _log_retained(self, report: RecoveryReport) -> None:
        for resource in report.retained:
            logger.warning(
                f"Retained {resource.logical_id} [{resource.resource_type}] "
                f"{resource.physical_id or ''}: delete it manually if it still exists"
            )
