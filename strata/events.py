"""
Run event logging in NDJSON format.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .envman.redact import redact_value
from .state import create_stack_dir, get_stack_dir

logger = logging.getLogger(__name__)

EVENTS_FILE = "events.ndjson"


class EventTypes:
    CONTEXT_OK = "CONTEXT_OK"
    GATE_OK = "GATE_OK"
    GATE_REFUSED = "GATE_REFUSED"
    TEMPLATES_PUBLISHED = "TEMPLATES_PUBLISHED"
    APPLY_ISSUED = "APPLY_ISSUED"
    APPLY_NOOP = "APPLY_NOOP"
    STACK_TERMINAL = "STACK_TERMINAL"
    DRAIN_DONE = "DRAIN_DONE"
    DRAIN_TIMEOUT = "DRAIN_TIMEOUT"
    REAP_DONE = "REAP_DONE"
    REAP_PARTIAL = "REAP_PARTIAL"
    DELETE_ISSUED = "DELETE_ISSUED"
    RECOVERY_ATTEMPT = "RECOVERY_ATTEMPT"
    ORPHANS_CLEANED = "ORPHANS_CLEANED"
    OUTPUTS_WRITTEN = "OUTPUTS_WRITTEN"
    TEARDOWN_DONE = "TEARDOWN_DONE"
    ERROR = "ERROR"


class EventLog:
    """Append-only event log for one stack."""

    def __init__(self, stack_name: str, state_dir: Optional[str] = None):
        self.stack_name = stack_name
        self.state_dir = state_dir

    @property
    def path(self):
        return get_stack_dir(self.stack_name, self.state_dir) / EVENTS_FILE

    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Append an event to the stack's events.ndjson file.

        Args:
            event_type: One of EventTypes
            data: Event payload; string values are redacted
        """
        create_stack_dir(self.stack_name, self.state_dir)
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "data": {key: redact_value(value) for key, value in (data or {}).items()},
        }

        with open(self.path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")
            f.flush()

    def read(self) -> List[Dict[str, Any]]:
        """Read all events, skipping malformed lines."""
        if not self.path.exists():
            return []

        events = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if line:
                    try:
                        events.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue

        return events

    def last(self) -> Optional[Dict[str, Any]]:
        events = self.read()
        return events[-1] if events else None


class NullEventLog(EventLog):
    """Event log that records nothing, used for dry runs."""

    def __init__(self, stack_name: str = "dry-run"):
        super().__init__(stack_name)

    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        logger.debug(f"[{event_type}] {data or {}}")

    def read(self) -> List[Dict[str, Any]]:
        return []
