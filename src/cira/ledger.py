"""Append-only sync ledger."""

import json
import uuid
from collections import deque
from pathlib import Path

from rich.console import Console

from .clock import utc_now
from .models.ledger import LedgerEvent, LedgerEventType

console = Console(stderr=True)


class LedgerWriter:
    """Append-only ledger writer.

    Writes events to <data_root>/ledger.jsonl.
    Never truncates or rewrites; only appends.
    """

    def __init__(self, ledger_path: Path, run_id: str | None = None):
        """Initialize ledger writer.

        Args:
            ledger_path: Path to ledger.jsonl file
            run_id: Optional run ID; if None, generates a new uuid4
        """
        self.ledger_path = ledger_path
        self.run_id = run_id or str(uuid.uuid4())

    def append_event(
        self,
        event_type: LedgerEventType,
        payload: dict,
        entity_id: str | None = None,
    ) -> LedgerEvent:
        """Append an event to the ledger.

        Args:
            event_type: Type of event
            payload: Event-specific data
            entity_id: Optional capture/collection ID reference

        Returns:
            The created LedgerEvent
        """
        self.ledger_path.parent.mkdir(parents=True, exist_ok=True)

        event = LedgerEvent(
            event_id=str(uuid.uuid4()),
            run_id=self.run_id,
            ts=utc_now(),
            event_type=event_type,
            entity_id=entity_id,
            payload=payload,
        )

        with open(self.ledger_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.model_dump(mode="json")) + "\n")

        return event


def read_ledger_tail(ledger_path: Path, n: int = 20, entity_id: str | None = None) -> list[LedgerEvent]:
    """Read the last N events from the ledger.

    With ``entity_id`` only that capture's or collection's history is
    returned (still the last N of it). Malformed lines are skipped with a
    warning.
    """
    if not ledger_path.exists():
        return []

    with open(ledger_path, "r", encoding="utf-8") as f:
        lines = f.readlines()

    events: deque[LedgerEvent] = deque(maxlen=n)
    malformed_count = 0
    for line in lines if entity_id else lines[-n:]:
        line = line.strip()
        if not line:
            continue
        try:
            event = LedgerEvent.model_validate_json(line)
        except ValueError as e:
            malformed_count += 1
            console.print(f"[yellow]Warning: Skipping malformed ledger line: {e}[/yellow]")
            continue
        if entity_id is None or event.entity_id == entity_id:
            events.append(event)

    if malformed_count > 0:
        console.print(f"[yellow]Skipped {malformed_count} malformed line(s)[/yellow]")

    return list(events)
