"""
Ledger journal — append-only JSONL audit trail of reconciliation activity.

One line per pass, per violation and per phase transition, so a breach can
be traced back to the snapshot that caused it without querying the ledger.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

from loguru import logger


class LedgerJournal:
    """Append-only JSONL journal.

    Usage:
        journal = LedgerJournal("data/ledger_journal.jsonl")
        journal.log_pass("2958", as_of, {"created": 3, "updated": 1})
        journal.log_event("PENDING_CONFLICT", {"ticket_id": "162527"})
        entries = journal.read_entries(entry_type="VIOLATION", account_id="2958")
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def log_pass(self, account_id: str, as_of: Any, counts: Dict[str, Any]) -> None:
        """Record the outcome of one reconciliation pass."""
        self._append({"type": "PASS", "account_id": account_id, "as_of": as_of, **counts})

    def log_violation(self, account_id: str, as_of: Any, violation: Dict[str, Any]) -> None:
        self._append({"type": "VIOLATION", "account_id": account_id, "as_of": as_of, **violation})

    def log_transition(self, transition: Dict[str, Any]) -> None:
        self._append({"type": "PHASE_TRANSITION", **transition})
        logger.debug("Journal: logged transition for {}", transition.get("account_id", "?"))

    def log_event(self, event_type: str, details: Dict[str, Any] | None = None) -> None:
        """Log any other event (pending conflict, rejected descriptor, ...)."""
        self._append({"type": event_type, **(details or {})})

    def read_entries(
        self,
        entry_type: str | None = None,
        account_id: str | None = None,
    ) -> List[Dict[str, Any]]:
        """Read journal entries, optionally filtered by type and account."""
        results: List[Dict[str, Any]] = []
        if not self._path.exists():
            return results

        with open(self._path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Journal: skipping malformed line")
                    continue
                if entry_type is not None and entry.get("type") != entry_type:
                    continue
                if account_id is not None and entry.get("account_id") != account_id:
                    continue
                results.append(entry)

        return results

    def _append(self, entry: Dict[str, Any]) -> None:
        """Append a JSON line to the journal file."""
        try:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            logger.error("Journal: failed to write entry: {}", e)
