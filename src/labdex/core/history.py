"""
Labdex Usage History

Remembers which entries were activated for which query so frequently
used results float to the top.  Stored as a small JSON document::

    {"project:42": {"res infra": {"amount": 3, "last_used": 1718000000}}}
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)

MAX_AMOUNT = 10
POINTS_PER_USE = 10
DECAY_SECONDS = 30 * 24 * 3600


def _clean_record(record) -> Optional[Dict[str, int]]:
    """Normalize one stored activation record; None when it cannot be used."""
    if not isinstance(record, dict):
        return None
    try:
        return {
            "amount": int(record.get("amount", 0)),
            "last_used": int(record.get("last_used", 0)),
        }
    except (TypeError, ValueError):
        return None


class HistoryStore(Protocol):
    """Interface the query engine and service object rely on."""

    def load(self) -> None: ...

    def save(self, query: str, identifier: str) -> None: ...

    def calc_usage_score(self, query: str, identifier: str) -> int: ...

    def remove(self, identifier: str) -> None: ...


class UsageHistory:
    """JSON-file backed :class:`HistoryStore`. Thread-safe."""

    def __init__(self, path: Path | None = None):
        """
        Args:
            path: JSON file location. ``None`` keeps the history in memory only.
        """
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Dict[str, int]]] = {}

    def load(self) -> None:
        """Read the history file; a missing or corrupt file yields an empty history."""
        with self._lock:
            self._data = {}
            if self.path is None or not self.path.exists():
                return
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.error(f"Could not load usage history from {self.path}: {e}")
                return
            if not isinstance(raw, dict):
                logger.error(f"Ignoring usage history in {self.path}: not a JSON object")
                return
            for ident, queries in raw.items():
                if not isinstance(queries, dict):
                    continue
                records = {}
                for stored_query, record in queries.items():
                    cleaned = _clean_record(record)
                    if cleaned is None:
                        logger.warning(f"Dropping malformed history record for {ident!r}")
                        continue
                    records[stored_query] = cleaned
                if records:
                    self._data[ident] = records
            logger.debug(f"Loaded usage history for {len(self._data)} entries")

    def save(self, query: str, identifier: str) -> None:
        """Record one activation of *identifier* for *query* and persist."""
        with self._lock:
            queries = self._data.setdefault(identifier, {})
            record = queries.setdefault(query, {"amount": 0, "last_used": 0})
            record["amount"] = int(record.get("amount", 0)) + 1
            record["last_used"] = int(time.time())
            self._persist()

    def remove(self, identifier: str) -> None:
        """Forget every activation of *identifier* and persist."""
        with self._lock:
            if self._data.pop(identifier, None) is not None:
                self._persist()

    def calc_usage_score(self, query: str, identifier: str, now: Optional[float] = None) -> int:
        """
        Usage boost for *identifier* under *query*.

        Considers stored queries that start with *query* (all of them for an
        empty query).  Each yields ``min(amount, 10) * 10`` decayed linearly
        to zero over 30 days since its last use; the best one wins.
        """
        now = time.time() if now is None else now
        with self._lock:
            queries = self._data.get(identifier)
            if not queries:
                return 0
            best = 0.0
            for stored_query, record in queries.items():
                if query and not stored_query.startswith(query):
                    continue
                base = min(int(record.get("amount", 0)), MAX_AMOUNT) * POINTS_PER_USE
                age = max(0.0, now - float(record.get("last_used", 0)))
                decayed = base * max(0.0, 1.0 - age / DECAY_SECONDS)
                best = max(best, decayed)
            return int(best)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _persist(self) -> None:
        # caller holds the lock
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            logger.error(f"Could not write usage history to {self.path}: {e}")
