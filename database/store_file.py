"""
FileFlowStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    flows.json
    states.json
    outbound.json
    timers.json
    history.json
    events.json

Features:
  - Survives process restarts (unlike InMemoryFlowStore), including
    pending delay timers and queued messages
  - No external dependencies (no database server)
  - Every mutation rewrites the changed collection via tmp file + rename
  - Single-process only (no cross-process write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import structlog
from collections import defaultdict
from pathlib import Path
from typing import Any

from database.store_memory import InMemoryFlowStore
from models.schemas import (
    FlowDefinition, FlowState, OutboundMessage, FlowTimer,
    MessageHistoryEntry, FlowEvent,
)

logger = structlog.get_logger()

_COLLECTIONS = ["flows", "states", "outbound", "timers", "history", "events"]


class FileFlowStore(InMemoryFlowStore):
    """
    Extends InMemoryFlowStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            self._set_collection(collection, data)
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _set_collection(self, collection: str, data: list[dict[str, Any]]):
        """Restore a collection from loaded JSON data."""
        if collection == "flows":
            flows = [FlowDefinition.load(d) for d in data]
            self._flows = {(f.id, f.version): f for f in flows}
        elif collection == "states":
            states = [FlowState.model_validate(d) for d in data]
            self._states = {s.key: s for s in states}
        elif collection == "outbound":
            messages = [OutboundMessage.model_validate(d) for d in data]
            self._outbound = {m.id: m for m in messages}
        elif collection == "timers":
            timers = [FlowTimer.model_validate(d) for d in data]
            self._timers = {t.id: t for t in timers}
        elif collection == "history":
            self._history = defaultdict(list)
            for d in data:
                entry = MessageHistoryEntry.model_validate(d)
                self._history[entry.contact_id].append(entry)
        elif collection == "events":
            self._events = [FlowEvent.model_validate(d) for d in data]

    def _get_collection_data(self, collection: str) -> list[dict[str, Any]]:
        """Get serializable data for a collection."""
        mapping = {
            "flows": self._flows.values(),
            "states": self._states.values(),
            "outbound": self._outbound.values(),
            "timers": self._timers.values(),
            "history": [e for entries in self._history.values() for e in entries],
            "events": self._events,
        }
        return [record.model_dump(mode="json") for record in mapping[collection]]

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _on_change(self, collection: str):
        self._flush_collection(collection)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")
