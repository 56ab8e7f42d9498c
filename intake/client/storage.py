"""Durable mirrors for the client delivery queue.

Backends are keyed by session id and hold one ``QueueSnapshot`` each. The queue
calls them synchronously after every change.
"""

import logging
import os
import re
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from intake.models.delivery import QueueSnapshot

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "intake_message_queue_"


class QueueStorage(Protocol):
    def load(self, session_id: str) -> QueueSnapshot | None: ...

    def save(self, session_id: str, snapshot: QueueSnapshot) -> None: ...

    def clear(self, session_id: str) -> None: ...


def storage_key(session_id: str) -> str:
    return STORAGE_KEY_PREFIX + re.sub(r"[^A-Za-z0-9_.-]", "_", session_id)


class InMemoryQueueStorage:
    """Keeps serialized snapshots in a dict; mainly for tests and previews."""

    def __init__(self) -> None:
        self.items: dict[str, str] = {}

    def load(self, session_id: str) -> QueueSnapshot | None:
        raw = self.items.get(storage_key(session_id))
        if raw is None:
            return None
        return QueueSnapshot.model_validate_json(raw)

    def save(self, session_id: str, snapshot: QueueSnapshot) -> None:
        self.items[storage_key(session_id)] = snapshot.model_dump_json()

    def clear(self, session_id: str) -> None:
        self.items.pop(storage_key(session_id), None)


class JsonFileQueueStorage:
    """One JSON file per session under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{storage_key(session_id)}.json"

    def load(self, session_id: str) -> QueueSnapshot | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            snapshot = QueueSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable queue snapshot %s: %s", path, e)
            return None
        if snapshot.session_id != session_id:
            logger.warning("Queue snapshot %s belongs to session %s", path, snapshot.session_id)
            return None
        return snapshot

    def save(self, session_id: str, snapshot: QueueSnapshot) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(session_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(snapshot.model_dump_json(), encoding="utf-8")
        # Atomic swap; readers see the old or the new snapshot
        os.replace(tmp, path)

    def clear(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)
