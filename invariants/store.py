import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Union

from .errors import ConfigError
from .models import StateSnapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    """
    Last-known snapshot per vault. Entries are only ever replaced whole.

    Only the engine's cycle orchestration writes here; per-vault
    serialization of get -> compare -> put is the engine's job, the store
    itself only guarantees each call is atomic.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, StateSnapshot] = {}
        self._lock = threading.Lock()

    def get(self, vault_id: str) -> Optional[StateSnapshot]:
        with self._lock:
            return self._entries.get(vault_id)

    def put(self, vault_id: str, snapshot: StateSnapshot) -> None:
        if snapshot.vault_id != vault_id:
            raise ValueError(f"Snapshot for '{snapshot.vault_id}' cannot be stored under '{vault_id}'")
        with self._lock:
            entries = dict(self._entries)
            entries[vault_id] = snapshot
            self._persist(entries)
            self._entries = entries

    def vault_ids(self):
        with self._lock:
            return sorted(self._entries)

    def _persist(self, entries: Dict[str, StateSnapshot]) -> None:
        pass


class JsonFileSnapshotStore(SnapshotStore):
    """
    Snapshot store that survives restarts. The whole file is rewritten on
    each put and swapped in with os.replace, so readers never see half a file.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__()
        self.path = Path(path)
        self._entries = self._load()

    def _load(self) -> Dict[str, StateSnapshot]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text())
            if not isinstance(raw, dict):
                raise ValueError("snapshot store must be an object at root")
            entries = {vault_id: StateSnapshot.from_dict(item) for vault_id, item in raw.items()}
        except (ValueError, KeyError, TypeError) as exc:
            raise ConfigError(f"Unreadable snapshot store {self.path}: {exc}") from exc
        logger.info("Loaded %d snapshot(s) from %s", len(entries), self.path)
        return entries

    def _persist(self, entries: Dict[str, StateSnapshot]) -> None:
        payload = {vault_id: snap.to_dict() for vault_id, snap in entries.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
