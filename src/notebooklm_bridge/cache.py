"""Persistent source cache.

Maps the caller's source reference (exact string, no normalization) to the
remote notebook and source ids, so repeated calls never redo paid setup::

    {
      "https://www.youtube.com/watch?v=abc": {
        "workspaceId": "nb-uuid",
        "sourceId": "src-uuid"
      }
    }

Every write re-reads the file and rewrites it whole. There is no
cross-process lock: one live process per cache file is assumed.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("notebooklm_bridge.workflow")


@dataclass
class CacheEntry:
    """Remote ids for one source reference.

    A workspace-only entry means the add-source step is still pending.
    """
    workspace_id: str | None = None
    source_id: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.workspace_id and self.source_id)

    def to_dict(self) -> dict:
        data = {"workspaceId": self.workspace_id}
        if self.source_id:
            data["sourceId"] = self.source_id
        return data

    @classmethod
    def from_value(cls, value) -> "CacheEntry | None":
        """Build an entry from a stored value, accepting legacy shapes.

        Older files stored a bare notebook id string, or used
        notebookId/notebook_id/source_id keys.
        """
        if isinstance(value, str):
            return cls(workspace_id=value or None)
        if not isinstance(value, dict):
            return None
        workspace_id = value.get("workspaceId") or value.get("notebookId") or value.get("notebook_id")
        source_id = value.get("sourceId") or value.get("source_id")
        if not workspace_id:
            return None
        return cls(workspace_id=workspace_id, source_id=source_id or None)


class SourceCache:
    """Read-modify-write JSON cache keyed by source reference."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load source cache {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(data, f, indent=2)

    def get(self, source_ref: str) -> CacheEntry | None:
        return CacheEntry.from_value(self._load().get(source_ref))

    def set(self, source_ref: str, entry: CacheEntry) -> None:
        data = self._load()
        data[source_ref] = entry.to_dict()
        self._save(data)

    def remove(self, source_ref: str) -> bool:
        data = self._load()
        if source_ref not in data:
            return False
        del data[source_ref]
        self._save(data)
        return True

    def find_by_workspace(self, workspace_id: str) -> list[str]:
        """Return the source references whose entry points at ``workspace_id``."""
        refs = []
        for source_ref, value in self._load().items():
            entry = CacheEntry.from_value(value)
            if entry and entry.workspace_id == workspace_id:
                refs.append(source_ref)
        return refs

    def all(self) -> dict[str, CacheEntry]:
        entries = {}
        for source_ref, value in self._load().items():
            entry = CacheEntry.from_value(value)
            if entry:
                entries[source_ref] = entry
        return entries
