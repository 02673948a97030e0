"""Human-facing notebook catalog.

Keeps a friendly title and keyword aliases for every prepared notebook so
callers can say "the gaming one" instead of pasting a URL. The workflow only
writes to it after a successful prepare; it never reads it to make protocol
decisions.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

logger = logging.getLogger("notebooklm_bridge.workflow")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CatalogRecord:
    """A prepared notebook as shown to users."""
    id: str
    source_id: str
    source_ref: str
    title: str
    aliases: list[str] = field(default_factory=list)
    last_accessed: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "CatalogRecord":
        return cls(
            id=data["id"],
            source_id=data.get("source_id") or data.get("sourceId", ""),
            source_ref=data.get("source_ref") or data.get("videoUrl", ""),
            title=data.get("title", ""),
            aliases=list(data.get("aliases", [])),
            last_accessed=data.get("last_accessed") or data.get("lastAccessed", 0),
        )


class Catalog:
    """JSON-file catalog of notebooks."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._records: list[CatalogRecord] = self._load()

    def _load(self) -> list[CatalogRecord]:
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                data = json.load(f)
            return [CatalogRecord.from_dict(item) for item in data]
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load catalog {self.path}: {e}")
            return []

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump([asdict(r) for r in self._records], f, indent=2)

    def add(self, record: CatalogRecord) -> CatalogRecord:
        """Insert or update a record by id; aliases already known are kept."""
        record.last_accessed = _now_ms()
        existing = self.get(record.id)
        if existing:
            existing.source_id = record.source_id or existing.source_id
            existing.source_ref = record.source_ref or existing.source_ref
            existing.title = record.title or existing.title
            existing.aliases = sorted(set(existing.aliases) | set(record.aliases))
            existing.last_accessed = record.last_accessed
            record = existing
        else:
            self._records.append(record)
        self._save()
        return record

    update = add

    def get(self, notebook_id: str) -> CatalogRecord | None:
        return next((r for r in self._records if r.id == notebook_id), None)

    def find_by_reference(self, source_ref: str) -> CatalogRecord | None:
        return next((r for r in self._records if r.source_ref == source_ref), None)

    def find(self, keyword: str) -> CatalogRecord | None:
        """Find a record by alias, then by title (case-insensitive substring)."""
        q = keyword.lower()
        for record in self._records:
            if any(q in alias.lower() for alias in record.aliases):
                return record
        for record in self._records:
            if q in record.title.lower():
                return record
        return None

    def last_accessed(self) -> CatalogRecord | None:
        records = self.list()
        return records[0] if records else None

    def touch(self, notebook_id: str) -> None:
        record = self.get(notebook_id)
        if record:
            record.last_accessed = _now_ms()
            self._save()

    def list(self) -> list[CatalogRecord]:
        """Return records, most recently accessed first."""
        return sorted(self._records, key=lambda r: r.last_accessed, reverse=True)

    def remove(self, notebook_id: str) -> bool:
        before = len(self._records)
        self._records = [r for r in self._records if r.id != notebook_id]
        if len(self._records) == before:
            return False
        self._save()
        return True
