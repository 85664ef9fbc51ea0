from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

MAX_VERSIONS = 2
SNAPSHOT_FIELDS = ("title", "storage_text", "timestamp", "version_id")


def new_version_id(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return f"v_{int(moment.timestamp() * 1000)}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class VersionSnapshot:
    title: str
    storage_text: str
    timestamp: str
    version_id: str

    @classmethod
    def capture(cls, title: str, storage_text: str, moment: datetime | None = None) -> "VersionSnapshot":
        moment = moment or datetime.now(timezone.utc)
        return cls(
            title=title or "",
            storage_text=storage_text,
            timestamp=moment.isoformat(),
            version_id=new_version_id(moment),
        )

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in SNAPSHOT_FIELDS}

    @classmethod
    def from_dict(cls, data: dict) -> "VersionSnapshot":
        missing = [name for name in SNAPSHOT_FIELDS if name not in data]
        if missing:
            raise ValueError(f"snapshot is missing field(s): {', '.join(missing)}")
        if not isinstance(data["storage_text"], str):
            raise ValueError("snapshot storage_text must be a string")
        return cls(**{name: data[name] for name in SNAPSHOT_FIELDS})

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    @classmethod
    def from_json(cls, blob: str) -> "VersionSnapshot":
        try:
            data = json.loads(blob)
        except json.JSONDecodeError as exc:
            raise ValueError(f"snapshot is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("snapshot JSON must be an object")
        return cls.from_dict(data)


class VersionHistory:
    """Newest-first, bounded list of snapshots for one document."""

    def __init__(self, max_versions: int = MAX_VERSIONS):
        if max_versions < 1:
            raise ValueError("max_versions must be at least 1")
        self.max_versions = max_versions
        self._versions = []

    def __len__(self):
        return len(self._versions)

    def versions(self) -> list:
        return list(self._versions)

    def current(self):
        return self._versions[0] if self._versions else None

    def save(self, snapshot: VersionSnapshot) -> VersionSnapshot:
        current = self.current()
        if current is not None and current.storage_text == snapshot.storage_text and current.title == snapshot.title:
            return current
        self._versions.insert(0, snapshot)
        del self._versions[self.max_versions:]
        return snapshot

    def get(self, version_id: str):
        for snapshot in self._versions:
            if snapshot.version_id == version_id:
                return snapshot
        return None

    def to_json(self) -> str:
        return json.dumps([snapshot.to_dict() for snapshot in self._versions], ensure_ascii=False, indent=2)

    @classmethod
    def from_json(cls, blob: str, max_versions: int = MAX_VERSIONS) -> "VersionHistory":
        history = cls(max_versions)
        data = json.loads(blob)
        if not isinstance(data, list):
            raise ValueError("version history JSON must be a list")
        history._versions = [VersionSnapshot.from_dict(item) for item in data][:max_versions]
        return history
