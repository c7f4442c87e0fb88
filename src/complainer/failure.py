"""Failed Mesos task record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass(frozen=True)
class Failure:
    """A terminated Mesos task reported as failed, errored or lost."""

    id: str
    name: str
    slave: str
    framework: str = ""
    image: str = ""
    state: str = "UNKNOWN"
    started: datetime = EPOCH
    finished: datetime = EPOCH
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the failure for JSON payloads."""
        return {
            "id": self.id,
            "name": self.name,
            "slave": self.slave,
            "framework": self.framework,
            "image": self.image,
            "state": self.state,
            "started": self.started.isoformat(),
            "finished": self.finished.isoformat(),
            "lifetime_seconds": (self.finished - self.started).total_seconds(),
            "labels": dict(self.labels),
        }

    def __str__(self) -> str:
        return f"{self.name} ({self.id}) from {self.slave}"
