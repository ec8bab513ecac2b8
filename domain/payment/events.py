"""
Payment domain events.

Status change events are short-lived breadcrumbs: they tell a polling client
that a webhook or background revalidation changed the answer it was given.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ChangeSource(str, Enum):
    WEBHOOK = "webhook"
    REVALIDATE = "revalidate"


@dataclass
class StatusChangeEvent:
    provider_reference: str
    old_status: str
    new_status: str
    source: ChangeSource
    changed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_reference": self.provider_reference,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "changed_at": self.changed_at.isoformat(),
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusChangeEvent":
        changed_at = datetime.fromisoformat(data["changed_at"])
        if changed_at.tzinfo is None:
            changed_at = changed_at.replace(tzinfo=timezone.utc)
        return cls(
            provider_reference=str(data["provider_reference"]),
            old_status=str(data.get("old_status") or ""),
            new_status=str(data.get("new_status") or ""),
            source=ChangeSource(data.get("source") or ChangeSource.REVALIDATE.value),
            changed_at=changed_at,
        )
