"""Source-agnostic description of one advertisable entity.

A ``Resource`` is produced by a source adapter for every membership
notification and consumed once by the record synthesizer. Nothing here is
stored between events.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Tuple


class Action(Enum):
    """What happened to the entity."""

    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


class SourceType(Enum):
    """Kind of membership object a resource was derived from."""

    SERVICE = "service"
    INGRESS = "ingress"


@dataclass(frozen=True)
class Resource:
    """Snapshot of an entity at the time of one event."""

    source_type: SourceType
    action: Action
    names: Tuple[str, ...]
    namespace: str
    ips: Tuple[str, ...]
    without_namespace: bool = False

    @property
    def is_publishable(self) -> bool:
        return bool(self.names) and bool(self.ips)

    def with_action(self, action: Action) -> "Resource":
        return replace(self, action=action)
