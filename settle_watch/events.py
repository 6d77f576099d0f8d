"""Raw event model shared by the notification source and the aggregator."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

__all__ = ["EventKind", "RawEvent"]


class EventKind(str, Enum):
    """Kinds of raw change a notification source can report."""

    CREATED = "created"
    CHANGED = "changed"
    RENAMED = "renamed"
    DELETED = "deleted"


@dataclass(frozen=True)
class RawEvent:
    """A single unprocessed notification about one path.

    Attributes:
        path (str): The affected path. For renames this is the new path.
        kind (EventKind): What happened to the path.
        observed_at (float): Monotonic timestamp (seconds) of the observation.
        old_path (Optional[str]): The previous path, only set for renames.
    """

    path: str
    kind: EventKind
    observed_at: float = field(default_factory=time.monotonic)
    old_path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind is EventKind.RENAMED and self.old_path is None:
            raise ValueError("Renamed events require old_path")

    @classmethod
    def created(cls, path: str, observed_at: Optional[float] = None) -> RawEvent:
        return cls._make(path, EventKind.CREATED, observed_at)

    @classmethod
    def changed(cls, path: str, observed_at: Optional[float] = None) -> RawEvent:
        return cls._make(path, EventKind.CHANGED, observed_at)

    @classmethod
    def deleted(cls, path: str, observed_at: Optional[float] = None) -> RawEvent:
        return cls._make(path, EventKind.DELETED, observed_at)

    @classmethod
    def renamed(cls, old_path: str, path: str, observed_at: Optional[float] = None) -> RawEvent:
        return cls._make(path, EventKind.RENAMED, observed_at, old_path=old_path)

    @classmethod
    def _make(
        cls,
        path: str,
        kind: EventKind,
        observed_at: Optional[float],
        old_path: Optional[str] = None,
    ) -> RawEvent:
        if observed_at is None:
            observed_at = time.monotonic()
        return cls(path=path, kind=kind, observed_at=observed_at, old_path=old_path)

    def __str__(self) -> str:
        if self.kind is EventKind.RENAMED:
            return f"{self.kind.value} {self.old_path} -> {self.path}"
        return f"{self.kind.value} {self.path}"
