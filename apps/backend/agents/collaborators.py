"""
External collaborator interfaces.

The Executor owns a perception/action backend and an execution model; the
Planner owns a planning model. Concrete device backends and model transports
live outside this package and only have to satisfy these protocols.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class Snapshot:
    """A perceived device state."""

    image: bytes
    current_app: Optional[str] = None
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class ActionResult:
    success: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    """The execution model's answer for one step."""

    action: Any = None
    finished: bool = False
    thinking: str = ""
    message: Optional[str] = None
    parse_failed: bool = False

    @property
    def action_type(self) -> Optional[str]:
        if isinstance(self.action, dict):
            metadata = self.action.get("_metadata")
            if isinstance(metadata, str):
                return metadata
            for key in self.action:
                if key not in ("_metadata", "message"):
                    return str(key)
            return None
        if isinstance(self.action, str) and self.action:
            return self.action.split("(", 1)[0].strip() or None
        return None


@runtime_checkable
class PerceptionBackend(Protocol):
    async def capture_state(self) -> Any:
        ...

    async def perform(self, action: Any) -> ActionResult:
        ...


@runtime_checkable
class ExecutionModel(Protocol):
    async def decide(self, messages: list[dict[str, Any]], snapshot: Any) -> Decision:
        ...


@runtime_checkable
class PlanningModel(Protocol):
    async def request(self, messages: list[dict[str, Any]]) -> str:
        ...


def fingerprint(snapshot: Any) -> str:
    """Content hash of a snapshot, used only for equality comparison."""
    custom = getattr(snapshot, "fingerprint", None)
    if callable(custom):
        return str(custom())

    digest = hashlib.sha256()
    if isinstance(snapshot, Snapshot):
        digest.update(snapshot.image)
        digest.update(b"\0")
        digest.update((snapshot.current_app or "").encode("utf-8"))
    elif isinstance(snapshot, (bytes, bytearray, memoryview)):
        digest.update(bytes(snapshot))
    elif isinstance(snapshot, str):
        digest.update(snapshot.encode("utf-8"))
    else:
        # Identity-based equality would make every capture look new.
        if type(snapshot).__eq__ is object.__eq__:
            raise TypeError(
                f"Cannot fingerprint {type(snapshot).__name__}: provide fingerprint() "
                "or content-based equality"
            )
        # Content hash of a value type; raises TypeError for unhashable snapshots.
        digest.update(str(hash(snapshot)).encode("ascii"))
    return digest.hexdigest()
