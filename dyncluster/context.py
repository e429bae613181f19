from __future__ import annotations

import time
from dataclasses import dataclass, replace

SYSTEM_IDENTITY = "system"


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, and with what authority.

    Built once per request (or once for the daemon's own background work)
    and passed read-only through every cluster operation. ``deadline`` is a
    ``time.monotonic()`` instant inherited from the enclosing request scope,
    or None when the caller imposes no deadline.
    """

    identity: str
    is_system: bool = False
    deadline: float | None = None

    def with_timeout(self, seconds: float) -> "ActorContext":
        deadline = time.monotonic() + max(0.0, float(seconds))
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return replace(self, deadline=deadline)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def can_access(self, owner: str) -> bool:
        return self.is_system or owner == self.identity


def new_context(identity: str, is_system: bool, parent: ActorContext | None = None) -> ActorContext:
    deadline = parent.deadline if parent is not None else None
    return ActorContext(identity=identity, is_system=is_system, deadline=deadline)


def system_context() -> ActorContext:
    return new_context(SYSTEM_IDENTITY, True)
