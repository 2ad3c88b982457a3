"""Operation descriptors buffered by a write transaction.

Each descriptor is an immutable record of one logical mutation and the
operands it was enqueued with.  Nothing here touches the database; the
executor interprets descriptors at commit time.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any


class AggregateKind(str, enum.Enum):
    SET = "set"
    LIST = "list"
    HASH = "hash"


@dataclass(frozen=True)
class Operation:
    @property
    def target(self) -> str:
        """Human-readable name of the key / job / queue this operation touches."""
        raise NotImplementedError

    def describe(self) -> str:
        return f"{type(self).__name__}({self.target})"


# ── Jobs ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StateData:
    name: str
    reason: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExpireJob(Operation):
    job_id: int
    expire_in: timedelta

    @property
    def target(self) -> str:
        return f"job '{self.job_id}'"


@dataclass(frozen=True)
class PersistJob(Operation):
    job_id: int

    @property
    def target(self) -> str:
        return f"job '{self.job_id}'"


@dataclass(frozen=True)
class SetJobState(Operation):
    """Append a state row and make it the job's current state."""

    job_id: int
    state: StateData

    @property
    def target(self) -> str:
        return f"job '{self.job_id}'"


@dataclass(frozen=True)
class AddJobState(Operation):
    """Append a state row to the job's history only."""

    job_id: int
    state: StateData

    @property
    def target(self) -> str:
        return f"job '{self.job_id}'"


@dataclass(frozen=True)
class AddToQueue(Operation):
    queue: str
    job_id: int

    @property
    def target(self) -> str:
        return f"queue '{self.queue}'"


# ── Keyed aggregates ────────────────────────────────────────────


@dataclass(frozen=True)
class KeyedOperation(Operation):
    key: str

    @property
    def target(self) -> str:
        return f"key '{self.key}'"


@dataclass(frozen=True)
class AddCounterDelta(KeyedOperation):
    delta: int
    expire_in: timedelta | None = None


@dataclass(frozen=True)
class AddToSet(KeyedOperation):
    value: str
    score: float = 0.0


@dataclass(frozen=True)
class RemoveFromSet(KeyedOperation):
    value: str


@dataclass(frozen=True)
class RemoveSet(KeyedOperation):
    pass


@dataclass(frozen=True)
class InsertToList(KeyedOperation):
    value: str | None


@dataclass(frozen=True)
class RemoveFromList(KeyedOperation):
    value: str | None


@dataclass(frozen=True)
class TrimList(KeyedOperation):
    keep_starting_from: int
    keep_ending_at: int


@dataclass(frozen=True)
class SetHashField(KeyedOperation):
    field: str
    value: str | None


@dataclass(frozen=True)
class RemoveHash(KeyedOperation):
    pass


@dataclass(frozen=True)
class ExpireKey(KeyedOperation):
    kind: AggregateKind
    expire_in: timedelta

    def describe(self) -> str:
        return f"Expire{self.kind.value.capitalize()}({self.target})"


@dataclass(frozen=True)
class PersistKey(KeyedOperation):
    kind: AggregateKind

    def describe(self) -> str:
        return f"Persist{self.kind.value.capitalize()}({self.target})"
