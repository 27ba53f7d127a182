"""
Actor Module

Opaque reference to whoever initiated a mutation: a human user or the system
pseudo-actor used by scheduled jobs. Callers are assumed pre-authorized.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ActorKind(Enum):
    HUMAN = "human"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who performed an action, threaded through every audit call"""
    kind: ActorKind
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.kind == ActorKind.HUMAN and not self.user_id:
            raise ValueError("Human actor requires a user_id")
        if self.kind == ActorKind.SYSTEM and self.user_id is not None:
            raise ValueError("System actor has no user_id")

    @classmethod
    def human(cls, user_id: str) -> 'Actor':
        return cls(ActorKind.HUMAN, user_id)

    @property
    def is_system(self) -> bool:
        return self.kind == ActorKind.SYSTEM

    @property
    def audit_id(self) -> str:
        """Identifier written to audit and log records"""
        return "system" if self.is_system else self.user_id

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "user_id": self.user_id}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Actor']:
        if not data:
            return None
        return cls(ActorKind(data["kind"]), data.get("user_id"))


SYSTEM = Actor(ActorKind.SYSTEM)
