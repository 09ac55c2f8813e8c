"""Actors calling into the scheduler and the capabilities they present."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Union

from ..core.enums import Capability


@dataclass(frozen=True)
class Actor:
    """
    The caller of a scheduler operation.

    Authentication happens upstream; by the time an Actor reaches the
    scheduler its capability set is already resolved.
    """

    actor_id: str
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)

    @classmethod
    def with_capabilities(
        cls, actor_id: str, capabilities: Iterable[Union[Capability, str]]
    ) -> "Actor":
        return cls(actor_id, frozenset(Capability(c) for c in capabilities))

    @classmethod
    def admin(cls, actor_id: str) -> "Actor":
        return cls(actor_id, frozenset(Capability))

    @property
    def id(self) -> str:
        return self.actor_id

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities


# Default grants for the roles of the surrounding dashboard
REQUESTER_CAPABILITIES = frozenset({Capability.REQUEST_BOOKINGS, Capability.JOIN_SHARED_RIDES})
APPROVER_CAPABILITIES = REQUESTER_CAPABILITIES | {Capability.APPROVE_BOOKINGS}
DRIVER_CAPABILITIES = REQUESTER_CAPABILITIES | {Capability.OPERATE_VEHICLES}
