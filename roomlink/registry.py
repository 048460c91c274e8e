"""Per-peer negotiation state for a single room session.

The registry is the authoritative map from remote peer id to its
``PeerRecord``. It is owned by exactly one ``NegotiationOrchestrator`` and is
only mutated from that orchestrator's consumer task.
"""

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from roomlink.transport import PeerHandle


@dataclass(frozen=True)
class RoomContext:
    """Identity of one room session.

    A change to any field requires a new session.

    Attributes:
        local_identity: Local peer id.
        local_display_name: Local display name.
        room_id: Room to join, None for the global room.
    """

    local_identity: str
    local_display_name: str
    room_id: Optional[str] = None


class NegotiationState(enum.Enum):
    """Negotiation progress with one remote peer."""

    UNKNOWN = "unknown"
    PENDING_LOCAL_OFFER = "pending-local-offer"
    PENDING_REMOTE_ANSWER = "pending-remote-answer"
    ESTABLISHED = "established"
    FAILED = "failed"

    @property
    def is_pending(self) -> bool:
        return self in (
            NegotiationState.PENDING_LOCAL_OFFER,
            NegotiationState.PENDING_REMOTE_ANSWER,
        )


@dataclass
class PeerRecord:
    """Everything the local side knows about one remote peer.

    Attributes:
        identity: Remote peer id.
        display_name: Human-readable name announced by the peer.
        negotiation_state: Current negotiation state.
        transport_handle: Peer connection handle, None until one is created.
        pending_since: Monotonic time the current initiation started, None
            when the local side is not initiating.
    """

    identity: str
    display_name: str
    negotiation_state: NegotiationState = NegotiationState.UNKNOWN
    transport_handle: Optional["PeerHandle"] = None
    pending_since: Optional[float] = None

    @property
    def is_active(self) -> bool:
        """True while the record is pending or established."""
        return (
            self.negotiation_state.is_pending
            or self.negotiation_state is NegotiationState.ESTABLISHED
        )


class PeerRegistry:
    """Insertion-ordered registry of remote peers."""

    def __init__(self):
        self._records: Dict[str, PeerRecord] = {}

    def upsert(self, identity: str, display_name: str) -> PeerRecord:
        """Return the record for ``identity``, creating it if needed.

        An existing record keeps its position and state; only a non-empty
        display name replaces the stored one.
        """
        record = self._records.get(identity)
        if record is None:
            record = PeerRecord(identity=identity, display_name=display_name)
            self._records[identity] = record
        elif display_name:
            record.display_name = display_name
        return record

    def get(self, identity: str) -> Optional[PeerRecord]:
        return self._records.get(identity)

    def remove(self, identity: str) -> Optional[PeerRecord]:
        return self._records.pop(identity, None)

    def list(self) -> List[PeerRecord]:
        return list(self._records.values())

    def clear(self) -> List[PeerRecord]:
        """Remove every record and return what was removed."""
        records = list(self._records.values())
        self._records.clear()
        return records

    def __contains__(self, identity: str) -> bool:
        return identity in self._records

    def __len__(self) -> int:
        return len(self._records)
