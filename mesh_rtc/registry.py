"""Per-peer state and the table that owns it.

The registry is the single source of truth for which peers this node is
currently negotiating with or connected to. Every record is created once
per identifier and removed once, by whichever teardown path gets there
first (explicit close, transport failure, or staleness eviction).
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class PeerState(str, Enum):
    """Negotiation state of a single peer."""

    INITIALIZING = "initializing"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class PeerRecord:
    """Everything this node holds for one remote peer.

    Attributes:
        peer_id: Identifier of the remote node.
        connection: Transport connection (``RTCPeerConnection``).
        receive_channel: Data channel this node created; inbound application
            messages arrive here.
        channel: Data channel the remote side created, set once it opens.
            Outbound application messages go here.
        state: Current negotiation state.
        last_activity: Clock reading of the last observed activity.
    """

    peer_id: str
    connection: Any
    receive_channel: Any = None
    channel: Any = None
    state: PeerState = PeerState.INITIALIZING
    last_activity: float = 0.0


class PeerRegistry:
    """Mapping from peer identifier to PeerRecord.

    Args:
        clock: Callable returning the current time in seconds. Defaults to
            ``time.monotonic``; tests pass a fake clock.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._records: Dict[str, PeerRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._records

    def insert(self, record: PeerRecord) -> bool:
        """Add a record, seeding its activity timestamp.

        Returns:
            True if inserted, False if a record for the same peer exists.
        """
        if record.peer_id in self._records:
            return False
        record.last_activity = self.clock()
        self._records[record.peer_id] = record
        return True

    def remove(self, peer_id: str) -> Optional[PeerRecord]:
        """Remove and return the record for ``peer_id`` (None if absent)."""
        record = self._records.pop(peer_id, None)
        if record is not None:
            record.state = PeerState.CLOSED
        return record

    def get(self, peer_id: str) -> Optional[PeerRecord]:
        return self._records.get(peer_id)

    def state_of(self, peer_id: str) -> Optional[PeerState]:
        record = self._records.get(peer_id)
        return record.state if record is not None else None

    def set_state(self, peer_id: str, state: PeerState) -> bool:
        record = self._records.get(peer_id)
        if record is None:
            return False
        record.state = state
        return True

    def touch(self, peer_id: str) -> bool:
        """Refresh the activity timestamp of a peer."""
        record = self._records.get(peer_id)
        if record is None:
            return False
        record.last_activity = self.clock()
        return True

    def attach_channel(self, peer_id: str, channel: Any) -> bool:
        """Store the remote-created (sending) channel for a peer."""
        record = self._records.get(peer_id)
        if record is None:
            return False
        record.channel = channel
        return True

    def detach_channel(self, peer_id: str, channel: Any) -> bool:
        """Forget the sending channel, if it is still ``channel``."""
        record = self._records.get(peer_id)
        if record is None or record.channel is not channel:
            return False
        record.channel = None
        return True

    def peer_ids(self) -> List[str]:
        """Snapshot of all identifiers, safe to iterate while mutating."""
        return list(self._records)

    def stale(self, timeout: float, now: Optional[float] = None) -> List[str]:
        """Identifiers whose last activity is at least ``timeout`` old."""
        if now is None:
            now = self.clock()
        return [
            peer_id
            for peer_id, record in self._records.items()
            if now - record.last_activity >= timeout
        ]
