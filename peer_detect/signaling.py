"""
Signaling relay between phone (camera) and laptop (viewer) peers.

The hub is a broadcast bus with role bookkeeping, not a matcher: relayed
events go to every connection except the sender, whatever their roles. When
more than one phone or laptop is connected they all see every message; only a
single pairing at a time is supported.

Every handler runs to completion without awaiting. Registry updates and the
enqueueing of outbound messages happen in one step per event, and each peer
drains its own outbox in order, so per-connection ordering is preserved.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

LOGGER = logging.getLogger("peer_detect.signaling")

# inbound
DEVICE_TYPE = "device-type"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
DETECTION_RESULTS = "detection-results"
REQUEST_TRACK = "request-track"
TRACK_READY = "track-ready"
PHONE_READY = "phone-ready"
PHONE_STOPPED = "phone-stopped"

# server-emitted
PHONE_CONNECTED = "phone-connected"
PHONE_DISCONNECTED = "phone-disconnected"
LAPTOP_READY = "laptop-ready"

RELAYED_EVENTS = frozenset(
    {OFFER, ANSWER, ICE_CANDIDATE, DETECTION_RESULTS, REQUEST_TRACK, TRACK_READY}
)


class Role(str, Enum):
    UNKNOWN = "unknown"
    PHONE = "phone"
    LAPTOP = "laptop"


class Peer(Protocol):
    peer_id: str

    def send(self, event: str, payload: Any = None) -> None:
        ...


@dataclass
class ConnectionEntry:
    peer: Peer
    role: Role = Role.UNKNOWN


def encode_message(event: str, payload: Any = None) -> str:
    return json.dumps({"event": event, "data": payload})


def decode_message(raw: str) -> Optional[Tuple[str, Any]]:
    """Return ``(event, payload)`` or ``None`` for anything malformed."""

    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(message, dict):
        return None
    event = message.get("event")
    if not isinstance(event, str) or not event:
        return None
    return event, message.get("data")


class SignalingHub:
    def __init__(self) -> None:
        self._connections: Dict[str, ConnectionEntry] = {}
        self._handlers: Dict[str, Callable[[str, Any], None]] = {
            DEVICE_TYPE: self.announce_role,
            PHONE_READY: lambda peer_id, _payload: self.phone_ready(peer_id),
            PHONE_STOPPED: lambda peer_id, _payload: self.phone_stopped(peer_id),
        }

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def connect(self, peer: Peer) -> None:
        self._connections[peer.peer_id] = ConnectionEntry(peer=peer)
        LOGGER.info("Device connected: %s", peer.peer_id)

    def disconnect(self, peer_id: str) -> None:
        entry = self._connections.pop(peer_id, None)
        if entry is None:
            return
        LOGGER.info("Device disconnected: %s type: %s", peer_id, entry.role.value)
        if entry.role is Role.PHONE:
            self.broadcast(PHONE_DISCONNECTED, exclude=peer_id)

    def role_of(self, peer_id: str) -> Optional[Role]:
        entry = self._connections.get(peer_id)
        return entry.role if entry else None

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._connections

    def snapshot(self) -> Dict[str, Any]:
        roles = [entry.role.value for entry in self._connections.values()]
        return {
            "connections": len(roles),
            "phones": roles.count(Role.PHONE.value),
            "laptops": roles.count(Role.LAPTOP.value),
            "unknown": roles.count(Role.UNKNOWN.value),
        }

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def broadcast(self, event: str, payload: Any = None, exclude: Optional[str] = None) -> int:
        delivered = 0
        for peer_id, entry in list(self._connections.items()):
            if peer_id == exclude:
                continue
            self._deliver(entry.peer, event, payload)
            delivered += 1
        return delivered

    def publish(self, event: str, payload: Any = None) -> int:
        """Server-originated broadcast to every connection."""

        return self.broadcast(event, payload)

    def _send_to(self, peer_id: str, event: str, payload: Any = None) -> None:
        entry = self._connections.get(peer_id)
        if entry is not None:
            self._deliver(entry.peer, event, payload)

    @staticmethod
    def _deliver(peer: Peer, event: str, payload: Any) -> None:
        try:
            peer.send(event, payload)
        except Exception as exc:
            LOGGER.debug("Dropping %s for %s: %s", event, peer.peer_id, exc)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def handle(self, peer_id: str, event: str, payload: Any = None) -> None:
        if peer_id not in self._connections:
            return
        if event in RELAYED_EVENTS:
            self.relay(peer_id, event, payload)
            return
        handler = self._handlers.get(event)
        if handler is None:
            LOGGER.debug("Ignoring unknown event %r from %s", event, peer_id)
            return
        handler(peer_id, payload)

    def announce_role(self, peer_id: str, role: Any) -> None:
        entry = self._connections.get(peer_id)
        if entry is None:
            return
        try:
            parsed = Role(role)
        except ValueError:
            LOGGER.debug("Ignoring invalid device type %r from %s", role, peer_id)
            return
        LOGGER.info("Device type: %s %s", parsed.value, peer_id)
        entry.role = parsed
        if parsed is Role.PHONE:
            LOGGER.info("Phone connected, notifying all laptops")
            self.broadcast(PHONE_CONNECTED, exclude=peer_id)
            # a laptop may already be waiting
            self._send_to(peer_id, LAPTOP_READY)

    def relay(self, peer_id: str, event: str, payload: Any = None) -> int:
        if event not in RELAYED_EVENTS:
            LOGGER.debug("Refusing to relay %r from %s", event, peer_id)
            return 0
        return self.broadcast(event, payload, exclude=peer_id)

    def phone_ready(self, peer_id: str) -> None:
        LOGGER.info("Phone ready: %s", peer_id)
        self._send_to(peer_id, LAPTOP_READY)

    def phone_stopped(self, peer_id: str) -> None:
        LOGGER.info("Phone stopped: %s", peer_id)
        self.broadcast(PHONE_DISCONNECTED, exclude=peer_id)
