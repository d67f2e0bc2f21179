"""Outbound messages to participants.

Every outbound message is a JSON object whose ``type`` field repeats the
Socket.IO event name, so clients listening on the raw ``message`` channel can
dispatch on it too.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import flask_socketio

from wagerlab.configurations import configuration_constants
from wagerlab.server.connection_registry import ConnectionRegistry
from wagerlab.utils.typing import SocketID, SubjectID

logger = logging.getLogger(__name__)


class Transport(ABC):
    @abstractmethod
    def send(self, sid: SocketID, message_type: str, payload: dict) -> None:
        ...

    @abstractmethod
    def broadcast(self, message_type: str, payload: dict) -> None:
        """Send to every open connection."""
        ...


class SocketIOTransport(Transport):
    def __init__(self, socketio: flask_socketio.SocketIO):
        self.socketio = socketio

    def send(self, sid: SocketID, message_type: str, payload: dict) -> None:
        self.socketio.emit(message_type, {"type": message_type, **payload}, to=sid)

    def broadcast(self, message_type: str, payload: dict) -> None:
        self.socketio.emit(message_type, {"type": message_type, **payload})


class SessionBroadcaster:
    """Addresses messages by participant rather than by socket.

    Participants without an open connection are skipped; they resynchronize
    through ``rejoinSession`` when they register again.
    """

    def __init__(self, transport: Transport, registry: ConnectionRegistry):
        self.transport = transport
        self.registry = registry

    def send_to_participant(self, subject_id: SubjectID, message_type: str, payload: dict) -> bool:
        sid = self.registry.sid_for(subject_id)
        if sid is None:
            logger.debug(
                f"[Broadcast] {subject_id} has no open connection; dropping {message_type}"
            )
            return False
        self.transport.send(sid, message_type, payload)
        return True

    def broadcast_to_session(
        self,
        participants: list[SubjectID],
        message_type: str,
        payload: dict,
    ) -> int:
        delivered = 0
        for subject_id in participants:
            if self.send_to_participant(subject_id, message_type, payload):
                delivered += 1
        return delivered

    def broadcast_all(self, message_type: str, payload: dict) -> None:
        self.transport.broadcast(message_type, payload)

    def send_error(self, sid: SocketID, message: str) -> None:
        self.transport.send(sid, configuration_constants.OutboundMessages.Error, {"message": message})

    def broadcast_participant_count(self) -> None:
        self.broadcast_all(
            configuration_constants.OutboundMessages.ParticipantCount,
            {"count": self.registry.connected_count()},
        )
