"""Maps live connections to participants and participants to sessions.

A participant keeps the same ID across reconnects while the socket ID
changes, so every outbound message is addressed by participant and resolved
to the current socket here.
"""

from __future__ import annotations

import logging

from wagerlab.server.thread_safe_collections import ThreadSafeDict
from wagerlab.utils.typing import SessionID, SocketID, SubjectID

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    def __init__(self):
        self.socket_to_subject: dict[SocketID, SubjectID] = ThreadSafeDict()
        self.subject_to_socket: dict[SubjectID, SocketID] = ThreadSafeDict()
        self.subject_sessions: dict[SubjectID, SessionID] = ThreadSafeDict()

    def register(self, sid: SocketID, subject_id: SubjectID) -> SocketID | None:
        """Bind a socket to a participant.

        The newest connection wins: if the participant already had a socket,
        that socket is forgotten and returned so the caller can log it.
        """
        previous_sid = self.subject_to_socket.get(subject_id)
        if previous_sid is not None and previous_sid != sid:
            logger.warning(
                f"[Registry] Participant {subject_id} reconnected on {sid}; "
                f"replacing previous connection {previous_sid}."
            )
            del self.socket_to_subject[previous_sid]

        old_subject = self.socket_to_subject.get(sid)
        if old_subject is not None and old_subject != subject_id:
            logger.warning(
                f"[Registry] Socket {sid} re-registered from {old_subject} to {subject_id}."
            )
            if self.subject_to_socket.get(old_subject) == sid:
                del self.subject_to_socket[old_subject]

        self.socket_to_subject[sid] = subject_id
        self.subject_to_socket[subject_id] = sid
        logger.info(f"[Registry] Registered socket {sid} for participant {subject_id}")
        return previous_sid if previous_sid != sid else None

    def unregister(self, sid: SocketID) -> SubjectID | None:
        """Drop a closed socket. Session bindings are kept for rejoin."""
        subject_id = self.socket_to_subject.pop(sid, None)
        if subject_id is None:
            return None

        # Only clear the reverse mapping if a newer socket has not replaced it
        if self.subject_to_socket.get(subject_id) == sid:
            del self.subject_to_socket[subject_id]

        logger.info(f"[Registry] Socket {sid} for participant {subject_id} disconnected")
        return subject_id

    def participant_for(self, sid: SocketID) -> SubjectID | None:
        return self.socket_to_subject.get(sid)

    def sid_for(self, subject_id: SubjectID) -> SocketID | None:
        return self.subject_to_socket.get(subject_id)

    def connected_count(self) -> int:
        return len(self.socket_to_subject)

    def bind_session(self, subject_id: SubjectID, session_id: SessionID) -> None:
        self.subject_sessions[subject_id] = session_id

    def session_for(self, subject_id: SubjectID) -> SessionID | None:
        return self.subject_sessions.get(subject_id)

    def unbind_session(self, session_id: SessionID) -> list[SubjectID]:
        """Remove every participant binding to ``session_id`` and return those participants."""
        unbound = [
            subject_id for subject_id, bound_id in self.subject_sessions.snapshot()
            if bound_id == session_id
        ]
        with self.subject_sessions.lock:
            for subject_id in unbound:
                if self.subject_sessions.get(subject_id) == session_id:
                    del self.subject_sessions[subject_id]
        return unbound
