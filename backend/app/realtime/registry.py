"""
In-memory session / room membership for the live channel broker.
"""
from dataclasses import dataclass
from typing import Dict, Set

from app.constants import Role


@dataclass(frozen=True)
class SessionInfo:
    sid: str
    user_id: str
    role: Role


class SessionRegistry:
    """Tracks which sockets belong to which user and which conversations.

    Keyed maps only (conversationID -> sids, userID -> sids), no object graph.
    A user may hold several sessions (tabs); each joins rooms independently.
    Joins for a conversation that does not exist yet are held outside the room
    until its first message names the two participants.
    Single event loop, no locking.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionInfo] = {}
        self._user_sessions: Dict[str, Set[str]] = {}
        self._room_members: Dict[str, Set[str]] = {}
        self._session_rooms: Dict[str, Set[str]] = {}
        self._held: Dict[str, Set[str]] = {}

    def register(self, sid: str, user_id: str, role: Role) -> SessionInfo:
        info = SessionInfo(sid=sid, user_id=user_id, role=role)
        self._sessions[sid] = info
        self._user_sessions.setdefault(user_id, set()).add(sid)
        self._session_rooms.setdefault(sid, set())
        return info

    def unregister(self, sid: str) -> Set[str]:
        """Forget a socket; returns the conversations it was joined to."""
        info = self._sessions.pop(sid, None)
        if info is not None:
            sids = self._user_sessions.get(info.user_id)
            if sids is not None:
                sids.discard(sid)
                if not sids:
                    self._user_sessions.pop(info.user_id, None)
        rooms = self._session_rooms.pop(sid, set())
        for conversation_id in rooms:
            self._discard_member(conversation_id, sid)
        for conversation_id in list(self._held):
            self._discard_held(conversation_id, sid)
        return rooms

    def join(self, sid: str, conversation_id: str) -> bool:
        """Returns False when the socket was already a member."""
        rooms = self._session_rooms.setdefault(sid, set())
        if conversation_id in rooms:
            return False
        rooms.add(conversation_id)
        self._room_members.setdefault(conversation_id, set()).add(sid)
        return True

    def leave(self, sid: str, conversation_id: str) -> bool:
        """Safe on a room the socket never joined; returns whether anything changed."""
        held = self._discard_held(conversation_id, sid)
        rooms = self._session_rooms.get(sid)
        if not rooms or conversation_id not in rooms:
            return held
        rooms.discard(conversation_id)
        self._discard_member(conversation_id, sid)
        return True

    def hold(self, sid: str, conversation_id: str) -> bool:
        """Park a join until the conversation exists; False if already held."""
        if sid not in self._sessions:
            return False
        held = self._held.setdefault(conversation_id, set())
        if sid in held:
            return False
        held.add(sid)
        return True

    def release_held(self, conversation_id: str) -> Set[str]:
        """Hand back (and forget) the sockets waiting on a conversation."""
        return self._held.pop(conversation_id, set())

    def held(self, conversation_id: str) -> Set[str]:
        return set(self._held.get(conversation_id, ()))

    def _discard_held(self, conversation_id: str, sid: str) -> bool:
        held = self._held.get(conversation_id)
        if not held or sid not in held:
            return False
        held.discard(sid)
        if not held:
            self._held.pop(conversation_id, None)
        return True

    def _discard_member(self, conversation_id: str, sid: str) -> None:
        members = self._room_members.get(conversation_id)
        if members is None:
            return
        members.discard(sid)
        if not members:
            self._room_members.pop(conversation_id, None)

    def user_of(self, sid: str) -> SessionInfo | None:
        return self._sessions.get(sid)

    def members(self, conversation_id: str) -> Set[str]:
        return set(self._room_members.get(conversation_id, ()))

    def sessions_for(self, user_id: str) -> Set[str]:
        return set(self._user_sessions.get(user_id, ()))

    def rooms_of(self, sid: str) -> Set[str]:
        return set(self._session_rooms.get(sid, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._user_sessions.get(user_id))
