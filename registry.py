"""Connection registry for the relay: who is in which room, and how to reach them."""
from typing import Generic, Optional, TypeVar

T = TypeVar('T')


class ConnectionRegistry(Generic[T]):
    """Rooms map to ordered member lists (join order); every client id maps to
    its own delivery handle so unicast routing does not depend on rooms.

    All methods are synchronous, so on a single event loop each call is atomic
    with respect to the other connection handlers.
    """

    def __init__(self):
        self._rooms: dict[str, list[str]] = {}
        self._clients: dict[str, tuple[str, T]] = {}

    def join(self, room_id: str, client_id: str, handle: T) -> list[str]:
        """Add client_id to room_id. Returns the members present before it joined."""
        if client_id in self._clients:
            raise ValueError(f'client {client_id} is already registered')
        members = self._rooms.setdefault(room_id, [])
        snapshot = list(members)
        members.append(client_id)
        self._clients[client_id] = (room_id, handle)
        return snapshot

    def leave(self, client_id: str) -> Optional[tuple[str, list[str]]]:
        """Remove client_id. Returns (room_id, remaining members), or None if unknown."""
        entry = self._clients.pop(client_id, None)
        if entry is None:
            return None
        room_id, _ = entry
        members = self._rooms.get(room_id, [])
        if client_id in members:
            members.remove(client_id)
        if not members:
            self._rooms.pop(room_id, None)
        return room_id, list(members)

    def lookup(self, client_id: str) -> Optional[T]:
        entry = self._clients.get(client_id)
        return entry[1] if entry else None

    def members(self, room_id: str) -> list[str]:
        return list(self._rooms.get(room_id, ()))

    def handles(self, room_id: str, exclude: Optional[str] = None) -> list[T]:
        return [self._clients[cid][1] for cid in self._rooms.get(room_id, ()) if cid != exclude]

    def rooms(self) -> list[str]:
        return list(self._rooms)

    def __len__(self):
        return len(self._clients)

    def __contains__(self, client_id):
        return client_id in self._clients
