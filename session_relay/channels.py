"""Per-session WebSocket subscriptions."""
import logging
from typing import Any

import orjson

logger = logging.getLogger("relay.channels")


class SessionChannels:
    """Maps session ids to the WebSocket connections watching them.

    A connection watches at most one session at a time.
    """

    def __init__(self):
        self._subscribers: dict[str, set] = {}
        self._watching: dict[Any, str] = {}

    def __len__(self) -> int:
        return len(self._watching)

    def subscribe(self, session_id: str, ws: Any) -> None:
        self.unsubscribe(ws)
        self._subscribers.setdefault(session_id, set()).add(ws)
        self._watching[ws] = session_id

    def unsubscribe(self, ws: Any) -> None:
        session_id = self._watching.pop(ws, None)
        if session_id is None:
            return
        peers = self._subscribers.get(session_id)
        if peers is not None:
            peers.discard(ws)
            if not peers:
                del self._subscribers[session_id]

    # a closed connection just drops out of every channel
    discard = unsubscribe

    def watching(self, ws: Any):
        return self._watching.get(ws)

    def subscribers(self, session_id: str) -> set:
        return set(self._subscribers.get(session_id, ()))

    async def broadcast(self, session_id: str, message: dict) -> int:
        """Send a JSON message to every open subscriber of a session.

        Returns:
            Number of connections the message was delivered to.
        """
        peers = self.subscribers(session_id)
        if not peers:
            return 0
        payload = orjson.dumps(message).decode("utf-8")
        delivered = 0
        for ws in peers:
            if ws.closed:
                continue
            try:
                await ws.send_str(payload)
                delivered += 1
            except (ConnectionError, RuntimeError) as err:
                logger.debug("Broadcast to session %s skipped a peer: %s", session_id, err)
        return delivered
