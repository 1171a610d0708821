"""
Connection Liveness Tracker: heartbeat state for live WebSocket peers.

Each accepted connection is attached with ``is_alive = True``. A periodic
sweep then alternates, per connection, between "expect a pong" and
"terminate if none arrived":

- ``is_alive`` false: the peer missed the previous ping, close it and
  forget it.
- ``is_alive`` true: set it to false and send a ping; the pong handler
  flips it back before the next sweep.

A connection is any object with ``async ping()`` and ``async close(code=...)``,
such as ``aiohttp.web.WebSocketResponse``.
"""
import time
import asyncio
import logging
from typing import Any, Optional
from dataclasses import dataclass, field

from aiohttp import WSCloseCode

logger = logging.getLogger("relay.liveness")

DEFAULT_INTERVAL = 30.0


@dataclass
class ConnectionLiveness:
    """Liveness state attached 1:1 to a connection."""
    is_alive: bool = True
    attached_at: float = field(default_factory=time.monotonic)
    last_pong: Optional[float] = None
    pings_sent: int = 0


class LivenessTracker:
    """Tracks connections and reaps the ones that stop answering pings."""

    def __init__(self, interval: float = DEFAULT_INTERVAL):
        if interval <= 0:
            raise ValueError(f"Heartbeat interval must be positive, got {interval}")
        self.interval = interval
        self._states: dict[Any, ConnectionLiveness] = {}
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, connection: Any) -> bool:
        return connection in self._states

    def connections(self) -> list:
        return list(self._states)

    def attach(self, connection: Any) -> ConnectionLiveness:
        """Start tracking a newly accepted connection."""
        state = ConnectionLiveness()
        self._states[connection] = state
        logger.debug("Connection attached (%d tracked)", len(self._states))
        return state

    def detach(self, connection: Any) -> None:
        """Forget a connection that closed on its own."""
        if self._states.pop(connection, None) is not None:
            logger.debug("Connection detached (%d tracked)", len(self._states))

    def pong(self, connection: Any) -> None:
        """Pong handler: the peer answered, mark it alive."""
        state = self._states.get(connection)
        if state is None:
            return
        state.is_alive = True
        state.last_pong = time.monotonic()

    def state(self, connection: Any) -> Optional[ConnectionLiveness]:
        return self._states.get(connection)

    def is_alive(self, connection: Any) -> bool:
        state = self._states.get(connection)
        return state is not None and state.is_alive

    async def _terminate(self, connection: Any) -> None:
        self._states.pop(connection, None)
        try:
            await connection.close(code=WSCloseCode.GOING_AWAY)
        except Exception as err:
            logger.warning("Error closing dead connection: %s", err)

    async def sweep(self) -> list:
        """Run one liveness sweep.

        Returns:
            The connections terminated by this sweep.
        """
        terminated = []
        for connection, state in list(self._states.items()):
            if not state.is_alive:
                terminated.append(connection)
                continue
            state.is_alive = False
            try:
                await connection.ping()
            except (ConnectionError, RuntimeError) as err:
                # transport already gone, no pong will ever come back
                logger.debug("Ping failed: %s", err)
                terminated.append(connection)
                continue
            state.pings_sent += 1
        # closing waits on the peer's close frame, so don't do it serially
        await asyncio.gather(*(self._terminate(c) for c in terminated))
        if terminated:
            logger.info(
                "Liveness sweep terminated %d connection(s), %d remain",
                len(terminated), len(self._states),
            )
        return terminated

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")

    def start(self) -> asyncio.Task:
        """Start the periodic sweep on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="liveness-sweep")
            logger.info("Liveness sweep started (interval=%ss)", self.interval)
        return self._task

    async def stop(self) -> None:
        """Cancel the periodic sweep and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Liveness sweep stopped")
