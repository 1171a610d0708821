"""
Tests for per-session WebSocket channels.
"""
from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest

from session_relay.channels import SessionChannels


def make_ws(closed: bool = False):
    ws = MagicMock()
    ws.closed = closed
    ws.send_str = AsyncMock()
    return ws


@pytest.fixture
def channels():
    return SessionChannels()


class TestSubscriptions:
    """Tests for subscribe/unsubscribe."""

    def test_subscribe(self, channels):
        """Test a connection joins a session channel."""
        ws = make_ws()
        channels.subscribe("s1", ws)
        assert channels.subscribers("s1") == {ws}
        assert channels.watching(ws) == "s1"
        assert len(channels) == 1

    def test_resubscribe_moves_connection(self, channels):
        """Test a connection watches one session at a time."""
        ws = make_ws()
        channels.subscribe("s1", ws)
        channels.subscribe("s2", ws)
        assert channels.subscribers("s1") == set()
        assert channels.subscribers("s2") == {ws}

    def test_discard(self, channels):
        """Test a closed connection leaves its channel."""
        ws = make_ws()
        channels.subscribe("s1", ws)
        channels.discard(ws)
        channels.discard(ws)
        assert channels.subscribers("s1") == set()
        assert channels.watching(ws) is None


class TestBroadcast:
    """Tests for broadcast."""

    @pytest.mark.asyncio
    async def test_broadcast_to_subscribers(self, channels):
        """Test every open subscriber gets the encoded message."""
        first, second, other = make_ws(), make_ws(), make_ws()
        channels.subscribe("s1", first)
        channels.subscribe("s1", second)
        channels.subscribe("s2", other)

        delivered = await channels.broadcast("s1", {"type": "session_updated"})

        assert delivered == 2
        payload = first.send_str.await_args.args[0]
        assert orjson.loads(payload) == {"type": "session_updated"}
        other.send_str.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_broadcast_skips_closed_and_failing(self, channels):
        """Test closed peers and send errors are skipped."""
        closed, failing, ok = make_ws(closed=True), make_ws(), make_ws()
        failing.send_str.side_effect = ConnectionResetError()
        for ws in (closed, failing, ok):
            channels.subscribe("s1", ws)

        assert await channels.broadcast("s1", {"type": "x"}) == 1
        closed.send_str.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_broadcast_without_subscribers(self, channels):
        """Test broadcasting to an empty channel."""
        assert await channels.broadcast("nobody", {"type": "x"}) == 0
