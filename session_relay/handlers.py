"""
HTTP and WebSocket handlers.

Collaborators (vault, session store, liveness tracker, channels, config)
are created by ``create_app`` and looked up through the typed application
keys below; handlers never touch module-level state.
"""
import time
import logging
from typing import Any

import orjson
from aiohttp import web, WSMsgType, WSCloseCode

from .conf import ServerConfig
from .data import SessionData
from .store import MemorySessionStore
from .channels import SessionChannels
from .liveness import LivenessTracker
from .vault import CredentialVault

logger = logging.getLogger("relay.server")

CONFIG = web.AppKey("config", ServerConfig)
VAULT = web.AppKey("vault", CredentialVault)
STORE = web.AppKey("store", MemorySessionStore)
TRACKER = web.AppKey("tracker", LivenessTracker)
CHANNELS = web.AppKey("channels", SessionChannels)
STARTED_AT = web.AppKey("started_at", float)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Content-Security-Policy": (
        "default-src 'self'; "
        "script-src 'self'; "
        "style-src 'self'; "
        "img-src 'self' data:; "
        "connect-src 'self' ws: wss:; "
        "object-src 'none'; frame-ancestors 'none'; base-uri 'self'"
    ),
}


def dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=dumps)


def json_error(exc_cls: type[web.HTTPException], message: str) -> web.HTTPException:
    """Build an HTTP error carrying a ``{"error": message}`` JSON body."""
    return exc_cls(text=dumps({"error": message}), content_type="application/json")


# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------

def _apply_security_headers(request: web.Request, response: web.StreamResponse) -> None:
    if response.prepared:
        # websocket upgrades and streamed bodies already sent their headers
        return
    for key, value in SECURITY_HEADERS.items():
        response.headers.setdefault(key, value)
    if request.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")


@web.middleware
async def security_headers_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        response = await handler(request)
    except web.HTTPException as ex:
        _apply_security_headers(request, ex)
        raise
    _apply_security_headers(request, response)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Turn errors into JSON responses.

    ``ValueError`` raised by the store or the models is a client error (400);
    anything else unexpected is logged and reported as a bare 500.
    """
    try:
        return await handler(request)
    except web.HTTPException as ex:
        if ex.status < 400 or ex.content_type == "application/json":
            raise
        response = json_response({"error": ex.reason}, status=ex.status)
        if "Allow" in ex.headers:
            response.headers["Allow"] = ex.headers["Allow"]
        return response
    except ValueError as err:
        raise json_error(web.HTTPBadRequest, str(err)) from None
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        raise json_error(web.HTTPInternalServerError, "Internal server error") from None


async def parse_json_body(request: web.Request) -> dict:
    """Read a JSON object body.

    Raises:
        web.HTTPUnsupportedMediaType: If the body is not application/json.
        web.HTTPRequestEntityTooLarge: If the body exceeds max_body_size.
        web.HTTPBadRequest: If the body is not a JSON object.
    """
    max_size = request.app[CONFIG].max_body_size
    if request.content_type != "application/json":
        raise json_error(
            web.HTTPUnsupportedMediaType,
            "Unsupported Content-Type. Use application/json.",
        )
    if request.content_length is not None and request.content_length > max_size:
        raise web.HTTPRequestEntityTooLarge(
            max_size=max_size,
            actual_size=request.content_length,
            text=dumps({"error": f"Payload too large. Max {max_size} bytes."}),
            content_type="application/json",
        )
    # request.read() enforces client_max_size for chunked bodies
    raw = await request.read()
    try:
        payload = orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise json_error(web.HTTPBadRequest, "Invalid JSON payload.") from None
    if not isinstance(payload, dict):
        raise json_error(web.HTTPBadRequest, "JSON body must be an object.")
    return payload


def _session_fields(body: dict) -> dict:
    data = body.get("data", {})
    if not isinstance(data, dict):
        raise json_error(web.HTTPBadRequest, "'data' must be an object.")
    return data


# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------

async def index_handler(request: web.Request) -> web.StreamResponse:
    return web.FileResponse(request.app[CONFIG].static_dir / "index.html")


async def status_handler(request: web.Request) -> web.Response:
    app = request.app
    return json_response({
        "uptime": round(time.monotonic() - app[STARTED_AT], 3),
        "sessions": len(await app[STORE].ids()),
        "connections": len(app[TRACKER]),
        "subscriptions": len(app[CHANNELS]),
        "heartbeat_interval": app[TRACKER].interval,
        "ephemeral_key": app[VAULT].ephemeral,
    })


async def create_session(request: web.Request) -> web.Response:
    body = await parse_json_body(request)
    data = _session_fields(body)
    store = request.app[STORE]
    session_id = body.get("session_id")
    if session_id is not None:
        if not isinstance(session_id, str):
            raise json_error(web.HTTPBadRequest, "'session_id' must be a string.")
        if await store.get(session_id) is not None:
            raise json_error(web.HTTPConflict, "Session already exists")
    session = SessionData(
        data=data, new=True, id=session_id, identity=body.get("identity"),
    )
    bundle = session.seal(request.app[VAULT])
    if body.get("permanent"):
        await store.put(session.session_id, bundle, ttl=None)
    else:
        await store.put(session.session_id, bundle)
    logger.info("Session created: id=%s", session.session_id)
    return json_response(
        {
            "session_id": session.session_id,
            "expires_at": await store.expires_at(session.session_id),
        },
        status=201,
    )


async def _open_session(request: web.Request) -> SessionData:
    session_id = request.match_info["session_id"]
    bundle = await request.app[STORE].get(session_id)
    if bundle is None:
        raise json_error(web.HTTPNotFound, "Session not found")
    session = SessionData.unseal(bundle, request.app[VAULT])
    if session is None:
        raise json_error(web.HTTPUnprocessableEntity, "could not decrypt session")
    return session


async def read_session(request: web.Request) -> web.Response:
    session = await _open_session(request)
    return json_response({
        "session_id": session.session_id,
        "identity": session.identity,
        "created": session.created,
        "data": session.session_data(),
    })


async def update_session(request: web.Request) -> web.Response:
    body = await parse_json_body(request)
    data = _session_fields(body)
    session = await _open_session(request)
    session.invalidate()
    session.update(data)
    store = request.app[STORE]
    session_id = session.session_id
    await store.put_until(
        session_id,
        session.seal(request.app[VAULT]),
        await store.expires_at(session_id),
    )
    await request.app[CHANNELS].broadcast(
        session_id, {"type": "session_updated", "session_id": session_id},
    )
    return json_response({"session_id": session_id, "data": session.session_data()})


async def delete_session(request: web.Request) -> web.Response:
    session_id = request.match_info["session_id"]
    if not await request.app[STORE].evict(session_id):
        raise json_error(web.HTTPNotFound, "Session not found")
    await request.app[CHANNELS].broadcast(
        session_id, {"type": "session_evicted", "session_id": session_id},
    )
    logger.info("Session evicted: id=%s", session_id)
    return web.Response(status=204)


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------

async def _lookup(app: web.Application, session_id: Any):
    if not isinstance(session_id, str):
        return None
    try:
        return await app[STORE].get(session_id)
    except ValueError:
        return None


async def handle_ws_message(app: web.Application, ws: web.WebSocketResponse, raw: str) -> dict:
    """Handle one client text frame and return the reply."""
    try:
        message = orjson.loads(raw)
    except orjson.JSONDecodeError:
        message = None
    if not isinstance(message, dict):
        return {"type": "error", "message": "Invalid request"}

    kind = message.get("type")
    session_id = message.get("session_id")
    if kind == "subscribe":
        if await _lookup(app, session_id) is None:
            return {"type": "error", "message": "Session not found", "from": kind}
        app[CHANNELS].subscribe(session_id, ws)
        return {"type": "subscribed", "session_id": session_id}
    if kind == "unsubscribe":
        app[CHANNELS].unsubscribe(ws)
        return {"type": "unsubscribed"}
    if kind == "view_details":
        bundle = await _lookup(app, session_id)
        if bundle is None:
            return {"type": "error", "message": "Session not found", "from": kind}
        session = SessionData.unseal(bundle, app[VAULT])
        if session is None:
            return {"type": "error", "message": "could not decrypt session", "from": kind}
        return {
            "type": "session_details",
            "session_id": session_id,
            "identity": session.identity,
            "created": session.created,
            "expires_at": await app[STORE].expires_at(session_id),
            "keys": sorted(session.session_data()),
        }
    return {"type": "error", "message": "Invalid request"}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    app = request.app
    config = app[CONFIG]
    # pings and pongs are surfaced to this loop so the tracker sees every pong
    ws = web.WebSocketResponse(
        autoping=False,
        heartbeat=None,
        compress=config.ws_compress,
        max_msg_size=config.ws_max_msg_size,
        timeout=config.ws_close_timeout,
    )
    await ws.prepare(request)
    tracker = app[TRACKER]
    tracker.attach(ws)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.PONG:
                tracker.pong(ws)
            elif msg.type == WSMsgType.PING:
                await ws.pong(msg.data)
            elif msg.type == WSMsgType.TEXT:
                reply = await handle_ws_message(app, ws, msg.data)
                await ws.send_str(dumps(reply))
            elif msg.type == WSMsgType.BINARY:
                await ws.close(code=WSCloseCode.UNSUPPORTED_DATA)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("WebSocket closed with error: %s", ws.exception())
                break
    finally:
        tracker.detach(ws)
        app[CHANNELS].discard(ws)
    return ws
