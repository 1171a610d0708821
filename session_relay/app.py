"""
Composition root: builds the aiohttp application and owns the lifecycle
of the vault, the session store, the liveness tracker and the channels.
"""
import time
import asyncio
import logging
import contextlib
from typing import Optional

from aiohttp import web, WSCloseCode

from .conf import ServerConfig
from .store import MemorySessionStore
from .channels import SessionChannels
from .liveness import LivenessTracker
from .vault import CredentialVault, VaultConfig
from .handlers import (
    CONFIG,
    VAULT,
    STORE,
    TRACKER,
    CHANNELS,
    STARTED_AT,
    security_headers_middleware,
    error_middleware,
    index_handler,
    status_handler,
    create_session,
    read_session,
    update_session,
    delete_session,
    websocket_handler,
)

logger = logging.getLogger("relay.server")


async def report_status(app: web.Application) -> None:
    """Purge expired sessions and log one status line."""
    store = app[STORE]
    purged = store.purge_expired()
    logger.info(
        "Status: %d session(s), %d connection(s), %d purged, uptime %ds",
        len(store), len(app[TRACKER]), purged,
        int(time.monotonic() - app[STARTED_AT]),
    )


async def _status_loop(app: web.Application) -> None:
    interval = app[CONFIG].status_interval
    while True:
        await asyncio.sleep(interval)
        try:
            await report_status(app)
        except Exception:
            logger.exception("Status report failed")


async def background_tasks(app: web.Application):
    """Run the liveness sweep and the status report for the app's lifetime."""
    tracker = app[TRACKER]
    tracker.start()
    status = asyncio.create_task(_status_loop(app), name="status-report")
    yield
    status.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await status
    await tracker.stop()


async def close_websockets(app: web.Application) -> None:
    for ws in app[TRACKER].connections():
        with contextlib.suppress(Exception):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")


def create_app(
    config: Optional[ServerConfig] = None,
    vault_config: Optional[VaultConfig] = None,
) -> web.Application:
    """Build the application.

    Configuration is resolved here, once; every collaborator receives its
    settings through its constructor.
    """
    config = config or ServerConfig.from_env()
    vault_config = vault_config or VaultConfig.from_env()

    app = web.Application(
        client_max_size=config.max_body_size,
        middlewares=[security_headers_middleware, error_middleware],
    )
    app[CONFIG] = config
    app[VAULT] = CredentialVault(vault_config.key)
    app[STORE] = MemorySessionStore(
        default_ttl=vault_config.session_ttl,
        max_sessions=vault_config.max_sessions,
    )
    app[TRACKER] = LivenessTracker(interval=config.heartbeat_interval)
    app[CHANNELS] = SessionChannels()
    app[STARTED_AT] = time.monotonic()

    app.router.add_get("/", index_handler)
    app.router.add_get("/api/status", status_handler)
    app.router.add_post("/api/sessions", create_session)
    app.router.add_get("/api/sessions/{session_id}", read_session)
    app.router.add_put("/api/sessions/{session_id}", update_session)
    app.router.add_delete("/api/sessions/{session_id}", delete_session)
    app.router.add_get("/ws", websocket_handler)
    if config.static_dir.is_dir():
        app.router.add_static("/static", config.static_dir, show_index=False)
    else:
        logger.warning("Static directory %s not found, not serving /static", config.static_dir)

    app.cleanup_ctx.append(background_tasks)
    app.on_shutdown.append(close_websockets)
    return app


def run() -> None:
    config = ServerConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    app = create_app(config)
    logger.info(
        "Session relay listening on http://%s:%d (heartbeat every %ss)",
        config.host, config.port, config.heartbeat_interval,
    )
    web.run_app(app, host=config.host, port=config.port, print=None)
