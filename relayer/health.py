"""Read-only HTTP health surface: /healthz, /state, /version."""
import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from relayer.config import VERSION
from relayer.state_store import now_iso

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], Dict[str, Any]]


def build_app(status: StatusProvider, raw_state: StatusProvider) -> web.Application:
    """
    Args:
        status: returns the condensed public status
        raw_state: returns the last persisted state document
    """

    async def healthz(request: web.Request) -> web.Response:
        return web.json_response(status())

    async def state(request: web.Request) -> web.Response:
        body = dict(status())
        body["raw"] = raw_state()
        return web.json_response(body)

    async def version(request: web.Request) -> web.Response:
        return web.json_response({"version": VERSION, "time": now_iso()})

    app = web.Application()
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/state", state)
    app.router.add_get("/version", version)
    return app


class HealthServer:
    """Serve an aiohttp app from a daemon thread with its own event loop."""

    def __init__(self, app: web.Application, host: str, port: int):
        self.app = app
        self.host = host
        self.port = port
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._runner: Optional[web.AppRunner] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._error: Optional[BaseException] = None

    def start(self, timeout: float = 10.0) -> None:
        self._thread = threading.Thread(target=self._serve, name="health-server", daemon=True)
        self._thread.start()
        self._ready.wait(timeout)
        if self._error is not None:
            raise self._error
        logger.info(f"[health] listening on http://{self.host}:{self.port} (endpoints: /healthz, /state, /version)")

    def _serve(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            self._runner = web.AppRunner(self.app, access_log=None)
            loop.run_until_complete(self._runner.setup())
            site = web.TCPSite(self._runner, self.host, self.port)
            loop.run_until_complete(site.start())
        except OSError as e:
            self._error = e
            loop.run_until_complete(self._runner.cleanup())
            loop.close()
            self._ready.set()
            return
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(self._runner.cleanup())
            loop.close()

    def stop(self, timeout: float = 5.0) -> None:
        if self._loop is None or self._thread is None or not self._thread.is_alive():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
        logger.info("[health] stopped")
