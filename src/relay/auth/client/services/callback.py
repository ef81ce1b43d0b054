"""Local HTTP receiver for the authorization redirect.

Only the process that owns the authorization lock runs this server. It
serves a single route, hands the first query string it receives to the
waiting flow, and shows the user a page telling them to return to their
terminal.
"""

from __future__ import annotations

import asyncio
import html
import logging
import socket

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from relay.auth.client.models.errors import AuthorizationError

logger = logging.getLogger(__name__)

_SUCCESS_PAGE = """<!DOCTYPE html>
<html><body>
<h1>Authorization successful</h1>
<p>You may close this window and return to your terminal.</p>
<script>setTimeout(() => window.close(), 1000);</script>
</body></html>"""

_FAILURE_PAGE = """<!DOCTYPE html>
<html><body>
<h1>Authorization failed</h1>
<p>{error}</p>
</body></html>"""


class CallbackServer:
    """Starlette app served by uvicorn on a pre-bound loopback socket.

    Binding the socket ourselves surfaces "port in use" as an OSError from
    ``start`` instead of uvicorn exiting the process.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 0,
        path: str = "/oauth/callback",
    ):
        self.host = host
        self.port = port
        self.path = path
        self.app = Starlette(routes=[Route(path, self._handle_callback, methods=["GET"])])
        self._params: asyncio.Future[dict[str, str]] | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self._socket: socket.socket | None = None

    async def start(self) -> None:
        """Bind the socket and start serving in the background.

        Raises:
            OSError: If the port cannot be bound
        """
        self._ensure_future()
        self._socket = socket.create_server((self.host, self.port))
        self.port = self._socket.getsockname()[1]

        config = uvicorn.Config(app=self.app, log_level="warning", lifespan="off")
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        logger.info(f"OAuth callback server listening on {self.host}:{self.port}{self.path}")

    async def wait_for_callback(self, timeout: float) -> dict[str, str]:
        """Wait for the redirect and return its query parameters.

        Raises:
            AuthorizationError: If no redirect arrives within ``timeout``
        """
        self._ensure_future()
        try:
            return await asyncio.wait_for(asyncio.shield(self._params), timeout)
        except asyncio.TimeoutError:
            raise AuthorizationError(
                f"Timed out after {timeout:.0f}s waiting for the authorization redirect"
            ) from None

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            try:
                await self._serve_task
            except Exception as e:
                logger.debug(f"Callback server stopped with error: {e}")
            self._serve_task = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        self._server = None

    async def __aenter__(self) -> CallbackServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _ensure_future(self) -> None:
        if self._params is None:
            self._params = asyncio.get_running_loop().create_future()

    async def _handle_callback(self, request: Request) -> Response:
        params = dict(request.query_params)
        if "code" not in params and "error" not in params:
            return HTMLResponse(
                _FAILURE_PAGE.format(error="No authorization code received"),
                status_code=400,
            )

        self._ensure_future()
        if self._params.done():
            logger.debug("Ignoring repeated authorization callback")
        else:
            self._params.set_result(params)

        if "error" in params:
            return HTMLResponse(
                _FAILURE_PAGE.format(
                    error=html.escape(params.get("error_description") or params["error"])
                ),
                status_code=400,
            )
        return HTMLResponse(_SUCCESS_PAGE)
