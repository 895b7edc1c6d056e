"""HTTP endpoint issuing upload tokens."""

import json
import logging
from typing import Optional

from aiohttp import web

from .storage.base import TokenStore

logger = logging.getLogger(__name__)

MISSING_ID_ERROR = "Missing image id"
ALREADY_REQUESTED_ERROR = "The requested image_id is already requested"


class TokenServer:
    """Simple HTTP server handing out single-use upload tokens."""

    def __init__(self, store: TokenStore, host: str = "localhost", port: int = 8080):
        """Initialize token server.

        Args:
            store: Store the tokens are persisted in
            host: Interface to bind to
            port: Port to listen on (default: 8080)
        """
        self.store = store
        self.host = host
        self.port = port
        self.app = web.Application()
        self.app.router.add_post("/token", self.handle_create_token)
        self.app.router.add_get("/health", self.handle_health)
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def handle_create_token(self, request: web.Request) -> web.Response:
        """Create a token valid for one single upload of an image.

        The client can then send the file directly with the token and only a
        small JSON payload goes through the app.
        """
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None

        image_id = body.get("id") if isinstance(body, dict) else None
        if isinstance(image_id, (int, float)) and not isinstance(image_id, bool) and image_id:
            image_id = str(image_id)
        if not isinstance(image_id, str) or not image_id.strip():
            return web.json_response({"error": MISSING_ID_ERROR}, status=400)

        token = await self.store.issue_token(image_id)
        if token is None:
            return web.json_response({"error": ALREADY_REQUESTED_ERROR}, status=403)
        return web.json_response({"token": token})

    async def handle_health(self, request: web.Request) -> web.Response:
        """Report database liveness and pool gauges."""
        alive = await self.store.is_db_alive()
        payload = {"status": "ok" if alive else "unavailable", **self.store.stats()}
        return web.json_response(payload, status=200 if alive else 503)

    async def start(self):
        """Start the token server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        print(f"✅ Token server started on http://{self.host}:{self.port}")

    async def stop(self):
        """Stop the token server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        print("🛑 Token server stopped")
