"""FastAPI application: blob file host, health checks, and OAuth routes.

WHY: Slack renders Block Kit images from public URLs, so generated
images must be reachable over HTTP for as long as their TTL. The same
small server hosts the OAuth start/callback pages that give the bot a
user token for users.setPhoto.

HOW: create_server() builds a FastAPI app around an existing BlobHost
and CredentialStore (the bot shares the same instances). A lifespan task
sweeps expired blobs every SWEEP_INTERVAL_SECONDS, running each sweep in
a worker thread so file I/O never blocks the event loop.

RULES:
- /files/{key} serves bytes with Cache-Control: public, max-age=300 and
  X-Content-Type-Options: nosniff; unknown keys are a 404 JSON body
- ?dl=1 adds Content-Disposition: attachment
- OAuth pages answer 400 with a small HTML page on any bad input
- Tokens are never rendered or logged
"""

from __future__ import annotations

import asyncio
import html
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from profile_magic import __version__
from profile_magic.config import Settings
from profile_magic.server.models import ErrorResponse, HealthResponse, ServiceInfo
from profile_magic.server.oauth import (
    AuthState,
    OAuthExchangeError,
    UserGrant,
    authorize_url,
    decode_state,
    exchange_code,
)
from profile_magic.storage.blobs import BlobHost, infer_media_type
from profile_magic.storage.credentials import CredentialStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "profile-magic"

FILE_CACHE_CONTROL = "public, max-age=300"

Exchange = Callable[[str, Optional[AuthState]], UserGrant]

_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 48px;">
<h1>{title}</h1>
<p>{message}</p>
</body>
</html>
"""


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        _PAGE.format(title=html.escape(title), message=html.escape(message)),
        status_code=status_code,
    )


def _error_page(message: str) -> HTMLResponse:
    return _page("Authorization failed", message, status_code=400)


async def _periodic_sweep(blob_host: BlobHost, interval_s: int) -> None:
    """Sweep expired blobs every interval_s seconds until cancelled."""
    while True:
        await asyncio.sleep(interval_s)
        removed = await asyncio.to_thread(blob_host.sweep)
        if removed:
            logger.info("Blob sweep removed %d file(s)", removed)


def create_server(
    settings: Settings,
    blob_host: BlobHost,
    credentials: CredentialStore,
    exchange: Optional[Exchange] = None,
) -> FastAPI:
    """Build the HTTP app.

    Args:
        settings: Resolved configuration (base URL, OAuth client, sweep interval).
        blob_host: Store whose blobs are served under /files/.
        credentials: Where the OAuth callback stores user tokens.
        exchange: Replaces the oauth.v2.access call (tests).

    Returns:
        A FastAPI app; the sweep task runs while its lifespan is active.
    """
    if exchange is None:
        def exchange(code: str, state: Optional[AuthState]) -> UserGrant:
            return exchange_code(settings, code, fallback=state)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the periodic sweep on startup, cancel on shutdown."""
        task = asyncio.create_task(_periodic_sweep(blob_host, settings.sweep_interval_seconds))
        yield
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    app = FastAPI(
        lifespan=lifespan,
        title="Profile Magic",
        description=(
            "Static host for AI-edited profile photos and the Slack OAuth "
            "flow that lets the bot update a user's profile photo."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )

    # ------------------------------------------------------------------
    # Service
    # ------------------------------------------------------------------

    @app.get("/", response_model=ServiceInfo, tags=["service"], summary="Service banner")
    async def root() -> ServiceInfo:
        return ServiceInfo(service=SERVICE_NAME, version=__version__, status="running")

    @app.get("/health", response_model=HealthResponse, tags=["service"], summary="Health check")
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=__version__,
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @app.get(
        "/files/{key}",
        tags=["files"],
        summary="Download a generated image",
        description=(
            "Serves a blob written by the generation pipeline. Blobs expire "
            "after FILE_TTL_SECONDS regardless of access."
        ),
        responses={404: {"model": ErrorResponse, "description": "Unknown or expired file"}},
    )
    async def get_file(
        key: str,
        dl: Optional[str] = Query(None, description="Set to 1 to download as an attachment."),
    ) -> Response:
        # Disk I/O off the event loop
        data = await asyncio.to_thread(blob_host.read, key)
        if data is None:
            raise HTTPException(status_code=404, detail="File not found")

        headers = {
            "Cache-Control": FILE_CACHE_CONTROL,
            "X-Content-Type-Options": "nosniff",
        }
        if dl == "1":
            headers["Content-Disposition"] = 'attachment; filename="{}"'.format(key)
        return Response(content=data, media_type=infer_media_type(key), headers=headers)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @app.get("/auth/start", tags=["oauth"], summary="Redirect to Slack's OAuth consent page")
    async def auth_start(state: Optional[str] = Query(None)) -> Response:
        if decode_state(state) is None:
            return _error_page("This authorization link is invalid. Please run the command in Slack again.")
        return RedirectResponse(authorize_url(settings, state), status_code=302)

    @app.get("/auth/callback", tags=["oauth"], summary="OAuth redirect target")
    def auth_callback(
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
    ) -> Response:
        # Sync handler: runs in the threadpool (Slack call + token file write)
        if error:
            logger.warning("OAuth callback returned error: %s", error)
            return _error_page("Slack reported an error: {}".format(error))

        auth_state = decode_state(state)
        if not code or auth_state is None:
            return _error_page("Missing or invalid authorization parameters.")

        try:
            grant = exchange(code, auth_state)
        except OAuthExchangeError as exc:
            logger.error("OAuth exchange failed: %s", exc)
            return _error_page("We couldn't complete the authorization. Please try again.")

        if not credentials.store(grant.team_id, grant.user_id, grant.access_token):
            return _page(
                "Authorization failed",
                "Your authorization could not be saved. Please try again later.",
                status_code=500,
            )
        logger.info("Authorized user %s in team %s", grant.user_id, grant.team_id)
        return _page(
            "Authorization complete",
            "You can close this window and return to Slack. Your profile photo "
            "can now be updated from the bot.",
        )

    return app
