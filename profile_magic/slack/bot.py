"""Slack Bolt wiring and the process entry point.

WHY: One process runs both halves of the bot: the Socket Mode listener
that receives commands and clicks, and the HTTP server that hosts the
generated images and the OAuth callback. They share the credential
store and blob host, so they are built together here.

HOW: create_app() registers ActionDispatcher methods as Bolt listeners.
main() configures logging, loads settings, binds the HTTP socket, runs
uvicorn in a daemon thread, and then blocks on SocketModeHandler.start().

RULES:
- Missing configuration or an unbindable port exits with status 1
- The HTTP socket is bound before Socket Mode connects, so image URLs
  in the first results already resolve
- Runnable as: python -m profile_magic (or the profile-magic script)
"""

from __future__ import annotations

import logging
import os
import socket
import sys
import threading
from typing import Any

import uvicorn
from slack_bolt import App
from slack_bolt.adapter.socket_mode import SocketModeHandler

from profile_magic.config import ConfigurationError, Settings, load_settings
from profile_magic.imaging.model import GeminiImageModel
from profile_magic.imaging.pipeline import GenerationPipeline
from profile_magic.logs import configure_logging
from profile_magic.server.app import create_server
from profile_magic.slack.dispatch import ActionDispatcher
from profile_magic.slack.messages import (
    ACTION_APPROVE,
    ACTION_AUTHORIZE,
    ACTION_CANCEL,
    ACTION_OPEN_ADVANCED,
    ACTION_OPEN_SHARE,
    ACTION_RETRY,
    ADVANCED_MODAL_CALLBACK_ID,
    PRESET_MODAL_CALLBACK_ID,
    SHARE_MODAL_CALLBACK_ID,
)
from profile_magic.storage.blobs import BlobHost
from profile_magic.storage.credentials import CredentialStore
from profile_magic.storage.recent import RecentCache

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------


def create_app(settings: Settings, dispatcher: ActionDispatcher, **app_kwargs: Any) -> App:
    """Create the Bolt app and register every listener.

    RULES:
    - app_kwargs are passed to App (tests disable token verification)
    - All handlers are registered before returning
    """
    app = App(token=settings.slack_bot_token, **app_kwargs)

    app.command(settings.slash_command)(dispatcher.handle_command)

    app.view(PRESET_MODAL_CALLBACK_ID)(dispatcher.handle_preset_submission)
    app.view(ADVANCED_MODAL_CALLBACK_ID)(dispatcher.handle_advanced_submission)
    app.view(SHARE_MODAL_CALLBACK_ID)(dispatcher.handle_share_submission)

    app.action(ACTION_APPROVE)(dispatcher.handle_approve)
    app.action(ACTION_RETRY)(dispatcher.handle_retry)
    app.action(ACTION_CANCEL)(dispatcher.handle_cancel)
    app.action(ACTION_OPEN_SHARE)(dispatcher.handle_open_share)
    app.action(ACTION_OPEN_ADVANCED)(dispatcher.handle_open_advanced)
    app.action(ACTION_AUTHORIZE)(dispatcher.handle_noop)

    app.event("file_shared")(dispatcher.handle_file_shared)
    return app


def build_dispatcher(settings: Settings, blob_host: BlobHost, credentials: CredentialStore) -> ActionDispatcher:
    model = GeminiImageModel(api_key=settings.gemini_api_key, model=settings.gemini_model)
    pipeline = GenerationPipeline(model, blob_host)
    return ActionDispatcher(settings, credentials, blob_host, pipeline, recent=RecentCache())


# ---------------------------------------------------------------------------
# HTTP server thread
# ---------------------------------------------------------------------------


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind and listen on (host, port); raises OSError if the port is taken."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    return sock


def start_http_server(app: Any, sock: socket.socket, log_level: str = "info") -> threading.Thread:
    config = uvicorn.Config(app, log_level=log_level, access_log=False)
    server = uvicorn.Server(config)
    t = threading.Thread(target=server.run, kwargs={"sockets": [sock]}, daemon=True)
    t.start()
    return t


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Start the file host and the Slack bot in Socket Mode.

    HOW: Settings are validated first, then the HTTP socket is bound, so
    both failure modes exit before any Slack connection is made.

    RULES:
    - Exit 1 on ConfigurationError or when the port cannot be bound
    - Blocks on SocketModeHandler.start()
    """
    configure_logging(os.environ.get("LOG_LEVEL", "INFO").upper())

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(1)
    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))

    blob_host = BlobHost(settings.temp_dir, settings.base_url, settings.file_ttl_seconds)
    credentials = CredentialStore(settings.tokens_file)
    dispatcher = build_dispatcher(settings, blob_host, credentials)

    try:
        sock = bind_socket("0.0.0.0", settings.port)
    except OSError as exc:
        logger.error("Could not bind HTTP port %d: %s", settings.port, exc)
        sys.exit(1)

    start_http_server(create_server(settings, blob_host, credentials), sock, settings.log_level.lower())
    logger.info("File server listening on port %d (public URL %s)", settings.port, settings.base_url)

    app = create_app(settings, dispatcher)

    logger.info("Starting Slack bot in Socket Mode...")
    logger.info("Slash command: %s, image model: %s", settings.slash_command, settings.gemini_model)
    handler = SocketModeHandler(app, settings.slack_app_token)
    handler.start()


if __name__ == "__main__":
    main()
