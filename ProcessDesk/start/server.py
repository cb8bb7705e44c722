"""
Server startup module for ProcessDesk.
Wires the stores, the real-time chat server and the REST API together and
runs them in one asyncio event loop.
"""

import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import FastAPI

from ProcessDesk.api.records import SQLiteRecordStore
from ProcessDesk.api.routes_api import create_app
from ProcessDesk.config import config
from ProcessDesk.core.logging import auto_configure
from ProcessDesk.core.server import ChatServer, SQLiteMessageStore

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """One of each stateful component, shared by both front ends."""
    records: SQLiteRecordStore
    message_store: SQLiteMessageStore
    chat_server: ChatServer
    app: FastAPI

    def close(self) -> None:
        self.records.close()
        self.message_store.close()


def build_application(
    records_db: Optional[str] = None,
    messages_db: Optional[str] = None
) -> Application:
    """
    Build the stores, the chat server and the REST app.

    The REST app shares the chat server's registry and notifier, so REST
    writes reach every WebSocket client.
    """
    records = SQLiteRecordStore(records_db or config.RECORDS_DB_FILE)
    message_store = SQLiteMessageStore(messages_db or config.MESSAGES_DB_FILE)
    chat_server = ChatServer(message_store)
    app = create_app(records, message_store, chat_server.notifier, chat_server.registry)
    return Application(records, message_store, chat_server, app)


async def serve(
    host: str = config.DEFAULT_HOST,
    ws_port: int = config.DEFAULT_WS_PORT,
    api_port: int = config.DEFAULT_API_PORT,
    with_ws: bool = True,
    with_api: bool = True
) -> None:
    """Run the selected front ends until cancelled."""
    application = build_application()
    try:
        async with application.chat_server.run(host, ws_port) if with_ws else nullcontext():
            if with_api:
                http = uvicorn.Server(uvicorn.Config(
                    application.app, host=host, port=api_port, log_level="info"
                ))
                logger.info("REST API starting on http://%s:%d", host, api_port)
                await http.serve()
            else:
                await asyncio.Future()
    finally:
        application.close()


def server(port=config.DEFAULT_WS_PORT, srv_only=False):
    """
    Start the chat server and, unless srv_only, the REST API on port + 1.

    Args:
        port (int): WebSocket port (default: 3001)
        srv_only (bool): If True, serve the WebSocket channel only.
    """
    auto_configure()
    try:
        asyncio.run(serve(ws_port=port, api_port=port + 1, with_api=not srv_only))
    except KeyboardInterrupt:
        print("Closed by user.")


def api(port=config.DEFAULT_API_PORT):
    """
    Start the REST API alone. Invalidations then reach no client.

    Args:
        port (int): REST port (default: 3002)
    """
    auto_configure()
    try:
        asyncio.run(serve(api_port=port, with_ws=False))
    except KeyboardInterrupt:
        print("Closed by user.")
