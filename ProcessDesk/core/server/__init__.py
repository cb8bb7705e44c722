"""
Server module for ProcessDesk.

Architecture Overview:
---------------------

1. **Presence** (`presence.py`)
   - ConnectionRegistry: online users mapped to their live connection

2. **Transport Layer** (`transport/`)
   - WebSocketConnection: connection wrapper with a unique conn_id
   - ConnectionHub: every live connection, best-effort fan-out

3. **Storage** (`storage_sqlite.py`)
   - SQLiteMessageStore: append-only chat log

4. **Message Routing** (`routing/`)
   - MessageRouter: persist-then-deliver for chat messages
   - PresenceBroadcaster: full online-user snapshot to everyone
   - ChangeNotifier: "refetch your state" signal after REST writes

5. **Lifecycle** (`lifecycle.py`)
   - ConnectionLifecycleHandler: anonymous -> identified -> terminated

6. **Server** (`websocket_manager.py`)
   - ChatServer: websockets front end composing all of the above

Usage:

    from ProcessDesk.core.server import ChatServer, SQLiteMessageStore

    server = ChatServer(SQLiteMessageStore("msgdatabase.sqlite"))
    async with server.run("0.0.0.0", 3001):
        await asyncio.Future()
"""

from ProcessDesk.core.server.exceptions import (
    ProcessDeskError,
    InvalidMessageError,
    StorageUnavailableError,
    ProtocolError,
    RecordNotFoundError,
    RecordConflictError,
    RecordValidationError,
)
from ProcessDesk.core.server.interfaces import (
    TransportConnection,
    MessageStore,
)
from ProcessDesk.core.server.lifecycle import (
    ConnectionState,
    ConnectionContext,
    ConnectionLifecycleHandler,
)
from ProcessDesk.core.server.presence import (
    ConnectionRegistry,
    RegistryEntry,
)
from ProcessDesk.core.server.routing import (
    MessageRouter,
    PresenceBroadcaster,
    ChangeNotifier,
    DeliveryResult,
    DeliveryStatus,
    RouteResult,
)
from ProcessDesk.core.server.storage_sqlite import SQLiteMessageStore
from ProcessDesk.core.server.transport import (
    WebSocketConnection,
    ConnectionHub,
)
from ProcessDesk.core.server.websocket_manager import ChatServer

__all__ = [
    'ProcessDeskError',
    'InvalidMessageError',
    'StorageUnavailableError',
    'ProtocolError',
    'RecordNotFoundError',
    'RecordConflictError',
    'RecordValidationError',

    'TransportConnection',
    'MessageStore',

    'ConnectionState',
    'ConnectionContext',
    'ConnectionLifecycleHandler',

    'ConnectionRegistry',
    'RegistryEntry',

    'MessageRouter',
    'PresenceBroadcaster',
    'ChangeNotifier',
    'DeliveryResult',
    'DeliveryStatus',
    'RouteResult',

    'SQLiteMessageStore',

    'WebSocketConnection',
    'ConnectionHub',

    'ChatServer',
]
