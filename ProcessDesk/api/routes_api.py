# Standard library imports
import asyncio
import logging
from typing import Any, Dict, List, Optional

# Third-party imports
import bcrypt
from fastapi import FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.responses import JSONResponse

# Local imports
from ProcessDesk import __version__ as __main_version__
from ProcessDesk.api.records import SQLiteRecordStore
from ProcessDesk.config import config
from ProcessDesk.core.server.exceptions import (
    RecordConflictError,
    RecordNotFoundError,
    RecordValidationError,
    StorageUnavailableError,
)
from ProcessDesk.core.server.interfaces import MessageStore
from ProcessDesk.core.server.presence import ConnectionRegistry
from ProcessDesk.core.server.routing import ChangeNotifier

logger = logging.getLogger(__name__)

ROLES = ("SuperAdmin", "Admin", "Editor", "Viewer")


def hash_password(password: str) -> str:
    """Hash password with bcrypt (rounds=10 for performance)."""
    salt = bcrypt.gensalt(rounds=10)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


class ProcessPayload(BaseModel):
    company: Optional[str] = None
    location: Optional[str] = None
    title: str = Field(min_length=1)
    description: Optional[str] = None
    current_status: Optional[str] = None
    start_date: Optional[str] = None
    next_check_date: Optional[str] = None
    completion_date: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    assignees: List[int] = Field(default_factory=list)


class UserCreate(BaseModel):
    full_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)
    role: str = "Viewer"
    status: str = "active"
    hint: str = ""


class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    hint: Optional[str] = None


class GroupCreate(BaseModel):
    name: str
    children: List[str] = Field(default_factory=list)


class GroupRename(BaseModel):
    new_name: str


# Child payloads keep fields optional so blank and missing both map to 400.
class SubcategoryPayload(BaseModel):
    category: Optional[str] = None
    subcategory: Optional[str] = None


class SubcategoryRename(BaseModel):
    category: Optional[str] = None
    old_subcategory: Optional[str] = None
    new_subcategory: Optional[str] = None


class LocationPayload(BaseModel):
    company: Optional[str] = None
    location: Optional[str] = None


class LocationRename(BaseModel):
    company: Optional[str] = None
    old_location: Optional[str] = None
    new_location: Optional[str] = None


def _check_role(role: Optional[str]) -> None:
    if role is not None and role not in ROLES:
        raise RecordValidationError(f"Unknown role: {role}")


def create_app(
    records: SQLiteRecordStore,
    message_store: MessageStore,
    notifier: ChangeNotifier,
    registry: ConnectionRegistry
) -> FastAPI:
    """
    Build the REST application.

    Every mutating endpoint awaits ``notifier.notify()`` exactly once, after
    its write committed. Failed requests never notify.

    Args:
        records: Process, user, category, company and settings store
        message_store: Chat log, read for conversation refetches
        notifier: Broadcasts ``state-invalidated`` to every live connection
        registry: Presence table, read for the current snapshot
    """
    app = FastAPI(title="ProcessDesk API", version=__main_version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _error_handler(status_code: int):
        async def handler(request: Request, exc: Exception) -> JSONResponse:
            logger.info("%s %s failed (%d): %s", request.method, request.url.path, status_code, exc)
            return JSONResponse(status_code=status_code, content={"success": False, "message": str(exc)})
        return handler

    app.add_exception_handler(RecordNotFoundError, _error_handler(404))
    app.add_exception_handler(RecordConflictError, _error_handler(409))
    app.add_exception_handler(RecordValidationError, _error_handler(400))
    app.add_exception_handler(StorageUnavailableError, _error_handler(503))

    # ---------------------------- health ----------------------------
    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": __main_version__, "online": len(registry)}

    # --------------------------- processes ---------------------------
    @app.get("/api/processes/initial-data")
    async def initial_data():
        return {
            "processes": records.list_processes(),
            "users": records.list_users(),
            "categories": records.list_group("categories"),
            "companies": records.list_group("companies"),
            "settings": records.get_settings(),
            "logs": records.list_logs(),
        }

    @app.post("/api/processes", status_code=201)
    async def create_process(payload: ProcessPayload, x_actor_id: Optional[int] = Header(None)):
        process_id = records.create_process(payload.model_dump(), actor_id=x_actor_id)
        await notifier.notify()
        return {"success": True, "id": process_id}

    @app.put("/api/processes/{process_id}")
    async def update_process(process_id: str, payload: ProcessPayload,
                             x_actor_id: Optional[int] = Header(None)):
        process = records.update_process(process_id, payload.model_dump(), actor_id=x_actor_id)
        await notifier.notify()
        return {"success": True, "process": process}

    @app.delete("/api/processes/{process_id}")
    async def delete_process(process_id: str, x_actor_id: Optional[int] = Header(None)):
        records.delete_process(process_id, actor_id=x_actor_id)
        await notifier.notify()
        return {"success": True}

    # ----------------------------- users -----------------------------
    @app.get("/api/users")
    async def list_users():
        return records.list_users()

    @app.post("/api/users", status_code=201)
    async def create_user(payload: UserCreate):
        _check_role(payload.role)
        password_hash = await asyncio.to_thread(hash_password, payload.password)
        user_id = records.create_user(
            payload.full_name.strip(), payload.email.strip().lower(), password_hash,
            payload.role, payload.status, payload.hint
        )
        await notifier.notify()
        return {"success": True, "id": user_id}

    @app.put("/api/users/{user_id}")
    async def update_user(user_id: int, payload: UserUpdate):
        _check_role(payload.role)
        changes: Dict[str, Any] = payload.model_dump(exclude={"password"}, exclude_none=True)
        if "email" in changes:
            changes["email"] = changes["email"].strip().lower()
        if payload.password:
            if len(payload.password) < 6:
                raise RecordValidationError("Password must be at least 6 characters")
            changes["password_hash"] = await asyncio.to_thread(hash_password, payload.password)
        user = records.update_user(user_id, changes)
        await notifier.notify()
        return {"success": True, "user": user}

    @app.delete("/api/users/{user_id}")
    async def delete_user(user_id: int):
        records.delete_user(user_id)
        await notifier.notify()
        return {"success": True}

    # --------------------- categories / companies ---------------------
    def _group_routes(table: str, child_path: str, parent: str, child: str,
                      child_model: type, rename_model: type) -> None:
        @app.get(f"/api/{table}", name=f"list_{table}")
        async def list_group():
            return records.list_group(table)

        # Registered before the /{old_name} and /{name} routes, which would match them otherwise.
        @app.post(f"/api/{table}/{child_path}", status_code=201, name=f"add_{table}_{child}")
        async def add_child(payload: child_model):
            groups = records.add_child(table, getattr(payload, parent), getattr(payload, child))
            await notifier.notify()
            return {"success": True, table: groups}

        @app.put(f"/api/{table}/{child_path}", name=f"rename_{table}_{child}")
        async def rename_child(payload: rename_model):
            groups = records.rename_child(
                table, getattr(payload, parent),
                getattr(payload, f"old_{child}"), getattr(payload, f"new_{child}")
            )
            await notifier.notify()
            return {"success": True, table: groups}

        @app.delete(f"/api/{table}/{child_path}", name=f"delete_{table}_{child}")
        async def delete_child(payload: child_model):
            groups = records.delete_child(table, getattr(payload, parent), getattr(payload, child))
            await notifier.notify()
            return {"success": True, table: groups}

        @app.post(f"/api/{table}", status_code=201, name=f"add_{table}")
        async def add_group(payload: GroupCreate):
            groups = records.add_group(table, payload.name, payload.children)
            await notifier.notify()
            return {"success": True, table: groups}

        @app.put(f"/api/{table}/{{old_name}}", name=f"rename_{table}")
        async def rename_group(old_name: str, payload: GroupRename):
            groups = records.rename_group(table, old_name, payload.new_name)
            await notifier.notify()
            return {"success": True, table: groups}

        @app.delete(f"/api/{table}/{{name}}", name=f"delete_{table}")
        async def delete_group(name: str):
            groups = records.delete_group(table, name)
            await notifier.notify()
            return {"success": True, table: groups}

    _group_routes("categories", "sub", "category", "subcategory", SubcategoryPayload, SubcategoryRename)
    _group_routes("companies", "location", "company", "location", LocationPayload, LocationRename)

    # ---------------------------- settings ----------------------------
    @app.get("/api/system/settings")
    async def get_settings():
        return records.get_settings()

    @app.put("/api/system/settings")
    async def update_settings(changes: Dict[str, Any]):
        settings = records.update_settings(changes)
        await notifier.notify()
        return {"success": True, "settings": settings}

    @app.post("/api/system/reset-defaults")
    async def reset_settings():
        settings = records.reset_settings()
        await notifier.notify()
        return {"success": True, "settings": settings}

    # ------------------------ chat and presence ------------------------
    @app.get("/api/messages/{user_a}/{user_b}")
    async def get_conversation(user_a: str, user_b: str):
        messages = await asyncio.to_thread(message_store.get_conversation, user_a, user_b)
        return [m.to_payload() for m in messages]

    @app.get("/api/presence")
    async def presence():
        return {"users": registry.snapshot()}

    return app


__all__ = [
    'create_app',
    'hash_password',
    'ROLES',
]
