"""
MiSub - REST API Routes
========================
All HTTP API endpoints used by the admin UI.

Route groups:
    /api/login, /api/logout - Session cookie handling
    /api/data               - Read subscriptions, profiles and worker settings
    /api/misubs             - Save subscriptions and profiles
    /api/node-groups        - Node group list / create-or-update / delete
    /api/debug              - Binding and auth diagnostics

All routes except login, logout and debug require a valid session cookie.
See auth.py for authentication details.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field

from misub.auth import AuthManager, require_auth
from misub.errors import AuthError, StoreError
from misub.groups import NodeGroupManager
from misub.store import KEY_PROFILES, KEY_SETTINGS, KEY_SUBSCRIPTIONS, KeyValueStore


logger = logging.getLogger(__name__)


# Shown by GET / and by the startup banner.
ENDPOINTS = {
    "POST /api/login": "Log in",
    "GET /api/logout": "Log out",
    "GET /api/data": "Get data",
    "POST /api/misubs": "Save data",
    "GET /api/node-groups": "List node groups",
    "POST /api/node-groups": "Create or update a node group",
    "DELETE /api/node-groups?id=xxx": "Delete a node group",
    "GET /api/debug": "Debug info",
    "GET /health": "Health check",
}


# =============================================================================
# Request Models (Pydantic)
# =============================================================================

class LoginRequest(BaseModel):
    """Login with the admin password."""
    password: Any = Field(None, description="Admin password; non-strings never match")

class SaveDataRequest(BaseModel):
    """Full replacement of subscriptions and profiles."""
    misubs: list[Any] = Field(..., description="Subscription records")
    profiles: list[Any] = Field(..., description="Profile records")

class NodeGroupRequest(BaseModel):
    """
    Create (no id) or update (id given) a node group.
    name and nodeIds are checked by NodeGroupManager so that errors come
    back in a fixed order with readable messages.
    """
    id: str | None = None
    name: Any = None
    description: str | None = None
    nodeIds: Any = None
    enabled: Any = None


# =============================================================================
# Router Factory
# =============================================================================

def create_router(
    auth_manager: AuthManager,
    store: KeyValueStore | None,
    group_manager: NodeGroupManager | None,
) -> APIRouter:
    """
    Create and configure the API router with all endpoints.

    Args:
        auth_manager:  Password verification and session cookies.
        store:         Key-value store, or None when no KV is bound.
        group_manager: Node group CRUD, or None when no KV is bound.

    Returns:
        Configured APIRouter with all endpoints registered.
    """
    router = APIRouter(prefix="/api")

    # Shorthand for the auth dependency
    auth = Depends(require_auth(auth_manager))

    def kv() -> KeyValueStore:
        if store is None:
            raise StoreError("KV namespace is not bound")
        return store

    def groups() -> NodeGroupManager:
        if group_manager is None:
            raise StoreError("KV namespace is not bound")
        return group_manager

    # =========================================================================
    # SESSION ROUTES - No authentication required
    # =========================================================================

    @router.post("/login")
    async def login(req: LoginRequest, response: Response):
        """Check the password and set the session cookie."""
        if not auth_manager.verify_password(req.password):
            logger.warning("Failed login attempt")
            raise AuthError("Invalid password")
        response.headers["Set-Cookie"] = auth_manager.create_auth_cookie()
        logger.info("Admin logged in")
        return {"success": True}

    @router.api_route("/logout", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    async def logout(response: Response):
        """
        Clear the session cookie. Always succeeds, logged in or not.
        Tokens are not tracked server-side, so only this client is affected.
        """
        response.headers["Set-Cookie"] = auth_manager.clear_auth_cookie()
        return {"success": True}

    @router.get("/debug")
    async def debug(request: Request):
        """Report whether the KV binding and admin password are present."""
        return {
            "message": "MiSub local server is running",
            "hasKV": store is not None,
            "hasAdminPassword": auth_manager.is_configured(),
            "authenticated": auth_manager.is_authenticated(request.headers.get("cookie")),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # =========================================================================
    # SUBSCRIPTION DATA ROUTES - Requires authentication
    # =========================================================================

    @router.get("/data", dependencies=[auth])
    async def get_data():
        """
        Return subscriptions, profiles and worker settings in one payload.
        Each key is read on its own; missing keys come back empty.
        """
        store = kv()
        subscriptions = store.get(KEY_SUBSCRIPTIONS)
        profiles = store.get(KEY_PROFILES)
        config = store.get(KEY_SETTINGS)
        return {
            "misubs": subscriptions if subscriptions is not None else [],
            "profiles": profiles if profiles is not None else [],
            "config": config if config is not None else {},
        }

    @router.post("/misubs", dependencies=[auth])
    async def save_data(req: SaveDataRequest):
        """
        Replace subscriptions and profiles.

        The two keys are written one after the other with plain puts. A
        failure between them leaves subscriptions updated and profiles stale.
        """
        store = kv()
        store.put(KEY_SUBSCRIPTIONS, req.misubs)
        store.put(KEY_PROFILES, req.profiles)
        logger.info(
            "Saved %d subscriptions and %d profiles", len(req.misubs), len(req.profiles),
        )
        return {"success": True, "message": "Data saved"}

    # =========================================================================
    # NODE GROUP ROUTES - Requires authentication
    # =========================================================================

    @router.get("/node-groups", dependencies=[auth])
    async def list_node_groups():
        """Return every node group."""
        return {"success": True, "data": groups().list_groups()}

    @router.post("/node-groups", dependencies=[auth])
    async def save_node_group(req: NodeGroupRequest):
        """
        Create a node group, or update it when 'id' is given.
        Responds with the whole collection after the write.
        """
        data, created = groups().save(
            group_id=req.id,
            name=req.name,
            description=req.description,
            node_ids=req.nodeIds,
            enabled=req.enabled,
        )
        return {
            "success": True,
            "message": "Group created" if created else "Group updated",
            "data": data,
        }

    @router.delete("/node-groups", dependencies=[auth])
    async def delete_node_group(id: str | None = Query(None, description="Group id")):
        """Delete the node group given by ?id= and return the rest."""
        data = groups().delete(id)
        return {"success": True, "message": "Group deleted", "data": data}

    return router
