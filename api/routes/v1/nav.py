"""
api/routes/v1/nav.py -- Navigation tree endpoints.

Routes (mounted under /api, signature required):
  GET    /nav          -- whole tree, top-level entries with nested children (public)
  POST   /nav          -- create an entry (admin only)
  PUT    /nav/{nav_id} -- rename / move an entry (admin only)
  DELETE /nav/{nav_id} -- delete an entry and its subtree (admin only)

Tree rule violations from NavStore map to HTTP errors: an unknown parent is a
404, moving an entry under itself is a 400.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from accounts.dependencies import require_admin
from accounts.models import User
from api.models import NavRequest
from api.responses import api_error, ok
from core.models import ResponseCode
from nav.models import NavItem
from nav.store import NavError, NavStore

logger = logging.getLogger("idecs.api.nav")

router = APIRouter()


@router.get("/nav")
def get_tree(request: Request) -> JSONResponse:
    nav_store: NavStore = request.app.state.nav_store
    return ok([item.to_dict() for item in nav_store.get_tree()])


@router.post("/nav", status_code=201)
def create_nav(
    request: Request,
    body: NavRequest,
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    nav_store: NavStore = request.app.state.nav_store
    try:
        nav_id = nav_store.create_nav(NavItem(name=body.name, description=body.description, parent_id=body.parent_id))
    except NavError as exc:
        raise api_error(404, ResponseCode.NOT_FOUND, str(exc)) from exc
    logger.info("Nav entry %s created by user %s", nav_id, current_user.id)
    return ok(nav_store.get_nav(nav_id).to_dict(), status_code=201)


@router.put("/nav/{nav_id}")
def update_nav(
    request: Request,
    nav_id: int,
    body: NavRequest,
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    """Replace name, description and parent of an entry."""
    nav_store: NavStore = request.app.state.nav_store
    if body.parent_id != 0 and nav_store.get_nav(body.parent_id) is None:
        raise api_error(404, ResponseCode.NOT_FOUND, f"Parent entry {body.parent_id} does not exist.")
    try:
        updated = nav_store.update_nav(nav_id, body.name, body.description, body.parent_id)
    except NavError as exc:
        raise api_error(400, ResponseCode.VALIDATION_ERROR, str(exc)) from exc
    if not updated:
        raise api_error(404, ResponseCode.NOT_FOUND, "Nav entry not found.")
    return ok(nav_store.get_nav(nav_id).to_dict())


@router.delete("/nav/{nav_id}")
def delete_nav(
    request: Request,
    nav_id: int,
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    """Delete an entry together with everything below it."""
    nav_store: NavStore = request.app.state.nav_store
    removed = nav_store.delete_nav(nav_id)
    if removed == 0:
        raise api_error(404, ResponseCode.NOT_FOUND, "Nav entry not found.")
    logger.info("Nav entry %s deleted (%d rows) by user %s", nav_id, removed, current_user.id)
    return ok({"deleted": removed})
