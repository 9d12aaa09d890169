"""
Endpoints the deploy controller calls on the outgoing instance.

GET  /active-users  ->  {"count": N}   sessions still pinned to this slot
POST /new-version                      a new version is live and traffic is split;
     optional body {"deadline": "2024-01-15T14:30:00Z"} (forced cutover time, UTC)
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.requests import HTTPConnection
from pydantic import BaseModel

from drainapp.sessions import SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


class NewVersionRequest(BaseModel):
    deadline: str | None = None


def get_registry(conn: HTTPConnection) -> SessionRegistry:
    return conn.app.state.registry


def parse_deadline(raw: str | None) -> datetime | None:
    if not raw or not raw.strip():
        return None
    try:
        deadline = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable drain deadline {raw!r}")
        return None
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=timezone.utc)
    return deadline


@router.get("/active-users")
async def active_users(registry: SessionRegistry = Depends(get_registry)):
    return {"count": registry.pinned_count()}


@router.post("/new-version")
async def new_version(
    body: NewVersionRequest | None = None,
    registry: SessionRegistry = Depends(get_registry),
):
    deadline = parse_deadline(body.deadline if body else None)
    logger.info(
        "New version announced by deploy controller",
        extra={"deadline": deadline.isoformat() if deadline else None},
    )
    result = registry.on_drain_requested(deadline)
    return {
        "status": "draining",
        "deadline": deadline.isoformat() if deadline else None,
        **result,
    }
