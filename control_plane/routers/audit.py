"""
Audit log (in-memory ring buffer) of mutating control plane actions.
"""

import logging
from collections import deque

from fastapi import APIRouter, Request

from control_plane.config import settings
from control_plane.models import AuditLogResponse
from control_plane.resources import format_timestamp, utcnow
from control_plane.routers import limiter

logger = logging.getLogger("audit")

router = APIRouter(tags=["audit"])

_audit_log: deque[dict] = deque(maxlen=100)


def get_user_id(request: Request) -> str:
    """
    Extract user identity from X-User-Id header.
    Falls back to 'anonymous' if not provided.
    """
    return request.headers.get("x-user-id", "anonymous")


def record(action: str, namespace: str, target: str, result: str,
           detail: str = "", user_id: str = "anonymous"):
    entry = {
        "timestamp": format_timestamp(utcnow()),
        "action": action,
        "namespace": namespace,
        "target": target,
        "user_id": user_id,
        "result": result,
        "detail": detail,
    }
    _audit_log.append(entry)
    logger.info(f"AUDIT: {action} {namespace}/{target} by {user_id} -> {result}")


@router.get("/audit/log", response_model=AuditLogResponse)
@limiter.limit(settings.RATE_LIMIT)
async def get_audit_log(request: Request):
    """Get the control plane audit log (last 100 entries)."""
    return {"entries": list(_audit_log), "count": len(_audit_log)}
