"""
Maintenance routes — stale build-cache cleanup.

  POST /maintenance/cleanup-stale-caches   optional JSON body {staleDays, checkAppExists, dryRun}
  GET  /maintenance/cleanup-stale-caches   same options as query parameters

Input is validated before the cluster is touched: a bad staleDays is a 400
with no store calls.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from control_plane.config import settings
from control_plane.errors import ControlPlaneError, InvalidArgument
from control_plane.models import CleanupRequest, CleanupResponse, ErrorResponse
from control_plane.routers import audit, limiter
from control_plane.services import get_collector
from control_plane.services.collector import validate_stale_days

logger = logging.getLogger("maintenance")

router = APIRouter(prefix="/maintenance", tags=["maintenance"])

_RESPONSES = {400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}}

_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def _parse_bool(name: str, value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise InvalidArgument(f"invalid {name} '{value}': must be true or false")


def _run_cleanup(request: Request, stale_days: int, check_app_exists: bool, dry_run: bool) -> dict:
    user_id = audit.get_user_id(request)
    target = f"staleDays={stale_days},checkAppExists={check_app_exists},dryRun={dry_run}"
    try:
        report = get_collector().cleanup(
            stale_days=stale_days, check_app_exists=check_app_exists, dry_run=dry_run,
        )
    except ControlPlaneError as e:
        audit.record("CACHE_CLEANUP", settings.STAGING_NAMESPACE, target, e.code, e.message, user_id)
        raise
    audit.record(
        "CACHE_CLEANUP", settings.STAGING_NAMESPACE, target, "SUCCESS",
        f"{len(report.stale_caches)} stale, {len(report.deleted)} deleted", user_id,
    )
    return report.to_dict()


@router.post("/cleanup-stale-caches", response_model=CleanupResponse, responses=_RESPONSES)
@limiter.limit(settings.RATE_LIMIT)
async def cleanup_stale_caches(request: Request):
    """Delete (or, with dryRun, list) stale build-cache volumes."""
    raw = await request.body()
    options = CleanupRequest()
    if raw.strip():
        try:
            data = json.loads(raw)
        except ValueError:
            raise InvalidArgument("invalid request body: malformed JSON")
        if not isinstance(data, dict):
            raise InvalidArgument("invalid request body: expected a JSON object")
        try:
            options = CleanupRequest.model_validate(data)
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            raise InvalidArgument(f"invalid {', '.join(fields) or 'request body'}")

    stale_days = validate_stale_days(options.staleDays, default=settings.STALE_CACHE_DAYS)
    # the sweep blocks on cluster calls
    return await run_in_threadpool(
        _run_cleanup,
        request,
        stale_days,
        True if options.checkAppExists is None else options.checkAppExists,
        False if options.dryRun is None else options.dryRun,
    )


@router.get("/cleanup-stale-caches", response_model=CleanupResponse, responses=_RESPONSES)
@limiter.limit(settings.RATE_LIMIT)
def cleanup_stale_caches_query(
    request: Request,
    staleDays: Optional[str] = Query(None, description="Age threshold in days (default 30)"),
    checkAppExists: Optional[str] = Query(None, description="Only delete caches of deleted apps"),
    dryRun: Optional[str] = Query(None, description="Report without deleting"),
):
    stale_days = validate_stale_days(staleDays, default=settings.STALE_CACHE_DAYS)
    return _run_cleanup(
        request,
        stale_days,
        _parse_bool("checkAppExists", checkAppExists, True),
        _parse_bool("dryRun", dryRun, False),
    )
