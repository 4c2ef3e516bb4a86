"""
Service binding routes.

  POST   /namespaces/{ns}/applications/{app}/servicebindings   batch bind (one restart)
  GET    /namespaces/{ns}/applications/{app}                   bound configurations
  POST   /namespaces/{ns}/services/{service}/bind              legacy single bind
  DELETE /namespaces/{ns}/services/{service}/bind/{app}        unbind
  GET    /namespaces/{ns}/services/{service}                   show (+ bound apps)
  PATCH  /namespaces/{ns}/services/{service}                   update values, optional restart
  DELETE /namespaces/{ns}/services/{service}                   delete (409 while bound)

Handlers are plain functions: store and Helm calls block, so they run in
FastAPI's threadpool instead of on the event loop.
"""

import logging

from fastapi import APIRouter, Query, Request

from control_plane.config import settings
from control_plane.errors import ControlPlaneError, InvalidArgument, NotFound
from control_plane.models import (
    ApplicationResponse, ErrorResponse, ServiceBatchBindRequest, ServiceBindRequest,
    ServiceResponse, ServiceUpdateRequest,
)
from control_plane.routers import audit, limiter
from control_plane.services import get_binder, get_instances, get_store

logger = logging.getLogger("services")

router = APIRouter(prefix="/namespaces/{namespace}", tags=["services"])

_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@router.post("/applications/{app}/servicebindings", responses=_ERRORS)
@limiter.limit(settings.RATE_LIMIT)
def service_batch_bind(namespace: str, app: str, req: ServiceBatchBindRequest, request: Request):
    """Bind several services to an application. All or nothing, one restart."""
    user_id = audit.get_user_id(request)
    if req.app_name != app:
        raise InvalidArgument(f"app_name '{req.app_name}' does not match path application '{app}'")
    try:
        get_binder().batch_bind(namespace, app, req.service_names)
    except ControlPlaneError as e:
        audit.record("BIND", namespace, app, e.code, e.message, user_id)
        raise
    audit.record("BIND", namespace, app, "SUCCESS", ", ".join(req.service_names), user_id)
    return {}


@router.get("/applications/{app}", response_model=ApplicationResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
def show_application(namespace: str, app: str, request: Request):
    """Bound configurations and desired cache volume of an application."""
    application = get_store().get_app(namespace, app)
    if application is None:
        raise NotFound("application", app, namespace)
    return ApplicationResponse(
        namespace=application.namespace,
        name=application.name,
        configurations=application.configurations,
        cacheVolume=application.cache_volume,
    )


@router.post("/services/{service}/bind", responses=_ERRORS)
@limiter.limit(settings.RATE_LIMIT)
def service_bind(namespace: str, service: str, req: ServiceBindRequest, request: Request):
    """Bind one service to an application (legacy endpoint)."""
    user_id = audit.get_user_id(request)
    try:
        get_binder().bind(namespace, service, req.app_name)
    except ControlPlaneError as e:
        audit.record("BIND", namespace, req.app_name, e.code, e.message, user_id)
        raise
    audit.record("BIND", namespace, req.app_name, "SUCCESS", service, user_id)
    return {}


@router.delete("/services/{service}/bind/{app}", responses=_ERRORS)
@limiter.limit(settings.RATE_LIMIT)
def service_unbind(namespace: str, service: str, app: str, request: Request):
    """Remove a service's configurations from an application."""
    user_id = audit.get_user_id(request)
    try:
        get_binder().unbind(namespace, service, app)
    except ControlPlaneError as e:
        audit.record("UNBIND", namespace, app, e.code, e.message, user_id)
        raise
    audit.record("UNBIND", namespace, app, "SUCCESS", service, user_id)
    return {}


@router.get("/services/{service}", response_model=ServiceResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
def show_service(namespace: str, service: str, request: Request):
    return get_instances().show(namespace, service)


@router.patch("/services/{service}", responses=_ERRORS)
@limiter.limit(settings.RATE_LIMIT)
def update_service(namespace: str, service: str, req: ServiceUpdateRequest, request: Request):
    """Update a service's values. Bound apps restart unless `restart` is false."""
    user_id = audit.get_user_id(request)
    try:
        get_instances().update(namespace, service, req.set, req.unset, req.restart)
    except ControlPlaneError as e:
        audit.record("SERVICE_UPDATE", namespace, service, e.code, e.message, user_id)
        raise
    audit.record("SERVICE_UPDATE", namespace, service, "SUCCESS", f"restart={req.restart}", user_id)
    return {}


@router.delete("/services/{service}", responses={**_ERRORS, 409: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
def delete_service(
    namespace: str,
    service: str,
    request: Request,
    unbind: bool = Query(False, description="Unbind from all apps before deleting"),
):
    user_id = audit.get_user_id(request)
    try:
        get_instances().delete(namespace, service, unbind=unbind)
    except ControlPlaneError as e:
        audit.record("SERVICE_DELETE", namespace, service, e.code, e.message, user_id)
        raise
    audit.record("SERVICE_DELETE", namespace, service, "SUCCESS", f"unbind={unbind}", user_id)
    return {}
