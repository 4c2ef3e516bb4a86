"""
Pydantic models for API request/response validation.
"""
from pydantic import BaseModel, Field, StrictBool, StrictInt
from typing import Optional, List, Dict, Any


class ServiceBatchBindRequest(BaseModel):
    """Bind several services to one application with a single restart."""
    app_name: str = Field(..., min_length=1, description="Application to bind to")
    service_names: List[str] = Field(
        ...,
        description="Services to bind, validated left to right",
        examples=[["mysql-a", "redis-b"]],
    )


class ServiceBindRequest(BaseModel):
    """Legacy single-service bind."""
    app_name: str = Field(..., min_length=1)


class ServiceUpdateRequest(BaseModel):
    set: Dict[str, Any] = Field(default_factory=dict, description="Values to set on the release")
    unset: List[str] = Field(default_factory=list, description="Value keys to remove")
    restart: Optional[bool] = Field(
        default=None,
        description="Restart bound apps after the update (omitted = true)",
    )


class CleanupRequest(BaseModel):
    """Optional body of POST /maintenance/cleanup-stale-caches."""
    staleDays: Optional[StrictInt] = None
    checkAppExists: Optional[StrictBool] = None
    dryRun: Optional[StrictBool] = None


class CleanupError(BaseModel):
    name: str
    error: str


class CleanupResponse(BaseModel):
    dryRun: bool
    staleCaches: List[Dict[str, Any]] = []
    deleted: List[str] = []
    errors: List[CleanupError] = []


class ApplicationResponse(BaseModel):
    namespace: str
    name: str
    configurations: Dict[str, str] = {}
    cacheVolume: Optional[Dict[str, Any]] = None


class ServiceResponse(BaseModel):
    name: str
    namespace: str
    chart: str = ""
    release: str
    values: Dict[str, Any] = {}
    configurations: List[str] = []
    boundApps: List[str] = []


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"


class AuditLogEntry(BaseModel):
    timestamp: str
    action: str  # BIND, UNBIND, SERVICE_UPDATE, SERVICE_DELETE, CACHE_CLEANUP
    namespace: str
    target: str
    user_id: str
    result: str  # SUCCESS or error code
    detail: str = ""


class AuditLogResponse(BaseModel):
    entries: List[AuditLogEntry] = []
    count: int = 0
