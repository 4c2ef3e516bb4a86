"""
Domain errors for the control plane.

Every error carries the HTTP status it maps to, so the API layer can render
it without knowing which component raised it.
"""
from typing import Optional


class ControlPlaneError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(ControlPlaneError):
    """Malformed request input. Never retried."""
    status_code = 400
    code = "INVALID_ARGUMENT"


class NotFound(ControlPlaneError):
    """A named application, service or volume does not exist."""
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, kind: str, name: str, namespace: Optional[str] = None):
        where = f" in namespace '{namespace}'" if namespace else ""
        super().__init__(f"{kind} '{name}' not found{where}")
        self.kind = kind
        self.name = name
        self.namespace = namespace


class Conflict(ControlPlaneError):
    """Concurrent modification of a versioned resource."""
    status_code = 409
    code = "CONFLICT"


class ServiceInUse(ControlPlaneError):
    status_code = 409
    code = "SERVICE_IN_USE"

    def __init__(self, service: str, apps: list[str]):
        super().__init__(
            f"service '{service}' is bound to {', '.join(apps)}; unbind it first"
        )
        self.service = service
        self.apps = apps


class Unavailable(ControlPlaneError):
    """Transient store or release-manager failure; safe to retry."""
    status_code = 503
    code = "UNAVAILABLE"


class StoreError(ControlPlaneError):
    """Non-transient failure talking to the cluster."""
    status_code = 500
    code = "STORE_ERROR"


class DeletionFailed(ControlPlaneError):
    """A single cache volume could not be deleted during a sweep."""
    code = "DELETION_FAILED"

    def __init__(self, volume: str, reason: str):
        super().__init__(f"failed to delete cache volume '{volume}': {reason}")
        self.volume = volume
        self.reason = reason

    def to_dict(self) -> dict:
        return {"name": self.volume, "error": self.reason}
