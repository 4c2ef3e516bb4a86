"""
Domain view of the cluster resources the control plane works with.

Applications and service instances are custom resources; configuration
objects are Secrets; build caches are PersistentVolumeClaims in the staging
namespace. Parsers accept the camelCase dict form, which is what kopf hands
to handlers and what ApiClient.sanitize_for_serialization() produces.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

LABEL_PREFIX = "controlplane.io"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "control-plane"
INSTANCE_LABEL = "app.kubernetes.io/instance"
CONFIGURATION_LABEL = f"{LABEL_PREFIX}/configuration"
CONFIGURATION_ORIGIN_LABEL = f"{LABEL_PREFIX}/configuration-origin"
CACHE_LABEL = f"{LABEL_PREFIX}/cache"
APP_NAMESPACE_LABEL = f"{LABEL_PREFIX}/app-namespace"
APP_NAME_LABEL = f"{LABEL_PREFIX}/app-name"
LAST_USED_ANNOTATION = f"{LABEL_PREFIX}/last-used"

HELM_RELEASE_SECRET_TYPE = "helm.sh/release.v1"
DEFAULT_STORAGE_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"
BETA_DEFAULT_STORAGE_CLASS_ANNOTATION = "storageclass.beta.kubernetes.io/is-default-class"


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def service_release_name(service: str) -> str:
    """Helm release backing a service instance."""
    return f"svc-{service}"


def app_release_name(app: str) -> str:
    return app


def cache_volume_name(namespace: str, app: str) -> str:
    return f"cache-{namespace}-{app}"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an RFC3339 string (or pass through a datetime). Naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

@dataclass
class Application:
    namespace: str
    name: str
    # configuration name -> origin service, in bind order
    configurations: dict[str, str] = field(default_factory=dict)
    cache_volume: Optional[dict] = None
    stage_id: str = ""
    resource_version: Optional[str] = None
    body: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_body(cls, item: dict) -> "Application":
        meta = item.get("metadata", {})
        spec = item.get("spec", {}) or {}
        return cls(
            namespace=meta.get("namespace", ""),
            name=meta["name"],
            configurations=dict(spec.get("configurations") or {}),
            cache_volume=spec.get("cacheVolume"),
            stage_id=spec.get("stageId", ""),
            resource_version=meta.get("resourceVersion"),
            body=item,
        )

    def to_body(self) -> dict:
        body = copy.deepcopy(self.body) if self.body else {
            "metadata": {"name": self.name, "namespace": self.namespace},
        }
        body.setdefault("spec", {})["configurations"] = dict(self.configurations)
        if self.resource_version:
            body["metadata"]["resourceVersion"] = self.resource_version
        return body

    def configurations_from(self, service: str) -> list[str]:
        return [c for c, origin in self.configurations.items() if origin == service]


@dataclass
class ServiceInstance:
    namespace: str
    name: str
    chart: str = ""
    repo_url: str = ""
    chart_version: str = ""
    values: dict = field(default_factory=dict)
    resource_version: Optional[str] = None
    body: dict = field(default_factory=dict, repr=False)

    @property
    def release_name(self) -> str:
        return service_release_name(self.name)

    @classmethod
    def from_body(cls, item: dict) -> "ServiceInstance":
        meta = item.get("metadata", {})
        spec = item.get("spec", {}) or {}
        return cls(
            namespace=meta.get("namespace", ""),
            name=meta["name"],
            chart=spec.get("chart", ""),
            repo_url=spec.get("repoURL", ""),
            chart_version=spec.get("chartVersion", ""),
            values=dict(spec.get("values") or {}),
            resource_version=meta.get("resourceVersion"),
            body=item,
        )

    def to_body(self) -> dict:
        body = copy.deepcopy(self.body) if self.body else {
            "metadata": {"name": self.name, "namespace": self.namespace},
        }
        body.setdefault("spec", {})["values"] = dict(self.values)
        if self.resource_version:
            body["metadata"]["resourceVersion"] = self.resource_version
        return body


@dataclass
class CacheVolume:
    name: str
    app_namespace: str
    app_name: str
    size: Optional[str] = None
    access_modes: list[str] = field(default_factory=list)
    volume_mode: Optional[str] = None
    storage_class_name: Optional[str] = None
    phase: str = ""
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_body(cls, item: dict) -> "CacheVolume":
        meta = item.get("metadata", {}) or {}
        spec = item.get("spec", {}) or {}
        status = item.get("status", {}) or {}
        labels = meta.get("labels") or {}
        annotations = meta.get("annotations") or {}
        requests = (spec.get("resources") or {}).get("requests") or {}
        return cls(
            name=meta["name"],
            app_namespace=labels.get(APP_NAMESPACE_LABEL, ""),
            app_name=labels.get(APP_NAME_LABEL, ""),
            size=requests.get("storage"),
            access_modes=list(spec.get("accessModes") or []),
            volume_mode=spec.get("volumeMode"),
            storage_class_name=spec.get("storageClassName"),
            phase=status.get("phase", ""),
            created_at=parse_timestamp(meta.get("creationTimestamp")),
            last_used_at=parse_timestamp(annotations.get(LAST_USED_ANNOTATION)),
        )

    @property
    def last_activity(self) -> Optional[datetime]:
        """Last-use time when tracked, creation time otherwise."""
        return self.last_used_at or self.created_at

    def to_summary(self, now: Optional[datetime] = None) -> dict:
        summary = {
            "name": self.name,
            "appNamespace": self.app_namespace,
            "appName": self.app_name,
            "size": self.size,
            "phase": self.phase,
            "createdAt": format_timestamp(self.created_at) if self.created_at else None,
            "lastUsed": format_timestamp(self.last_used_at) if self.last_used_at else None,
        }
        if now is not None and self.last_activity is not None:
            summary["ageDays"] = (now - self.last_activity).days
        return summary
