"""
Settings for the API and the operator, read from environment variables.
Follows 12-factor app methodology.

Components receive a Settings instance at construction; the module-level
`settings` is only the default used by the process entrypoints.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = os.environ.get("IN_CLUSTER", "false").lower() == "true"

    # CRDs (applications + service instances)
    CRD_GROUP: str = os.environ.get("CRD_GROUP", "platform.controlplane.io")
    CRD_VERSION: str = os.environ.get("CRD_VERSION", "v1")
    APP_PLURAL: str = "apps"
    SERVICE_PLURAL: str = "services"

    # Staging / release manager
    STAGING_NAMESPACE: str = os.environ.get("STAGING_NAMESPACE", "control-plane-staging")
    APP_CHART_PATH: str = os.environ.get("APP_CHART_PATH", "/charts/app")
    HELM_TIMEOUT: int = int(os.environ.get("HELM_TIMEOUT", "300"))

    # Store access policy
    STORE_TIMEOUT: float = float(os.environ.get("STORE_TIMEOUT", "10"))
    STORE_RETRY_ATTEMPTS: int = int(os.environ.get("STORE_RETRY_ATTEMPTS", "3"))
    STORE_RETRY_BACKOFF: float = float(os.environ.get("STORE_RETRY_BACKOFF", "0.5"))
    BIND_CONFLICT_RETRIES: int = int(os.environ.get("BIND_CONFLICT_RETRIES", "5"))

    # Build cache volumes
    CACHE_DEFAULT_SIZE: str = os.environ.get("CACHE_DEFAULT_SIZE", "1Gi")
    CACHE_STORAGE_CLASS: str = os.environ.get("CACHE_STORAGE_CLASS", "")
    CACHE_RECREATE_ON_MISMATCH: bool = (
        os.environ.get("CACHE_RECREATE_ON_MISMATCH", "true").lower() == "true"
    )
    STALE_CACHE_DAYS: int = int(os.environ.get("STALE_CACHE_DAYS", "30"))
    CLEANUP_INTERVAL: int = int(os.environ.get("CLEANUP_INTERVAL", "3600"))
    MAX_PARALLEL_RECONCILES: int = int(os.environ.get("MAX_PARALLEL_RECONCILES", "3"))

    # Events (optional)
    REDIS_URL: str = os.environ.get("REDIS_URL", "")

    # Rate limiting
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "30/minute")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")


settings = Settings()
