"""
Kubernetes service layer — the resource store the control plane reads and writes.

Design principles:
  - Bounded: every call carries a request timeout
  - Transient failures (429/5xx, connection errors) retried with exponential backoff
  - Not-found and invalid input never retried
  - Optimistic concurrency: replaces carry resourceVersion, 409 → Conflict
  - Clean error handling: translates K8s API exceptions to domain errors
"""

import logging
import time
from typing import Optional

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException

from control_plane.config import Settings
from control_plane.errors import Conflict, NotFound, StoreError, Unavailable
from control_plane.resources import (
    APP_NAME_LABEL, APP_NAMESPACE_LABEL, BETA_DEFAULT_STORAGE_CLASS_ANNOTATION, CACHE_LABEL,
    CONFIGURATION_LABEL, CONFIGURATION_ORIGIN_LABEL, DEFAULT_STORAGE_CLASS_ANNOTATION,
    HELM_RELEASE_SECRET_TYPE, INSTANCE_LABEL,
    LAST_USED_ANNOTATION, MANAGED_BY, MANAGED_BY_LABEL,
    Application, CacheVolume, ServiceInstance,
    cache_volume_name, format_timestamp, utcnow,
)
from control_plane.services.volumes import CacheVolumeSpec

logger = logging.getLogger("kubernetes_service")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
# Statuses the callers interpret themselves
PASSTHROUGH_STATUS = {404, 409}


class ResourceStore:
    """Typed CRUD + list over applications, services, configurations and cache volumes."""

    def __init__(self, settings: Settings, api_client: Optional[client.ApiClient] = None):
        self.settings = settings
        self._api_client = api_client

    # ------------------------------------------------------------------
    # Client plumbing
    # ------------------------------------------------------------------

    def _client(self) -> client.ApiClient:
        """Load Kubernetes config exactly once."""
        if self._api_client is not None:
            return self._api_client
        try:
            if self.settings.IN_CLUSTER:
                configuration = client.Configuration()
                config.load_incluster_config(client_configuration=configuration)
                self._api_client = client.ApiClient(configuration)
            else:
                self._api_client = config.new_client_from_config(
                    config_file=self.settings.KUBECONFIG or None
                )
        except (config.ConfigException, OSError) as e:
            raise StoreError(f"Kubernetes configuration unavailable: {e}") from e
        return self._api_client

    def core(self) -> client.CoreV1Api:
        return client.CoreV1Api(self._client())

    def custom(self) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(self._client())

    def storage(self) -> client.StorageV1Api:
        return client.StorageV1Api(self._client())

    def _call(self, description: str, fn, *args, **kwargs):
        """
        Run one API call under the store's timeout/retry policy.

        404 and 409 ApiExceptions are re-raised for the caller to interpret;
        any other non-transient failure becomes StoreError.
        """
        kwargs.setdefault("_request_timeout", self.settings.STORE_TIMEOUT)
        attempts = max(1, self.settings.STORE_RETRY_ATTEMPTS)
        error = None
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except ApiException as e:
                if e.status in PASSTHROUGH_STATUS:
                    raise
                if e.status not in RETRYABLE_STATUS:
                    raise StoreError(f"{description} failed ({e.status}): {e.reason}") from e
                error = e
            except (urllib3.exceptions.HTTPError, ConnectionError, TimeoutError) as e:
                error = e

            if attempt < attempts:
                delay = self.settings.STORE_RETRY_BACKOFF * (2 ** (attempt - 1))
                logger.warning(
                    f"{description}: transient error (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.1f}s: {error}"
                )
                time.sleep(delay)

        raise Unavailable(f"{description}: store unavailable after {attempts} attempts: {error}")

    def _serialize(self, obj) -> dict:
        return self._client().sanitize_for_serialization(obj)

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def get_app(self, namespace: str, name: str) -> Optional[Application]:
        s = self.settings
        try:
            item = self._call(
                f"get app {namespace}/{name}",
                self.custom().get_namespaced_custom_object,
                s.CRD_GROUP, s.CRD_VERSION, namespace, s.APP_PLURAL, name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise StoreError(f"get app {namespace}/{name} failed ({e.status})") from e
        return Application.from_body(item)

    def app_exists(self, namespace: str, name: str) -> bool:
        return self.get_app(namespace, name) is not None

    def list_apps(self, namespace: str) -> list[Application]:
        s = self.settings
        try:
            result = self._call(
                f"list apps in {namespace}",
                self.custom().list_namespaced_custom_object,
                s.CRD_GROUP, s.CRD_VERSION, namespace, s.APP_PLURAL,
            )
        except ApiException as e:
            if e.status == 404:
                return []
            raise StoreError(f"list apps in {namespace} failed ({e.status})") from e
        return [Application.from_body(item) for item in result.get("items", [])]

    def replace_app(self, app: Application) -> Application:
        """Versioned write of the whole app resource. Raises Conflict on a stale resourceVersion."""
        s = self.settings
        try:
            item = self._call(
                f"replace app {app.namespace}/{app.name}",
                self.custom().replace_namespaced_custom_object,
                s.CRD_GROUP, s.CRD_VERSION, app.namespace, s.APP_PLURAL, app.name,
                app.to_body(),
            )
        except ApiException as e:
            if e.status == 409:
                raise Conflict(
                    f"app '{app.name}' was modified concurrently "
                    f"(resourceVersion {app.resource_version})"
                ) from e
            raise NotFound("application", app.name, app.namespace) from e
        return Application.from_body(item)

    # ------------------------------------------------------------------
    # Service instances
    # ------------------------------------------------------------------

    def get_service(self, namespace: str, name: str) -> Optional[ServiceInstance]:
        s = self.settings
        try:
            item = self._call(
                f"get service {namespace}/{name}",
                self.custom().get_namespaced_custom_object,
                s.CRD_GROUP, s.CRD_VERSION, namespace, s.SERVICE_PLURAL, name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise StoreError(f"get service {namespace}/{name} failed ({e.status})") from e
        return ServiceInstance.from_body(item)

    def replace_service(self, service: ServiceInstance) -> ServiceInstance:
        s = self.settings
        try:
            item = self._call(
                f"replace service {service.namespace}/{service.name}",
                self.custom().replace_namespaced_custom_object,
                s.CRD_GROUP, s.CRD_VERSION, service.namespace, s.SERVICE_PLURAL,
                service.name, service.to_body(),
            )
        except ApiException as e:
            if e.status == 409:
                raise Conflict(f"service '{service.name}' was modified concurrently") from e
            raise NotFound("service", service.name, service.namespace) from e
        return ServiceInstance.from_body(item)

    def delete_service(self, namespace: str, name: str) -> bool:
        """Delete a service instance resource. Returns False if it was already gone."""
        s = self.settings
        try:
            self._call(
                f"delete service {namespace}/{name}",
                self.custom().delete_namespaced_custom_object,
                s.CRD_GROUP, s.CRD_VERSION, namespace, s.SERVICE_PLURAL, name,
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise StoreError(f"delete service {namespace}/{name} failed ({e.status})") from e
        logger.info(f"Service {namespace}/{name} deletion initiated")
        return True

    # ------------------------------------------------------------------
    # Configuration objects (secrets produced by a service's release)
    # ------------------------------------------------------------------

    def configuration_names(self, service: ServiceInstance) -> list[str]:
        """Names of the configuration objects a service instance exposes, sorted."""
        try:
            secrets = self._call(
                f"list configurations of service {service.namespace}/{service.name}",
                self.core().list_namespaced_secret,
                namespace=service.namespace,
                label_selector=f"{INSTANCE_LABEL}={service.release_name}",
            )
        except ApiException as e:
            raise StoreError(
                f"list configurations of service {service.name} failed ({e.status})"
            ) from e
        return sorted(
            secret.metadata.name
            for secret in secrets.items
            if secret.type != HELM_RELEASE_SECRET_TYPE
        )

    def label_configuration(self, namespace: str, name: str, service: str):
        """Mark a configuration object as bound so show/unbind can discover it."""
        patch = {"metadata": {"labels": {
            CONFIGURATION_LABEL: "true",
            CONFIGURATION_ORIGIN_LABEL: service,
        }}}
        try:
            self._call(
                f"label configuration {namespace}/{name}",
                self.core().patch_namespaced_secret,
                name, namespace, patch,
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFound("configuration", name, namespace) from e
            raise StoreError(f"label configuration {name} failed ({e.status})") from e

    # ------------------------------------------------------------------
    # Cache volumes
    # ------------------------------------------------------------------

    def default_storage_class(self) -> Optional[str]:
        """
        The class the DefaultStorageClass admission plugin assigns to claims
        that name none (newest default-annotated class), or None.
        """
        try:
            classes = self._call("list storage classes", self.storage().list_storage_class)
        except ApiException as e:
            raise StoreError(f"list storage classes failed ({e.status})") from e

        defaults = []
        for sc in classes.items:
            annotations = sc.metadata.annotations or {}
            if "true" in (annotations.get(DEFAULT_STORAGE_CLASS_ANNOTATION),
                          annotations.get(BETA_DEFAULT_STORAGE_CLASS_ANNOTATION)):
                defaults.append((format_timestamp(sc.metadata.creation_timestamp)
                                 if sc.metadata.creation_timestamp else "", sc.metadata.name))
        if not defaults:
            return None
        return max(defaults)[1]

    def list_cache_volumes(self) -> list[CacheVolume]:
        ns = self.settings.STAGING_NAMESPACE
        try:
            pvcs = self._call(
                f"list cache volumes in {ns}",
                self.core().list_namespaced_persistent_volume_claim,
                namespace=ns,
                label_selector=f"{CACHE_LABEL}=true",
            )
        except ApiException as e:
            if e.status == 404:
                return []
            raise StoreError(f"list cache volumes failed ({e.status})") from e
        return [CacheVolume.from_body(self._serialize(pvc)) for pvc in pvcs.items]

    def get_cache_volume(self, namespace: str, app: str) -> Optional[CacheVolume]:
        name = cache_volume_name(namespace, app)
        ns = self.settings.STAGING_NAMESPACE
        try:
            pvc = self._call(
                f"get cache volume {name}",
                self.core().read_namespaced_persistent_volume_claim,
                name, ns,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise StoreError(f"get cache volume {name} failed ({e.status})") from e
        return CacheVolume.from_body(self._serialize(pvc))

    def create_cache_volume(self, namespace: str, app: str, spec: CacheVolumeSpec) -> CacheVolume:
        name = cache_volume_name(namespace, app)
        pvc_spec = {
            "accessModes": list(spec.access_modes),
            "volumeMode": spec.volume_mode,
            "resources": {"requests": {"storage": spec.size}},
        }
        if spec.storage_class_name:
            pvc_spec["storageClassName"] = spec.storage_class_name
        body = {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": name,
                "labels": {
                    MANAGED_BY_LABEL: MANAGED_BY,
                    CACHE_LABEL: "true",
                    APP_NAMESPACE_LABEL: namespace,
                    APP_NAME_LABEL: app,
                },
                "annotations": {LAST_USED_ANNOTATION: format_timestamp(utcnow())},
            },
            "spec": pvc_spec,
        }
        try:
            pvc = self._call(
                f"create cache volume {name}",
                self.core().create_namespaced_persistent_volume_claim,
                self.settings.STAGING_NAMESPACE, body,
            )
        except ApiException as e:
            if e.status == 409:
                raise Conflict(f"cache volume '{name}' already exists") from e
            raise StoreError(f"create cache volume {name} failed ({e.status})") from e
        logger.info(f"Cache volume {name} created ({spec.size}, {spec.access_modes})")
        return CacheVolume.from_body(self._serialize(pvc))

    def touch_cache_volume(self, name: str):
        """Record that a build just used the volume."""
        patch = {"metadata": {"annotations": {LAST_USED_ANNOTATION: format_timestamp(utcnow())}}}
        try:
            self._call(
                f"touch cache volume {name}",
                self.core().patch_namespaced_persistent_volume_claim,
                name, self.settings.STAGING_NAMESPACE, patch,
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFound("cache volume", name, self.settings.STAGING_NAMESPACE) from e
            raise StoreError(f"touch cache volume {name} failed ({e.status})") from e

    def delete_cache_volume(self, name: str):
        ns = self.settings.STAGING_NAMESPACE
        try:
            self._call(
                f"delete cache volume {name}",
                self.core().delete_namespaced_persistent_volume_claim,
                name, ns,
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFound("cache volume", name, ns) from e
            raise StoreError(f"delete cache volume {name} failed ({e.status})") from e
        logger.info(f"Cache volume {name} deletion initiated")
