"""Pytest fixtures for control plane tests."""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

import pytest

from control_plane.config import Settings
from control_plane.errors import Conflict, NotFound
from control_plane.resources import (
    Application, CacheVolume, ServiceInstance, cache_volume_name, utcnow,
)
from control_plane.services.binder import ConfigurationBinder
from control_plane.services.collector import StaleCacheCollector
from control_plane.services.deployer import DeploymentTrigger
from control_plane.services.instances import ServiceInstances
from control_plane.services.volumes import CacheVolumeReconciler

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeStore:
    """In-memory resource store with resourceVersion semantics and a call log."""

    def __init__(self):
        self.apps: dict[tuple, Application] = {}
        self.services: dict[tuple, ServiceInstance] = {}
        self.configurations: dict[tuple, list[str]] = {}
        self.labels: dict[tuple, str] = {}
        self.volumes: dict[str, CacheVolume] = {}
        self.calls: list[tuple] = []
        # callables run (and consumed) right before the next replace_app,
        # simulating another writer getting there first
        self.concurrent_writes: list = []
        self.fail_replace: Optional[Exception] = None
        self.fail_delete: dict[str, Exception] = {}
        self.fail_app_lookup: Optional[Exception] = None
        self.fail_list: Optional[Exception] = None
        self.new_volume_phase = "Bound"
        # class admission assigns to claims that name none
        self.default_class: Optional[str] = None
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # --- setup helpers ---

    def add_app(self, namespace, name, configurations=None, cache_volume=None) -> Application:
        app = Application(
            namespace=namespace, name=name,
            configurations=dict(configurations or {}),
            cache_volume=cache_volume,
            resource_version=self._next_version(),
        )
        self.apps[(namespace, name)] = app
        return app

    def add_service(self, namespace, name, configurations=None, values=None) -> ServiceInstance:
        service = ServiceInstance(
            namespace=namespace, name=name, chart="mysql",
            repo_url="https://charts.example.com", values=dict(values or {}),
            resource_version=self._next_version(),
        )
        self.services[(namespace, name)] = service
        self.configurations[(namespace, name)] = list(
            configurations if configurations is not None else [f"{name}-creds"]
        )
        return service

    def add_volume(self, namespace, app, created_at=None, last_used_at=None, phase="Bound",
                   size="1Gi", access_modes=("ReadWriteOnce",), volume_mode="Filesystem",
                   storage_class_name=None) -> CacheVolume:
        volume = CacheVolume(
            name=cache_volume_name(namespace, app),
            app_namespace=namespace, app_name=app,
            size=size, access_modes=list(access_modes), volume_mode=volume_mode,
            storage_class_name=storage_class_name, phase=phase,
            created_at=created_at or NOW, last_used_at=last_used_at,
        )
        self.volumes[volume.name] = volume
        return volume

    def bound(self, namespace, name) -> dict:
        return dict(self.apps[(namespace, name)].configurations)

    # --- store interface ---

    def get_app(self, namespace, name):
        self.calls.append(("get_app", namespace, name))
        if self.fail_app_lookup:
            raise self.fail_app_lookup
        app = self.apps.get((namespace, name))
        return replace(app, configurations=dict(app.configurations)) if app else None

    def app_exists(self, namespace, name):
        return self.get_app(namespace, name) is not None

    def list_apps(self, namespace):
        self.calls.append(("list_apps", namespace))
        return [
            replace(a, configurations=dict(a.configurations))
            for (ns, _), a in sorted(self.apps.items()) if ns == namespace
        ]

    def replace_app(self, app):
        self.calls.append(("replace_app", app.namespace, app.name))
        if self.fail_replace:
            raise self.fail_replace
        if self.concurrent_writes:
            self.concurrent_writes.pop(0)(self)
        current = self.apps.get((app.namespace, app.name))
        if current is None:
            raise NotFound("application", app.name, app.namespace)
        if app.resource_version != current.resource_version:
            raise Conflict(f"app '{app.name}' was modified concurrently")
        stored = replace(app, configurations=dict(app.configurations),
                         resource_version=self._next_version())
        self.apps[(app.namespace, app.name)] = stored
        return replace(stored, configurations=dict(stored.configurations))

    def get_service(self, namespace, name):
        self.calls.append(("get_service", namespace, name))
        service = self.services.get((namespace, name))
        return replace(service, values=dict(service.values)) if service else None

    def replace_service(self, service):
        self.calls.append(("replace_service", service.namespace, service.name))
        stored = replace(service, resource_version=self._next_version())
        self.services[(service.namespace, service.name)] = stored
        return stored

    def delete_service(self, namespace, name):
        self.calls.append(("delete_service", namespace, name))
        return self.services.pop((namespace, name), None) is not None

    def configuration_names(self, service):
        self.calls.append(("configuration_names", service.namespace, service.name))
        return sorted(self.configurations.get((service.namespace, service.name), []))

    def label_configuration(self, namespace, name, service):
        self.calls.append(("label_configuration", namespace, name))
        self.labels[(namespace, name)] = service

    def list_cache_volumes(self):
        self.calls.append(("list_cache_volumes",))
        if self.fail_list:
            raise self.fail_list
        return list(self.volumes.values())

    def get_cache_volume(self, namespace, app):
        self.calls.append(("get_cache_volume", namespace, app))
        return self.volumes.get(cache_volume_name(namespace, app))

    def create_cache_volume(self, namespace, app, spec):
        self.calls.append(("create_cache_volume", namespace, app))
        name = cache_volume_name(namespace, app)
        if name in self.volumes:
            raise Conflict(f"cache volume '{name}' already exists")
        volume = CacheVolume(
            name=name, app_namespace=namespace, app_name=app,
            size=spec.size, access_modes=list(spec.access_modes),
            volume_mode=spec.volume_mode,
            storage_class_name=spec.storage_class_name or self.default_class,
            phase=self.new_volume_phase, created_at=utcnow(),
        )
        self.volumes[name] = volume
        return volume

    def default_storage_class(self):
        self.calls.append(("default_storage_class",))
        return self.default_class

    def touch_cache_volume(self, name):
        self.calls.append(("touch_cache_volume", name))
        self.volumes[name].last_used_at = utcnow()

    def delete_cache_volume(self, name):
        self.calls.append(("delete_cache_volume", name))
        if name in self.fail_delete:
            raise self.fail_delete[name]
        if self.volumes.pop(name, None) is None:
            raise NotFound("cache volume", name)

    def mutations(self) -> list[tuple]:
        mutating = {"replace_app", "replace_service", "delete_service", "label_configuration",
                    "create_cache_volume", "touch_cache_volume", "delete_cache_volume"}
        return [c for c in self.calls if c[0] in mutating]


class FakeReleaseManager:
    """Records redeploys instead of calling Helm."""

    def __init__(self):
        self.redeploys: list[tuple] = []
        self.upgraded: list[tuple] = []
        self.uninstalled: list[tuple] = []
        self.deployed = True
        self.fail: Optional[Exception] = None

    def redeploy_app(self, app):
        if self.fail:
            raise self.fail
        self.redeploys.append((app.namespace, app.name, list(app.configurations)))
        return self.deployed

    def upgrade_service(self, service):
        self.upgraded.append((service.namespace, service.name, dict(service.values)))

    def uninstall(self, release, namespace):
        self.uninstalled.append((namespace, release))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        STORE_RETRY_ATTEMPTS=3,
        STORE_RETRY_BACKOFF=0,
        BIND_CONFLICT_RETRIES=3,
        CACHE_DEFAULT_SIZE="1Gi",
        CACHE_STORAGE_CLASS="",
        CACHE_RECREATE_ON_MISMATCH=True,
        STALE_CACHE_DAYS=30,
        STAGING_NAMESPACE="staging",
        REDIS_URL="",
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def release_manager() -> FakeReleaseManager:
    return FakeReleaseManager()


@pytest.fixture
def trigger(release_manager) -> DeploymentTrigger:
    return DeploymentTrigger(release_manager)


@pytest.fixture
def binder(store, trigger, settings) -> ConfigurationBinder:
    return ConfigurationBinder(store, trigger, settings)


@pytest.fixture
def instances(store, release_manager, binder, trigger) -> ServiceInstances:
    return ServiceInstances(store, release_manager, binder, trigger)


@pytest.fixture
def collector(store, settings) -> StaleCacheCollector:
    return StaleCacheCollector(store, settings)


@pytest.fixture
def reconciler(store, settings) -> CacheVolumeReconciler:
    return CacheVolumeReconciler(store, settings)
