"""
Component wiring. Each accessor builds its component once from the
process settings; tests patch the accessors.
"""
from functools import lru_cache

from control_plane.config import settings
from control_plane.services.binder import ConfigurationBinder
from control_plane.services.collector import StaleCacheCollector
from control_plane.services.deployer import DeploymentTrigger
from control_plane.services.helm import HelmReleaseManager
from control_plane.services.instances import ServiceInstances
from control_plane.services.kubernetes_service import ResourceStore
from control_plane.services.volumes import CacheVolumeReconciler


@lru_cache(maxsize=None)
def get_store() -> ResourceStore:
    return ResourceStore(settings)


@lru_cache(maxsize=None)
def get_trigger() -> DeploymentTrigger:
    return DeploymentTrigger(HelmReleaseManager(settings))


@lru_cache(maxsize=None)
def get_binder() -> ConfigurationBinder:
    return ConfigurationBinder(get_store(), get_trigger(), settings)


@lru_cache(maxsize=None)
def get_instances() -> ServiceInstances:
    return ServiceInstances(get_store(), HelmReleaseManager(settings), get_binder(), get_trigger())


@lru_cache(maxsize=None)
def get_collector() -> StaleCacheCollector:
    return StaleCacheCollector(get_store(), settings)


@lru_cache(maxsize=None)
def get_reconciler() -> CacheVolumeReconciler:
    return CacheVolumeReconciler(get_store(), settings)
