"""
Service instance operations that touch bound applications: show (with the
apps using it), update (re-render the release, then restart bound apps unless
told not to) and delete (refused while bound unless unbinding explicitly).
"""

import logging
from dataclasses import replace
from typing import Optional

from control_plane.errors import NotFound, ServiceInUse
from control_plane.resources import ServiceInstance

logger = logging.getLogger("instances")


class ServiceInstances:
    def __init__(self, store, release_manager, binder, trigger):
        self.store = store
        self.release_manager = release_manager
        self.binder = binder
        self.trigger = trigger

    def _get(self, namespace: str, name: str) -> ServiceInstance:
        service = self.store.get_service(namespace, name)
        if service is None:
            raise NotFound("service", name, namespace)
        return service

    def show(self, namespace: str, name: str) -> dict:
        service = self._get(namespace, name)
        return {
            "name": service.name,
            "namespace": service.namespace,
            "chart": service.chart,
            "release": service.release_name,
            "values": service.values,
            "configurations": self.store.configuration_names(service),
            "boundApps": self.binder.bound_apps(namespace, name),
        }

    def update(self, namespace: str, name: str, set_values: Optional[dict] = None,
               unset: Optional[list[str]] = None, restart: Optional[bool] = None) -> ServiceInstance:
        """Change a service's values. Bound apps restart unless restart is False (None means True)."""
        restart = True if restart is None else restart
        service = self._get(namespace, name)

        values = dict(service.values)
        for key in unset or []:
            values.pop(key, None)
        values.update(set_values or {})

        service = self.store.replace_service(replace(service, values=values))
        self.release_manager.upgrade_service(service)
        logger.info(f"Service {namespace}/{name} updated (restart={restart})")

        for app_name in self.binder.bound_apps(namespace, name):
            app = self.store.get_app(namespace, app_name)
            if app is not None:
                self.trigger.trigger(app, restart=restart)
        return service

    def delete(self, namespace: str, name: str, unbind: bool = False):
        service = self._get(namespace, name)
        apps = self.binder.bound_apps(namespace, name)
        if apps and not unbind:
            raise ServiceInUse(name, apps)
        for app_name in apps:
            self.binder.unbind(namespace, name, app_name)

        self.release_manager.uninstall(service.release_name, namespace)
        self.store.delete_service(namespace, name)
        logger.info(f"Service {namespace}/{name} deleted (unbound from {len(apps)} apps)")
