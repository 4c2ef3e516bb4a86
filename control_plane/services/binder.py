"""
Configuration binder — binds the configuration objects of one or more service
instances to an application.

Batch bind flow:
  1. Validate the request (non-empty, unique names), before any lookup
  2. Resolve app, then every service left to right (first missing → NotFound)
  3. Derive each service's configuration objects
  4. Label them as bound (idempotent)
  5. Commit the merged set as ONE versioned write of the app resource;
     on 409 re-read, re-merge, retry (bounded)
  6. Trigger exactly one redeploy

A failure in 1-4 leaves the app untouched. Step 5 is a single write, so
observers never see a partial set. If step 6 fails the set stays committed
and the caller gets Unavailable; repeating the bind is idempotent.
"""

import logging
from dataclasses import replace
from typing import Callable, Iterable

from control_plane import telemetry
from control_plane.config import Settings
from control_plane.errors import ControlPlaneError, Conflict, InvalidArgument, NotFound, Unavailable
from control_plane.resources import Application

logger = logging.getLogger("binder")


def validate_service_names(service_names: Iterable[str]) -> list[str]:
    if isinstance(service_names, str):
        raise InvalidArgument("service names must be a list")
    names = list(service_names or [])
    if not names:
        raise InvalidArgument("at least one service name is required")
    for name in names:
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgument("service names must be non-empty strings")
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise InvalidArgument(f"duplicate service names: {', '.join(duplicates)}")
    return names


class ConfigurationBinder:
    def __init__(self, store, trigger, settings: Settings):
        self.store = store
        self.trigger = trigger
        self.settings = settings

    # ------------------------------------------------------------------
    # Bind
    # ------------------------------------------------------------------

    def batch_bind(self, namespace: str, app_name: str, service_names: list[str],
                   restart: bool = True) -> Application:
        return self._bind(namespace, app_name, service_names, restart, operation="batch")

    def bind(self, namespace: str, service_name: str, app_name: str,
             restart: bool = True) -> Application:
        """Legacy single-service bind; same result as a one-element batch."""
        return self._bind(namespace, app_name, [service_name], restart, operation="single")

    def _bind(self, namespace, app_name, service_names, restart, operation) -> Application:
        try:
            app = self._bind_and_trigger(namespace, app_name, service_names, restart)
        except ControlPlaneError as e:
            telemetry.record_bind(operation, e.code.lower())
            raise
        telemetry.record_bind(operation, "success")
        return app

    def _bind_and_trigger(self, namespace, app_name, service_names, restart) -> Application:
        names = validate_service_names(service_names)

        app = self.store.get_app(namespace, app_name)
        if app is None:
            raise NotFound("application", app_name, namespace)
        services = []
        for name in names:
            service = self.store.get_service(namespace, name)
            if service is None:
                raise NotFound("service", name, namespace)
            services.append(service)

        additions: dict[str, str] = {}
        for service in services:
            configurations = self.store.configuration_names(service)
            if not configurations:
                logger.warning(f"Service {namespace}/{service.name} exposes no configurations yet")
            for configuration in configurations:
                additions[configuration] = service.name

        for configuration, origin in additions.items():
            self.store.label_configuration(namespace, configuration, origin)

        def merge(current: dict) -> dict:
            merged = dict(current)
            for configuration, origin in additions.items():
                merged.setdefault(configuration, origin)
            return merged

        app = self._update(app, merge)
        logger.info(
            f"Bound {len(additions)} configurations from {', '.join(names)} "
            f"to app {namespace}/{app_name}"
        )
        telemetry.publish_event(
            f"{namespace}/{app_name}", "SERVICES_BOUND", f"bound services: {', '.join(names)}",
        )

        self._trigger(app, restart)
        return app

    # ------------------------------------------------------------------
    # Unbind / lookups
    # ------------------------------------------------------------------

    def unbind(self, namespace: str, service_name: str, app_name: str,
               restart: bool = True) -> Application:
        app = self.store.get_app(namespace, app_name)
        if app is None:
            raise NotFound("application", app_name, namespace)
        if self.store.get_service(namespace, service_name) is None:
            raise NotFound("service", service_name, namespace)

        if not app.configurations_from(service_name):
            logger.info(f"Service {service_name} is not bound to {namespace}/{app_name}, nothing to do")
            return app

        app = self._update(
            app, lambda current: {c: o for c, o in current.items() if o != service_name}
        )
        telemetry.record_bind("unbind", "success")
        telemetry.publish_event(
            f"{namespace}/{app_name}", "SERVICE_UNBOUND", f"unbound service {service_name}",
        )
        self._trigger(app, restart)
        return app

    def bound_apps(self, namespace: str, service_name: str) -> list[str]:
        """Applications with at least one configuration from the service."""
        return sorted(
            app.name for app in self.store.list_apps(namespace)
            if app.configurations_from(service_name)
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _update(self, app: Application, mutate: Callable[[dict], dict]) -> Application:
        """Read-modify-write of the bound set with optimistic concurrency."""
        attempts = max(1, self.settings.BIND_CONFLICT_RETRIES)
        for attempt in range(1, attempts + 1):
            updated = mutate(dict(app.configurations))
            if updated == app.configurations:
                return app
            try:
                return self.store.replace_app(replace(app, configurations=updated))
            except Conflict:
                if attempt == attempts:
                    raise
                logger.info(
                    f"App {app.namespace}/{app.name} changed concurrently "
                    f"(attempt {attempt}/{attempts}), re-reading"
                )
                fresh = self.store.get_app(app.namespace, app.name)
                if fresh is None:
                    raise NotFound("application", app.name, app.namespace)
                app = fresh
        return app

    def _trigger(self, app: Application, restart: bool):
        try:
            self.trigger.trigger(app, restart=restart)
        except Unavailable as e:
            raise Unavailable(
                f"configurations of app '{app.name}' were updated but the redeploy "
                f"failed: {e.message}; retrying the request is safe"
            ) from e
