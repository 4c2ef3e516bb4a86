"""
Helm wrapper — the release manager behind applications and service instances.

Does NOT use --wait: a redeploy is fire-and-forget, readiness is observed
separately through the workload status.
"""

import json
import logging
import subprocess
from typing import Optional

from control_plane.config import Settings
from control_plane.errors import StoreError, Unavailable
from control_plane.resources import (
    Application, ServiceInstance, app_release_name, format_timestamp, utcnow,
)

logger = logging.getLogger("helm")

BUSY_STATES = {"pending-install", "pending-upgrade", "pending-rollback"}


class HelmReleaseManager:
    def __init__(self, settings: Settings):
        self.settings = settings

    def run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess:
        """Execute a Helm CLI command. Raises Unavailable on failure if check=True."""
        cmd = ["helm"] + args
        logger.info(f"helm> {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.settings.HELM_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise StoreError("helm binary not found") from e
        except subprocess.TimeoutExpired as e:
            raise Unavailable(f"helm {args[0]} timed out after {self.settings.HELM_TIMEOUT}s") from e
        if result.stdout:
            logger.debug(f"helm stdout: {result.stdout[:800]}")
        if result.stderr:
            logger.warning(f"helm stderr: {result.stderr[:800]}")
        if check and result.returncode != 0:
            raise Unavailable(
                f"Helm command failed (rc={result.returncode}): {result.stderr[:500]}"
            )
        return result

    def release_status(self, release: str, namespace: str) -> Optional[str]:
        """
        Get the status of a Helm release. Returns the status string
        (e.g. 'deployed', 'pending-upgrade', 'failed') or None if not found.
        """
        r = self.run(["status", release, "-n", namespace, "-o", "json"], check=False)
        if r.returncode != 0:
            return None
        try:
            data = json.loads(r.stdout)
        except json.JSONDecodeError:
            return "unknown"
        return data.get("info", {}).get("status", "unknown")

    def redeploy_app(self, app: Application) -> bool:
        """
        Issue one upgrade of the app's release carrying its bound configurations
        and a fresh restart token. Returns False when the app has no release yet.
        """
        release = app_release_name(app.name)
        status = self.release_status(release, app.namespace)
        if status is None:
            logger.info(
                f"App {app.namespace}/{app.name} has no release yet, "
                f"configurations apply at next deploy"
            )
            return False
        if status in BUSY_STATES:
            raise Unavailable(f"release {release} is busy ({status}); retry later")

        configurations = "{" + ",".join(app.configurations) + "}"
        self.run([
            "upgrade", release, self.settings.APP_CHART_PATH,
            "-n", app.namespace,
            "--reuse-values",
            "--timeout", f"{self.settings.HELM_TIMEOUT}s",
            "--set", f"app.configurations={configurations}",
            "--set-string", f"app.restartedAt={format_timestamp(utcnow())}",
        ])
        return True

    def upgrade_service(self, service: ServiceInstance):
        """Re-render a service's release from its current values."""
        args = [
            "upgrade", service.release_name, service.chart,
            "-n", service.namespace,
            "--timeout", f"{self.settings.HELM_TIMEOUT}s",
        ]
        if service.repo_url:
            args += ["--repo", service.repo_url]
        if service.chart_version:
            args += ["--version", service.chart_version]
        for k, v in service.values.items():
            args += ["--set", f"{k}={v}"]
        self.run(args)

    def uninstall(self, release: str, namespace: str):
        """Uninstall a release; a missing release is not an error."""
        if self.release_status(release, namespace) is None:
            logger.info(f"Helm release {release} not installed, nothing to uninstall")
            return
        self.run(["uninstall", release, "-n", namespace])
        logger.info(f"Helm release {release} uninstalled")
