"""
Deployment trigger — turns a changed bound-configuration set into at most one
redeploy of the application's workload.

Callers invoke trigger() once per logical operation; convergence of two
back-to-back triggers is left to the release manager.
"""

import logging

from control_plane import telemetry
from control_plane.resources import Application

logger = logging.getLogger("deployer")


class DeploymentTrigger:
    def __init__(self, release_manager):
        self.release_manager = release_manager

    def trigger(self, app: Application, restart: bool = True) -> bool:
        """Returns True if a redeploy was issued."""
        subject = f"{app.namespace}/{app.name}"
        if not restart:
            logger.info(f"App {subject}: restart suppressed, changes apply at next deploy")
            telemetry.publish_event(subject, "RESTART_SUPPRESSED", "configuration updated without restart")
            return False

        issued = self.release_manager.redeploy_app(app)
        if issued:
            telemetry.record_redeploy()
            telemetry.publish_event(
                subject, "REDEPLOY",
                f"redeploy with {len(app.configurations)} bound configurations",
            )
            logger.info(f"App {subject}: redeploy issued")
        return issued
