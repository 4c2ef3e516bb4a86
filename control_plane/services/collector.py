"""
Stale cache collector — garbage-collects build-cache volumes.

A volume is a candidate when its last activity (last use if tracked,
creation otherwise) is more than `stale_days` ago. With check_app_exists the
candidate is only confirmed stale when its owning application is gone.
Confirmed volumes are deleted unless dry_run; each deletion fails on its own
without aborting the sweep.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from control_plane import telemetry
from control_plane.config import Settings
from control_plane.errors import ControlPlaneError, DeletionFailed, InvalidArgument, NotFound
from control_plane.resources import CacheVolume, utcnow

logger = logging.getLogger("collector")

DEFAULT_STALE_DAYS = 30
# largest day count a timedelta can hold
MAX_STALE_DAYS = timedelta.max.days

_DECIMAL = re.compile(r"[0-9]+")


def validate_stale_days(value, default: int = DEFAULT_STALE_DAYS) -> int:
    """Accept a non-negative integer (or its plain decimal string form) up to MAX_STALE_DAYS."""
    if value is None:
        return default
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidArgument(f"invalid staleDays '{value}': must be a non-negative integer")
    if isinstance(value, int):
        days = value
    elif isinstance(value, str) and _DECIMAL.fullmatch(value.strip()):
        days = int(value.strip())
    else:
        raise InvalidArgument(f"invalid staleDays '{value}': must be a non-negative integer")
    if days < 0:
        raise InvalidArgument(f"invalid staleDays '{value}': must be a non-negative integer")
    if days > MAX_STALE_DAYS:
        raise InvalidArgument(f"invalid staleDays '{value}': must be at most {MAX_STALE_DAYS}")
    return days


def is_stale(now: datetime, timestamp: Optional[datetime], stale_days: int) -> bool:
    """True when `timestamp` is strictly more than `stale_days` before `now`. Unknown age is never stale."""
    if timestamp is None:
        return False
    return now - timestamp > timedelta(days=stale_days)


@dataclass(frozen=True)
class CleanupPolicy:
    stale_days: int = DEFAULT_STALE_DAYS
    check_app_exists: bool = True
    dry_run: bool = False


@dataclass
class CleanupReport:
    dry_run: bool
    stale_caches: list[dict] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "dryRun": self.dry_run,
            "staleCaches": self.stale_caches,
            "deleted": self.deleted,
            "errors": self.errors,
        }


class StaleCacheCollector:
    def __init__(self, store, settings: Settings):
        self.store = store
        self.settings = settings

    def default_policy(self) -> CleanupPolicy:
        return CleanupPolicy(stale_days=self.settings.STALE_CACHE_DAYS)

    def evaluate(self, volume: CacheVolume, policy: CleanupPolicy, now: datetime) -> bool:
        """Whether a single volume is confirmed stale under `policy`."""
        if not is_stale(now, volume.last_activity, policy.stale_days):
            return False
        if policy.check_app_exists and volume.app_name:
            if self.store.app_exists(volume.app_namespace, volume.app_name):
                return False
        return True

    def cleanup(self, stale_days=DEFAULT_STALE_DAYS, check_app_exists: bool = True,
                dry_run: bool = False, now: Optional[datetime] = None) -> CleanupReport:
        policy = CleanupPolicy(
            stale_days=validate_stale_days(stale_days),
            check_app_exists=bool(check_app_exists),
            dry_run=bool(dry_run),
        )
        now = now or utcnow()
        volumes = self.store.list_cache_volumes()
        report = CleanupReport(dry_run=policy.dry_run)

        for volume in volumes:
            try:
                stale = self.evaluate(volume, policy, now)
            except ControlPlaneError as e:
                logger.warning(f"Cannot verify owner of cache volume {volume.name}: {e.message}")
                report.errors.append({"name": volume.name, "error": f"owner check failed: {e.message}"})
                continue
            if not stale:
                continue

            report.stale_caches.append(volume.to_summary(now))
            if policy.dry_run:
                continue
            try:
                self.delete(volume)
            except DeletionFailed as e:
                logger.error(str(e))
                report.errors.append(e.to_dict())
            else:
                report.deleted.append(volume.name)

        logger.info(
            f"Cache sweep (staleDays={policy.stale_days}, checkAppExists={policy.check_app_exists}, "
            f"dryRun={policy.dry_run}): {len(volumes)} volumes, {len(report.stale_caches)} stale, "
            f"{len(report.deleted)} deleted, {len(report.errors)} errors"
        )
        return report

    def sweep_volume(self, volume: CacheVolume, policy: Optional[CleanupPolicy] = None,
                     now: Optional[datetime] = None) -> bool:
        """Evaluate and (unless dry run) delete one volume. Returns True if deleted."""
        policy = policy or self.default_policy()
        if not self.evaluate(volume, policy, now or utcnow()):
            return False
        if policy.dry_run:
            logger.info(f"Cache volume {volume.name} is stale (dry run)")
            return False
        self.delete(volume)
        return True

    def delete(self, volume: CacheVolume):
        try:
            self.store.delete_cache_volume(volume.name)
        except NotFound:
            logger.info(f"Cache volume {volume.name} already gone")
        except ControlPlaneError as e:
            telemetry.record_cache_deletion(ok=False)
            raise DeletionFailed(volume.name, e.message) from e
        telemetry.record_cache_deletion()
        telemetry.publish_event(
            f"{volume.app_namespace}/{volume.app_name}", "CACHE_DELETED",
            f"stale cache volume {volume.name} deleted",
        )
