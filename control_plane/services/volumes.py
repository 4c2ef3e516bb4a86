"""
Build-cache volumes — desired spec, comparison and reconciliation.

A desired spec is anything with an apply_defaults()/matches(live) pair
(DesiredSpec). CacheVolumeSpec is the PVC implementation:

  matches(live):
    1. live phase must be Bound (a pending claim cannot be trusted)
    2. size requests equal as quantities ("1Gi" == "1073741824")
    3. access modes equal as sets; empty desired vs non-empty live is a mismatch
    4. volume mode equal
    5. storage class equal; no desired class only matches no live class

  Reconcile (per application, at staging time):
    absent → create | matches → keep | bound but different → recreate
    (or report, if recreation is disabled) | not bound → report
  A desired spec naming no class (and no configured class) asks for the
  cluster's default StorageClass, which admission stamps onto new claims.
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional, Protocol, Union

from kubernetes.utils import parse_quantity

from control_plane import telemetry
from control_plane.errors import Conflict, InvalidArgument, NotFound, Unavailable
from control_plane.resources import CacheVolume

logger = logging.getLogger("volumes")

DEFAULT_SIZE = "1Gi"
READ_WRITE_ONCE = "ReadWriteOnce"
FILESYSTEM = "Filesystem"
PHASE_BOUND = "Bound"


class DesiredSpec(Protocol):
    """A sized resource the control plane can default and compare against a live one."""

    def apply_defaults(self, **policy) -> "DesiredSpec": ...

    def matches(self, live) -> tuple[bool, str]: ...


def _quantity(value: str) -> Decimal:
    try:
        return parse_quantity(value)
    except ValueError as e:
        raise InvalidArgument(f"invalid storage size '{value}'") from e


def sizes_equal(live: Optional[str], desired: Optional[str]) -> bool:
    if live is None or desired is None:
        return live is None and desired is None
    return _quantity(live) == _quantity(desired)


def access_modes_equal(live, desired) -> bool:
    return set(live or ()) == set(desired or ())


@dataclass(frozen=True)
class CacheVolumeSpec:
    size: Optional[str] = None
    access_modes: tuple[str, ...] = ()
    volume_mode: Optional[str] = None
    storage_class_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CacheVolumeSpec":
        data = data or {}
        return cls(
            size=data.get("size") or None,
            access_modes=tuple(data.get("accessModes") or ()),
            volume_mode=data.get("volumeMode") or None,
            storage_class_name=data.get("storageClassName") or None,
        )

    @classmethod
    def of(cls, volume: CacheVolume) -> "CacheVolumeSpec":
        """The spec a live volume was created from."""
        return cls(
            size=volume.size,
            access_modes=tuple(volume.access_modes),
            volume_mode=volume.volume_mode,
            storage_class_name=volume.storage_class_name or None,
        )

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "accessModes": list(self.access_modes),
            "volumeMode": self.volume_mode,
            "storageClassName": self.storage_class_name,
        }

    def apply_defaults(self, size: str = DEFAULT_SIZE,
                       storage_class_name: Optional[str] = None) -> "CacheVolumeSpec":
        return replace(
            self,
            size=self.size or size,
            access_modes=self.access_modes or (READ_WRITE_ONCE,),
            volume_mode=self.volume_mode or FILESYSTEM,
            storage_class_name=self.storage_class_name or storage_class_name or None,
        )

    def matches(self, live: CacheVolume) -> tuple[bool, str]:
        if live.phase != PHASE_BOUND:
            return False, f"volume {live.name} is {live.phase or 'Unknown'}, not {PHASE_BOUND}"
        if not sizes_equal(live.size, self.size):
            return False, f"size mismatch: live {live.size}, desired {self.size}"
        if not access_modes_equal(live.access_modes, self.access_modes):
            return False, (
                f"access modes mismatch: live {sorted(live.access_modes)}, "
                f"desired {sorted(self.access_modes)}"
            )
        if live.volume_mode != self.volume_mode:
            return False, f"volume mode mismatch: live {live.volume_mode}, desired {self.volume_mode}"
        if (live.storage_class_name or None) != self.storage_class_name:
            return False, (
                f"storage class mismatch: live {live.storage_class_name}, "
                f"desired {self.storage_class_name}"
            )
        return True, ""


def apply_defaults(spec: Union[DesiredSpec, dict, None], **policy) -> DesiredSpec:
    """Default an absent, empty or partial spec. Idempotent."""
    if spec is None or isinstance(spec, dict):
        spec = CacheVolumeSpec.from_dict(spec)
    return spec.apply_defaults(**policy)


def matches(live, desired: DesiredSpec) -> tuple[bool, str]:
    return desired.matches(live)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

CREATED = "created"
KEPT = "kept"
RECREATED = "recreated"
MISMATCH = "mismatch"


@dataclass
class ReconcileResult:
    action: str
    reason: str = ""
    volume: Optional[CacheVolume] = None

    def to_status(self) -> dict:
        return {
            "action": self.action,
            "reason": self.reason,
            "volume": self.volume.name if self.volume else None,
            "phase": self.volume.phase if self.volume else None,
        }


class CacheVolumeReconciler:
    """Brings an application's cache volume in line with its desired spec."""

    def __init__(self, store, settings):
        self.store = store
        self.settings = settings

    def desired_spec(self, cache_volume: Optional[dict],
                     default_storage_class: Optional[str] = None) -> CacheVolumeSpec:
        return apply_defaults(
            cache_volume,
            size=self.settings.CACHE_DEFAULT_SIZE,
            storage_class_name=self.settings.CACHE_STORAGE_CLASS or default_storage_class,
        )

    def policy_storage_class(self, cache_volume: Optional[dict]) -> Optional[str]:
        """
        Class a claim naming none ends up with. The cluster's default class
        is filled in by admission, so it is the desired class too.
        """
        if (cache_volume or {}).get("storageClassName") or self.settings.CACHE_STORAGE_CLASS:
            return None
        return self.store.default_storage_class()

    def reconcile(self, namespace: str, app_name: str,
                  desired: Union[CacheVolumeSpec, dict, None]) -> ReconcileResult:
        if isinstance(desired, CacheVolumeSpec):
            desired = desired.to_dict()
        desired = self.desired_spec(desired, self.policy_storage_class(desired))

        live = self.store.get_cache_volume(namespace, app_name)
        if live is None:
            volume = self.store.create_cache_volume(namespace, app_name, desired)
            return self._done(namespace, app_name, ReconcileResult(CREATED, "no cache volume", volume))

        ok, reason = desired.matches(live)
        if ok:
            self.store.touch_cache_volume(live.name)
            return self._done(namespace, app_name, ReconcileResult(KEPT, "", live))

        if live.phase != PHASE_BOUND or not self.settings.CACHE_RECREATE_ON_MISMATCH:
            logger.warning(f"Cache volume {live.name} does not match {namespace}/{app_name}: {reason}")
            return self._done(namespace, app_name, ReconcileResult(MISMATCH, reason, live))

        logger.info(f"Recreating cache volume {live.name}: {reason}")
        try:
            self.store.delete_cache_volume(live.name)
        except NotFound:
            logger.info(f"Cache volume {live.name} already gone")
        try:
            volume = self.store.create_cache_volume(namespace, app_name, desired)
        except Conflict as e:
            raise Unavailable(
                f"cache volume {live.name} is still terminating; retry staging"
            ) from e
        return self._done(namespace, app_name, ReconcileResult(RECREATED, reason, volume))

    def _done(self, namespace: str, app_name: str, result: ReconcileResult) -> ReconcileResult:
        telemetry.record_reconcile(result.action)
        telemetry.publish_event(
            f"{namespace}/{app_name}", f"CACHE_{result.action.upper()}",
            result.reason or f"cache volume {result.action}",
        )
        return result
