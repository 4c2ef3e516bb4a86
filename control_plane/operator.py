"""
Control Plane Operator — build-cache volume lifecycle

  App staged (spec.stageId set or changed) → reconcile the app's cache volume:
    1. No volume            → create from the desired spec (defaults applied)
    2. Volume matches       → keep, record last use
    3. Bound but different  → recreate (or report when recreation is disabled)
    4. Not bound yet        → report, retry later
    Result written to status.cacheVolume

  Timer on cache volumes (PVCs labelled controlplane.io/cache=true):
    delete a volume once it is stale and its application is gone

  App deletion does not delete the cache volume; the timer collects it
  after the stale period.

Run with:  kopf run -m control_plane.operator --namespace <staging> --all-namespaces
"""

import kopf

from control_plane import config
from control_plane.errors import ControlPlaneError, DeletionFailed, Unavailable
from control_plane.resources import CACHE_LABEL, CacheVolume, format_timestamp, utcnow
from control_plane.services import get_collector, get_reconciler
from control_plane.services.volumes import MISMATCH, PHASE_BOUND

CRD_GROUP = config.settings.CRD_GROUP
CRD_VERSION = config.settings.CRD_VERSION
APP_PLURAL = config.settings.APP_PLURAL


def _in_staging_namespace(namespace, **_) -> bool:
    return namespace == config.settings.STAGING_NAMESPACE


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, logger, **kwargs):
    settings.posting.enabled = True
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix=CRD_GROUP
    )
    # Concurrency control: bounded parallel reconciliations
    settings.execution.max_workers = config.settings.MAX_PARALLEL_RECONCILES
    logger.info(
        f"Control Plane Operator started (max_workers={config.settings.MAX_PARALLEL_RECONCILES}, "
        f"staging={config.settings.STAGING_NAMESPACE}, staleDays={config.settings.STALE_CACHE_DAYS})"
    )


# ---------------------------------------------------------------------------
# STAGE handler: cache volume reconciliation
# ---------------------------------------------------------------------------

@kopf.on.field(CRD_GROUP, CRD_VERSION, APP_PLURAL, field="spec.stageId")
def reconcile_cache_volume(new, spec, name, namespace, patch, logger, **kwargs):
    """Make the app's build cache match its desired spec before a build uses it."""
    if not new:
        return

    try:
        result = get_reconciler().reconcile(namespace, name, spec.get("cacheVolume"))
    except Unavailable as e:
        raise kopf.TemporaryError(str(e), delay=15)
    except ControlPlaneError as e:
        patch.status["cacheVolume"] = {
            "action": "error",
            "reason": str(e)[:200],
            "lastReconciled": format_timestamp(utcnow()),
        }
        raise kopf.PermanentError(f"cache volume reconcile failed: {e}")

    patch.status["cacheVolume"] = {
        **result.to_status(),
        "lastReconciled": format_timestamp(utcnow()),
    }
    logger.info(f"App {namespace}/{name}: cache volume {result.action} {result.reason}".rstrip())

    if result.action == MISMATCH and result.volume is not None and result.volume.phase != PHASE_BOUND:
        raise kopf.TemporaryError(f"cache volume not bound yet: {result.reason}", delay=15)
    return {"cacheVolume": result.action}


# ---------------------------------------------------------------------------
# TIMER: stale cache collection
# ---------------------------------------------------------------------------

@kopf.timer(
    "v1", "persistentvolumeclaims",
    labels={CACHE_LABEL: "true"},
    when=_in_staging_namespace,
    interval=config.settings.CLEANUP_INTERVAL,
    idle=config.settings.CLEANUP_INTERVAL,
)
def sweep_cache_volume(body, name, logger, **kwargs):
    """Delete this cache volume if it is stale and orphaned (default policy)."""
    volume = CacheVolume.from_body(body)
    try:
        deleted = get_collector().sweep_volume(volume)
    except DeletionFailed as e:
        raise kopf.TemporaryError(str(e), delay=60)
    except ControlPlaneError as e:
        logger.warning(f"Cache volume {name}: sweep skipped: {e}")
        return
    if deleted:
        logger.info(f"Cache volume {name} was stale and has been deleted")
