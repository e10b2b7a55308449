"""Main operator entrypoint using Kopf."""

import copy
import logging
import threading
from collections import defaultdict

import kopf

from . import crd
from .baremetalset import reconcile_baremetalset, reconcile_baremetalset_delete
from .config import get_config
from .errors import ConflictError, ConsistencyError
from .k8s import init_clients
from .provisionserver import AGENT_STATUS_FIELDS, reconcile_provisionserver
from .reconcile import status_patch

cfg = get_config()

# Configure logging
logging.basicConfig(
    level=getattr(logging, cfg.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Change handlers and timers may fire for the same object at once
_locks = defaultdict(threading.Lock)
_locks_guard = threading.Lock()


def _lock_for(uid):
    with _locks_guard:
        return _locks[uid]


def _forget(uid):
    with _locks_guard:
        _locks.pop(uid, None)


def _snapshot(body):
    return copy.deepcopy(dict(body))


def apply_result(result, old_status, patch, exclude=()):
    """Write the reconciled status into the kopf patch."""
    new_status = {k: v for k, v in result.status.items() if k not in exclude}
    for key, value in status_patch(old_status, new_status).items():
        patch.status[key] = value


def raise_for_result(result, kind, name):
    """Turn a ReconcileResult into kopf's retry semantics."""
    error = result.error
    if isinstance(error, ConsistencyError):
        raise kopf.PermanentError(str(error))
    if isinstance(error, ConflictError):
        raise kopf.TemporaryError(str(error), delay=result.requeue_after or cfg.conflict_delay)
    if error is not None:
        raise kopf.TemporaryError(str(error), delay=result.requeue_after or cfg.error_delay)
    if result.requeue_after is not None:
        raise kopf.TemporaryError(f"{kind} {name} is not ready yet", delay=result.requeue_after)


def _reconcile(reconcile, body, patch, exclude=()):
    # kopf keeps body current, so copy it only once the lock is held
    with _lock_for(body["metadata"].get("uid")):
        obj = _snapshot(body)
        result = reconcile(obj)
    apply_result(result, obj.get("status"), patch, exclude)
    return result


@kopf.on.startup()
def startup(settings: kopf.OperatorSettings, **kwargs):
    """Initialize Kubernetes clients before any handler runs."""
    init_clients()
    settings.persistence.finalizer = f"{crd.GROUP}/finalizer"
    logger.info(
        f"Operator started (provision server ports {cfg.port_start}-{cfg.port_end}, "
        f"default BMH namespace {cfg.bmh_namespace})"
    )


#
# OpenStackBaremetalSet
#


@kopf.on.resume(crd.GROUP, crd.VERSION, crd.BAREMETALSET_PLURAL)
@kopf.on.create(crd.GROUP, crd.VERSION, crd.BAREMETALSET_PLURAL)
@kopf.on.update(crd.GROUP, crd.VERSION, crd.BAREMETALSET_PLURAL)
def baremetalset_handler(body, name, namespace, patch, **kwargs):
    """Handle OpenStackBaremetalSet create/update events."""
    logger.info(f"Handling OpenStackBaremetalSet {name} in namespace {namespace}")

    try:
        result = _reconcile(reconcile_baremetalset, body, patch)
    except Exception as e:
        logger.error(f"Reconciliation error: {e}", exc_info=True)
        raise kopf.TemporaryError(f"Reconciliation failed: {e}", delay=cfg.error_delay)
    raise_for_result(result, crd.BAREMETALSET_KIND, name)


@kopf.timer(crd.GROUP, crd.VERSION, crd.BAREMETALSET_PLURAL, interval=30, initial_delay=30)
def baremetalset_timer(body, name, patch, **kwargs):
    """Periodic reconciliation timer."""
    logger.debug(f"Timer reconciliation for OpenStackBaremetalSet {name}")
    try:
        result = _reconcile(reconcile_baremetalset, body, patch)
        if result.error is not None:
            logger.warning(f"OpenStackBaremetalSet {name}: {result.error}")
    except Exception as e:
        logger.error(f"Timer reconciliation error: {e}", exc_info=True)


@kopf.on.delete(crd.GROUP, crd.VERSION, crd.BAREMETALSET_PLURAL)
def baremetalset_delete(body, name, namespace, **kwargs):
    """Release all hosts of a deleted OpenStackBaremetalSet."""
    logger.info(f"OpenStackBaremetalSet {name} deleted, releasing its BaremetalHosts")
    uid = body["metadata"].get("uid")
    try:
        with _lock_for(uid):
            reconcile_baremetalset_delete(_snapshot(body))
    except ConflictError as e:
        raise kopf.TemporaryError(str(e), delay=cfg.conflict_delay)
    except Exception as e:
        logger.error(f"Error releasing hosts of OpenStackBaremetalSet {name}: {e}", exc_info=True)
        raise kopf.TemporaryError(f"Deletion failed: {e}", delay=cfg.error_delay)
    _forget(uid)


#
# OpenStackProvisionServer
#


@kopf.on.resume(crd.GROUP, crd.VERSION, crd.PROVISIONSERVER_PLURAL)
@kopf.on.create(crd.GROUP, crd.VERSION, crd.PROVISIONSERVER_PLURAL)
@kopf.on.update(crd.GROUP, crd.VERSION, crd.PROVISIONSERVER_PLURAL)
def provisionserver_handler(body, name, namespace, patch, **kwargs):
    """Handle OpenStackProvisionServer create/update events."""
    logger.info(f"Handling OpenStackProvisionServer {name} in namespace {namespace}")

    try:
        result = _reconcile(reconcile_provisionserver, body, patch, AGENT_STATUS_FIELDS)
    except Exception as e:
        logger.error(f"Reconciliation error: {e}", exc_info=True)
        raise kopf.TemporaryError(f"Reconciliation failed: {e}", delay=cfg.error_delay)
    raise_for_result(result, crd.PROVISIONSERVER_KIND, name)


@kopf.timer(crd.GROUP, crd.VERSION, crd.PROVISIONSERVER_PLURAL, interval=30, initial_delay=30)
def provisionserver_timer(body, name, patch, **kwargs):
    """Periodic reconciliation timer."""
    logger.debug(f"Timer reconciliation for OpenStackProvisionServer {name}")
    try:
        result = _reconcile(reconcile_provisionserver, body, patch, AGENT_STATUS_FIELDS)
        if result.error is not None:
            logger.warning(f"OpenStackProvisionServer {name}: {result.error}")
    except Exception as e:
        logger.error(f"Timer reconciliation error: {e}", exc_info=True)


@kopf.on.delete(crd.GROUP, crd.VERSION, crd.PROVISIONSERVER_PLURAL, optional=True)
def provisionserver_delete(body, name, namespace, **kwargs):
    """Handle OpenStackProvisionServer deletion."""
    logger.info(f"OpenStackProvisionServer {name} deleted, cleaning up resources")
    # Owner references remove the deployment, job, config map and RBAC objects
    _forget(body["metadata"].get("uid"))


if __name__ == "__main__":
    kopf.run()
