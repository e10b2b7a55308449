"""Tests for the kopf handler plumbing."""

import threading
import time
from types import SimpleNamespace

import kopf
import pytest

from baremetal_operator import main
from baremetal_operator.errors import ConflictError, ConsistencyError
from baremetal_operator.reconcile import ReconcileResult


def test_body_is_read_after_waiting_for_the_lock():
    body = {"metadata": {"uid": "set-uid"}, "spec": {"baremetalHosts": {"compute-0": {}}}, "status": {}}
    seen = []

    def reconcile(obj):
        seen.append(sorted(obj["spec"]["baremetalHosts"]))
        return ReconcileResult(status={"phase": "Ready"})

    patch = SimpleNamespace(status={})
    with main._lock_for("set-uid"):
        worker = threading.Thread(target=main._reconcile, args=(reconcile, body, patch))
        worker.start()
        time.sleep(0.05)
        # another handler scales the set down while this one waits
        body["spec"]["baremetalHosts"] = {}
    worker.join(timeout=5)
    main._forget("set-uid")

    assert seen == [[]]
    assert patch.status == {"phase": "Ready"}


def test_apply_result_nulls_removed_records_and_skips_excluded_fields():
    patch = SimpleNamespace(status={})
    old = {"baremetalHosts": {"compute-0": {"bmhRef": "host-0"}}, "provisionIp": "10.0.0.5"}
    result = ReconcileResult(status={"baremetalHosts": {}, "provisionIp": "10.0.0.5", "phase": "Ready"})
    main.apply_result(result, old, patch, exclude=("provisionIp",))
    assert patch.status == {"baremetalHosts": {"compute-0": None}, "phase": "Ready"}


def test_consistency_error_is_permanent():
    with pytest.raises(kopf.PermanentError):
        main.raise_for_result(ReconcileResult(error=ConsistencyError("host gone")), "OpenStackBaremetalSet", "compute")


def test_conflict_is_retried_with_its_delay():
    result = ReconcileResult(requeue_after=1, error=ConflictError("stale"))
    with pytest.raises(kopf.TemporaryError) as excinfo:
        main.raise_for_result(result, "OpenStackBaremetalSet", "compute")
    assert excinfo.value.delay == 1


def test_requeue_without_error_is_temporary():
    with pytest.raises(kopf.TemporaryError, match="not ready yet"):
        main.raise_for_result(ReconcileResult(requeue_after=20), "OpenStackBaremetalSet", "compute")
    main.raise_for_result(ReconcileResult(), "OpenStackBaremetalSet", "compute")
