"""End-to-end reconciliation scenarios for OpenStackBaremetalSet."""

import copy

import pytest

from baremetal_operator import crd
from baremetal_operator.baremetalhost import slot_labels
from baremetal_operator.baremetalset import reconcile_baremetalset, reconcile_baremetalset_delete
from baremetal_operator.errors import (
    ConsistencyError,
    InsufficientHostsError,
    InvalidCIDRError,
    SecretNotFoundError,
)

from conftest import BMH_NAMESPACE, NAMESPACE, condition, make_baremetalset, make_host, make_provision_server


@pytest.fixture
def env(clients):
    clients.core.add_secret("ssh-keys", NAMESPACE, {"authorized_keys": "ssh-rsa AAAA test\n"})
    clients.custom.put(crd.PROVISIONSERVER_PLURAL, make_provision_server())
    clients.custom.put(crd.BMH_PLURAL, make_host("host-0"))
    return clients


def _next(body, result):
    """The resource as the next pass sees it, with the status written back."""
    body = copy.deepcopy(body)
    body["status"] = copy.deepcopy(result.status)
    return body


def _host(clients, name="host-0"):
    return clients.custom.peek(crd.BMH_PLURAL, BMH_NAMESPACE, name)


def test_waits_for_ssh_secret_then_provisions(clients, cfg):
    clients.custom.put(crd.PROVISIONSERVER_PLURAL, make_provision_server())
    clients.custom.put(crd.BMH_PLURAL, make_host("host-0"))
    body = make_baremetalset(provisionServerName="prov")

    result = reconcile_baremetalset(body, clients, cfg)
    assert isinstance(result.error, SecretNotFoundError)
    assert result.requeue_after == cfg.input_delay
    assert result.status["phase"] == crd.PHASE_WAITING_ON_INPUTS
    assert condition(result.status, crd.INPUT_READY_CONDITION)["status"] == "False"
    assert condition(result.status, crd.READY_CONDITION)["status"] == "False"
    assert clients.custom.writes == []

    clients.core.add_secret("ssh-keys", NAMESPACE, {"authorized_keys": "ssh-rsa AAAA test\n"})
    result = reconcile_baremetalset(_next(body, result), clients, cfg)

    assert result.error is None
    assert result.requeue_after == cfg.provisioning_delay
    assert result.status["phase"] == crd.PHASE_PROVISIONING
    assert condition(result.status, crd.INPUT_READY_CONDITION)["status"] == "True"
    assert condition(result.status, crd.BMSET_PROVSERVER_READY_CONDITION)["status"] == "True"

    record = result.status["baremetalHosts"]["compute-0"]
    assert record["bmhRef"] == "host-0"
    assert record["hostname"] == "compute-0"
    assert record["ipAddresses"] == {"ctlplane": "192.168.122.10/24"}
    assert record["userDataSecretName"] == "compute-cloudinit-userdata-compute-0"
    assert record["provisioningState"] == crd.BMH_STATE_AVAILABLE

    host = _host(clients)
    assert host["spec"]["consumerRef"]["name"] == "compute"
    assert host["spec"]["image"]["url"] == "http://10.0.0.5:6190/edpm-hardened-uefi.qcow2"
    assert host["spec"]["image"]["checksumType"] == "sha256"
    assert (BMH_NAMESPACE, "compute-cloudinit-userdata-compute-0") in clients.core.secrets
    assert result.status["observedGeneration"] == 1


def test_becomes_ready_once_hosts_are_provisioned(env, cfg):
    body = make_baremetalset(provisionServerName="prov")
    result = reconcile_baremetalset(body, env, cfg)
    _host(env)["status"]["provisioning"]["state"] = crd.BMH_STATE_PROVISIONED
    writes = len(env.custom.writes)

    result = reconcile_baremetalset(_next(body, result), env, cfg)
    assert result.done
    assert result.status["phase"] == crd.PHASE_READY
    assert condition(result.status, crd.READY_CONDITION)["status"] == "True"
    assert result.status["baremetalHosts"]["compute-0"]["provisioningState"] == crd.BMH_STATE_PROVISIONED
    # already claimed and provisioned, nothing to write
    assert len(env.custom.writes) == writes


def test_restart_without_status_does_not_claim_another_host(env, cfg):
    env.custom.put(crd.BMH_PLURAL, make_host("host-1"))
    body = make_baremetalset(provisionServerName="prov")
    reconcile_baremetalset(body, env, cfg)

    # status lost, the labels on the claimed host still tie it to the slot
    result = reconcile_baremetalset(body, env, cfg)
    assert result.status["baremetalHosts"]["compute-0"]["bmhRef"] == "host-0"
    assert "consumerRef" not in _host(env, "host-1")["spec"]


def test_not_enough_hosts(env, cfg):
    slots = {
        "compute-0": {"ctlPlaneIP": "192.168.122.10/24"},
        "compute-1": {"ctlPlaneIP": "192.168.122.11/24"},
    }
    body = make_baremetalset(slots=slots, provisionServerName="prov")
    result = reconcile_baremetalset(body, env, cfg)

    assert isinstance(result.error, InsufficientHostsError)
    assert result.error.shortfall == 1
    assert result.error.in_use == 0
    assert result.error.available == 1
    assert result.status["phase"] == crd.PHASE_ALLOCATING
    cond = condition(result.status, crd.BMSET_BMH_PROVISIONING_READY_CONDITION)
    assert cond["status"] == "False"
    assert "(1 short, 0 in use, 1 available)" in cond["message"]
    assert env.custom.writes == []


def test_slot_label_selector_picks_matching_host(env, cfg):
    env.custom.put(crd.BMH_PLURAL, make_host("host-1", labels={"rack": "b"}))
    slots = {"compute-0": {"ctlPlaneIP": "192.168.122.10/24", "bmhLabelSelector": {"rack": "b"}}}
    body = make_baremetalset(slots=slots, provisionServerName="prov")

    result = reconcile_baremetalset(body, env, cfg)
    assert result.status["baremetalHosts"]["compute-0"]["bmhRef"] == "host-1"


def test_scale_down_releases_host_and_secrets(env, cfg):
    body = make_baremetalset(provisionServerName="prov")
    result = reconcile_baremetalset(body, env, cfg)
    assert "compute-0" in result.status["baremetalHosts"]

    body = _next(body, result)
    body["spec"]["baremetalHosts"] = {}
    result = reconcile_baremetalset(body, env, cfg)

    assert result.status["baremetalHosts"] == {}
    assert result.status["phase"] == crd.PHASE_READY
    host = _host(env)
    assert "consumerRef" not in host["spec"]
    assert host["spec"]["online"] is False
    assert "compute-osbms-hostname" not in host["metadata"]["labels"]
    assert (BMH_NAMESPACE, "compute-cloudinit-userdata-compute-0") not in env.core.secrets
    assert (BMH_NAMESPACE, "compute-cloudinit-networkdata-compute-0") not in env.core.secrets


def test_missing_recorded_host_is_a_consistency_error(env, cfg):
    body = make_baremetalset(provisionServerName="prov")
    record = {"hostname": "compute-0", "bmhRef": "ghost", "ipAddresses": {"ctlplane": "192.168.122.10/24"}}
    body["status"] = {"baremetalHosts": {"compute-0": record}}

    result = reconcile_baremetalset(body, env, cfg)
    assert isinstance(result.error, ConsistencyError)
    assert result.status["baremetalHosts"] == {"compute-0": record}
    cond = condition(result.status, crd.BMSET_BMH_PROVISIONING_READY_CONDITION)
    assert cond["severity"] == crd.SEVERITY_ERROR
    assert env.custom.writes == []


def test_duplicate_host_records_are_a_consistency_error(env, cfg):
    body = make_baremetalset(
        slots={
            "compute-0": {"ctlPlaneIP": "192.168.122.10/24"},
            "compute-1": {"ctlPlaneIP": "192.168.122.11/24"},
        },
        provisionServerName="prov",
    )
    body["status"] = {
        "baremetalHosts": {
            "compute-0": {"hostname": "compute-0", "bmhRef": "host-0", "ipAddresses": {}},
            "compute-1": {"hostname": "compute-1", "bmhRef": "host-0", "ipAddresses": {}},
        }
    }
    result = reconcile_baremetalset(body, env, cfg)
    assert isinstance(result.error, ConsistencyError)


def test_invalid_ctlplane_ip(env, cfg):
    body = make_baremetalset(slots={"compute-0": {"ctlPlaneIP": "192.168.122.10"}}, provisionServerName="prov")
    result = reconcile_baremetalset(body, env, cfg)
    assert isinstance(result.error, InvalidCIDRError)
    assert result.status["phase"] == crd.PHASE_WAITING_ON_INPUTS
    assert condition(result.status, crd.INPUT_READY_CONDITION)["reason"] == crd.REASON_ERROR


def test_missing_named_provision_server(env, cfg):
    body = make_baremetalset(provisionServerName="absent")
    result = reconcile_baremetalset(body, env, cfg)
    assert result.status["phase"] == crd.PHASE_WAITING_ON_DEPENDENCY
    assert result.requeue_after == cfg.provserver_missing_delay
    assert condition(result.status, crd.BMSET_PROVSERVER_READY_CONDITION)["message"] == (
        crd.BMSET_PROVSERVER_READY_WAITING_MESSAGE
    )


def test_creates_owned_provision_server_on_free_port(env, cfg):
    body = make_baremetalset()
    result = reconcile_baremetalset(body, env, cfg)

    server = env.custom.peek(crd.PROVISIONSERVER_PLURAL, NAMESPACE, "compute-provisionserver")
    # prov already holds 6190
    assert server["spec"]["port"] == 6191
    assert server["metadata"]["ownerReferences"][0]["uid"] == "compute-uid"
    assert result.status["phase"] == crd.PHASE_WAITING_ON_DEPENDENCY
    assert result.requeue_after == cfg.provserver_image_delay

    # a second pass leaves the server alone
    writes = len(env.custom.writes)
    reconcile_baremetalset(_next(body, result), env, cfg)
    assert len(env.custom.writes) == writes


def test_delete_releases_every_host(env, cfg):
    body = make_baremetalset(provisionServerName="prov")
    result = reconcile_baremetalset(body, env, cfg)

    result = reconcile_baremetalset_delete(_next(body, result), env, cfg)
    assert result.status["phase"] == crd.PHASE_DELETING
    assert result.status["baremetalHosts"] == {}
    assert "consumerRef" not in _host(env)["spec"]


def test_recorded_host_claimed_by_another_owner_is_a_consistency_error(env, cfg):
    body = make_baremetalset(provisionServerName="prov")
    result = reconcile_baremetalset(body, env, cfg)
    _host(env)["spec"]["consumerRef"] = {"name": "other", "kind": crd.BAREMETALSET_KIND, "namespace": "elsewhere"}
    writes = len(env.custom.writes)

    result = reconcile_baremetalset(_next(body, result), env, cfg)
    assert isinstance(result.error, ConsistencyError)
    assert "other" in str(result.error)
    assert result.requeue_after is None
    cond = condition(result.status, crd.BMSET_BMH_PROVISIONING_READY_CONDITION)
    assert cond["status"] == "False"
    assert cond["reason"] == crd.REASON_ERROR
    assert cond["severity"] == crd.SEVERITY_ERROR
    assert len(env.custom.writes) == writes


def test_outdated_pass_does_not_reclaim_a_released_host(env, cfg):
    body = make_baremetalset(provisionServerName="prov")
    outdated = _next(body, reconcile_baremetalset(body, env, cfg))

    scaled_down = copy.deepcopy(outdated)
    scaled_down["spec"]["baremetalHosts"] = {}
    reconcile_baremetalset(scaled_down, env, cfg)
    assert "consumerRef" not in _host(env)["spec"]
    writes = len(env.custom.writes)

    # a pass still working from the spec and status before the scale-down
    result = reconcile_baremetalset(outdated, env, cfg)
    assert isinstance(result.error, ConsistencyError)
    host = _host(env)
    assert "consumerRef" not in host["spec"]
    assert host["spec"]["online"] is False
    assert len(env.custom.writes) == writes


def test_scale_down_releases_labelled_host_without_a_record(env, cfg):
    owner = {"name": "compute", "namespace": NAMESPACE, "uid": "compute-uid"}
    env.custom.put(
        crd.BMH_PLURAL,
        make_host(
            "host-9",
            state=crd.BMH_STATE_PROVISIONED,
            labels={**slot_labels(owner, "compute-1"), "rack": "a"},
            online=True,
            consumer_ref={"name": "compute", "kind": crd.BAREMETALSET_KIND, "namespace": NAMESPACE},
        ),
    )
    body = make_baremetalset(provisionServerName="prov")

    result = reconcile_baremetalset(body, env, cfg)
    assert result.error is None
    assert set(result.status["baremetalHosts"]) == {"compute-0"}
    assert result.status["baremetalHosts"]["compute-0"]["bmhRef"] == "host-0"

    released = _host(env, "host-9")
    assert released["metadata"]["labels"] == {"rack": "a"}
    assert released["spec"]["online"] is False
    assert "consumerRef" not in released["spec"]
