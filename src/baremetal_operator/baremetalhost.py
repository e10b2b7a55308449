"""Claiming and releasing BareMetalHosts for an OpenStackBaremetalSet slot.

A host is provisioned once: the claim (power on, consumerRef, image, user
and network data) is only written while the host has no consumerRef.
Labels, cleaning mode and, until the host is provisioned, the image are
kept up to date on every pass. Writes that would not change the host are
skipped.
"""

import copy
import logging
from dataclasses import dataclass

from . import crd
from .errors import ConflictError
from .k8s import delete_secret, ensure_secret, get_baremetal_host, replace_baremetal_host
from .templates import render_network_data, render_user_data

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unclaimed:
    pass


@dataclass(frozen=True)
class Claimed:
    name: str
    kind: str
    namespace: str


UNCLAIMED = Unclaimed()


def claim_state(host):
    ref = (host.get("spec") or {}).get("consumerRef")
    if not ref:
        return UNCLAIMED
    return Claimed(ref.get("name", ""), ref.get("kind", ""), ref.get("namespace", ""))


def set_owner(owner):
    """The Claimed state a host has once ``owner`` (set metadata) claimed it."""
    return Claimed(owner["name"], crd.BAREMETALSET_KIND, owner["namespace"])


def slot_labels(owner, slot):
    labels = crd.owner_labels(crd.SERVICE_NAME, owner["name"], owner["namespace"], owner["uid"])
    labels[crd.hostname_label_key(owner["name"])] = slot
    return labels


def host_image(provision_server):
    status = provision_server.get("status") or {}
    image = {
        "url": status.get("localImageUrl", ""),
        "checksum": status.get("localImageChecksumUrl", ""),
    }
    if status.get("osImageChecksumType"):
        image["checksumType"] = status["osImageChecksumType"]
    return image


def provisioning_state(host):
    return ((host.get("status") or {}).get("provisioning") or {}).get("state", "")


def desired_claim(host, owner, slot, image, user_data, network_data, cleaning_mode):
    """Return the host as it should look once claimed for ``slot``.

    Raises ConflictError if someone else claimed the host after it was
    allocated to us.
    """
    desired = copy.deepcopy(host)
    meta = desired["metadata"]
    spec = desired.setdefault("spec", {})

    meta["labels"] = {**(meta.get("labels") or {}), **slot_labels(owner, slot)}
    spec["automatedCleaningMode"] = cleaning_mode

    if provisioning_state(host) != crd.BMH_STATE_PROVISIONED:
        spec["image"] = dict(image)

    state = claim_state(host)
    if state == UNCLAIMED:
        spec["online"] = True
        spec["consumerRef"] = {"name": owner["name"], "kind": crd.BAREMETALSET_KIND, "namespace": owner["namespace"]}
        spec["image"] = dict(image)
        spec["userData"] = dict(user_data)
        spec["networkData"] = dict(network_data)
    elif state != set_owner(owner):
        raise ConflictError(
            f"BaremetalHost {meta['name']} was claimed by {state.kind} {state.namespace}/{state.name} "
            f"before {owner['name']} could claim it"
        )
    return desired


def desired_release(host, owner, slot):
    """Return the host with every trace of the ``slot`` claim removed."""
    desired = copy.deepcopy(host)
    meta = desired["metadata"]
    spec = desired.setdefault("spec", {})

    labels = meta.get("labels")
    if labels:
        for key in slot_labels(owner, slot):
            labels.pop(key, None)
    annotations = meta.get("annotations")
    if annotations:
        annotations.pop(crd.HOST_REMOVAL_ANNOTATION, None)

    state = claim_state(host)
    if state != UNCLAIMED and state != set_owner(owner):
        logger.warning(
            f"BaremetalHost {meta['name']} is claimed by {state.kind} {state.namespace}/{state.name}, "
            "only removing our labels"
        )
        return desired

    if spec.get("online"):
        spec["online"] = False
    for key in ("consumerRef", "image", "userData", "networkData"):
        spec.pop(key, None)
    return desired


def provision_host(custom_api, bmh_namespace, host_name, owner, slot, image, user_data, network_data, cleaning_mode):
    """Claim ``host_name`` for ``slot``; returns the host as last read or written."""
    host = get_baremetal_host(custom_api, bmh_namespace, host_name)
    if host is None:
        raise ConflictError(f"BaremetalHost {host_name} disappeared from namespace {bmh_namespace} while claiming it")

    desired = desired_claim(host, owner, slot, image, user_data, network_data, cleaning_mode)
    if desired == host:
        return host

    operation = "claimed" if claim_state(host) == UNCLAIMED else "updated"
    updated = replace_baremetal_host(custom_api, desired)
    logger.info(f"BaremetalHost {host_name} {operation} for {owner['name']} slot {slot}")
    return updated or desired


def deprovision_host(clients, bmh_namespace, owner, slot, host_name):
    """Release ``host_name`` from ``slot`` and delete the slot's generated secrets.

    Safe to repeat: a host that is already clean is not written, and a host
    that no longer exists only has its secrets cleaned up.
    """
    host = get_baremetal_host(clients.custom, bmh_namespace, host_name) if host_name else None
    if host is None:
        logger.info(f"BaremetalHost {host_name} for slot {slot} not found in {bmh_namespace}, nothing to release")
    else:
        desired = desired_release(host, owner, slot)
        if desired != host:
            logger.info(f"Deallocating BaremetalHost {host_name} from {owner['name']} slot {slot}")
            replace_baremetal_host(clients.custom, desired)

    for template in (crd.CLOUDINIT_USERDATA_SECRET, crd.CLOUDINIT_NETWORKDATA_SECRET):
        delete_secret(clients.core, template.format(owner["name"], slot), bmh_namespace)


def ensure_cloudinit_secrets(core_api, owner, spec, slot, bmh_namespace, authorized_keys, root_password=None):
    """Return ``(userData, networkData)`` secret references for ``slot``.

    A reference given on the slot, or else on the set, is used as is;
    otherwise the secret is rendered and written to ``bmh_namespace``.
    """
    slot_spec = spec["baremetalHosts"][slot] or {}
    labels = crd.owner_labels(crd.SERVICE_NAME, owner["name"], owner["namespace"], owner["uid"])

    user_data = slot_spec.get("userData") or spec.get("userData")
    if not user_data:
        name = crd.CLOUDINIT_USERDATA_SECRET.format(owner["name"], slot)
        content = render_user_data(
            slot,
            authorized_keys,
            cloud_user=spec.get("cloudUserName") or crd.DEFAULT_CLOUD_USER,
            domain_name=spec.get("domainName", ""),
            root_password=root_password,
        )
        ensure_secret(core_api, name, bmh_namespace, {"userData": content}, labels=labels)
        user_data = {"name": name, "namespace": bmh_namespace}

    network_data = slot_spec.get("networkData") or spec.get("networkData")
    if not network_data:
        name = crd.CLOUDINIT_NETWORKDATA_SECRET.format(owner["name"], slot)
        vlan = slot_spec.get("ctlplaneVlan")
        if vlan is None:
            vlan = spec.get("ctlplaneVlan")
        content = render_network_data(
            slot_spec["ctlPlaneIP"],
            slot_spec.get("ctlplaneInterface") or spec.get("ctlplaneInterface", ""),
            gateway=slot_spec.get("ctlplaneGateway") or spec.get("ctlplaneGateway", ""),
            vlan=vlan,
            dns=spec.get("bootstrapDns"),
            dns_search=spec.get("dnsSearchDomains"),
        )
        ensure_secret(
            core_api,
            name,
            bmh_namespace,
            {"networkData": content},
            labels={**labels, crd.MUST_GATHER_SECRET_LABEL: "yes"},
        )
        network_data = {"name": name, "namespace": bmh_namespace}

    return dict(user_data), dict(network_data)
