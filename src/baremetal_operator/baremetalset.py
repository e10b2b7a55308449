"""OpenStackBaremetalSet reconciliation."""

import copy
import hashlib
import logging

from . import crd
from .allocator import verify_scale_up
from .baremetalhost import (
    UNCLAIMED,
    claim_state,
    deprovision_host,
    ensure_cloudinit_secrets,
    host_image,
    provision_host,
    provisioning_state,
    set_owner,
)
from .conditions import Conditions, unknown_condition
from .config import get_config
from .errors import (
    AllocationError,
    ConflictError,
    ConsistencyError,
    DependencyNotReadyError,
    InputError,
    PortRangeExhaustedError,
    SecretNotFoundError,
)
from .hardware import HardwareRequirement, is_subset
from .k8s import (
    create_provision_server,
    get_clients,
    get_provision_server,
    get_secret,
    list_baremetal_hosts,
    list_provision_server_ports,
    replace_provision_server,
)
from .ports import assign_port, identity
from .reconcile import ReconcileResult, metadata_owner, parse_cidr
from .templates import create_owned_provision_server

logger = logging.getLogger(__name__)


def with_defaults(spec, cfg):
    """Spec with operator defaults filled in for unset fields."""
    spec = copy.deepcopy(dict(spec or {}))
    spec.setdefault("baremetalHosts", {})
    spec["baremetalHosts"] = spec["baremetalHosts"] or {}
    spec["osImage"] = spec.get("osImage") or cfg.os_image
    spec["osContainerImageUrl"] = spec.get("osContainerImageUrl") or cfg.os_container_image_url
    spec["apacheImageUrl"] = spec.get("apacheImageUrl") or cfg.apache_image_url
    spec["agentImageUrl"] = spec.get("agentImageUrl") or cfg.agent_image_url
    spec["bmhNamespace"] = spec.get("bmhNamespace") or cfg.bmh_namespace
    spec["automatedCleaningMode"] = spec.get("automatedCleaningMode") or crd.DEFAULT_CLEANING_MODE
    spec["cloudUserName"] = spec.get("cloudUserName") or crd.DEFAULT_CLOUD_USER
    return spec


def owned_provision_server_name(set_name):
    return f"{set_name}-provisionserver"


def _host_name(host):
    return host["metadata"]["name"]


def _host_labels(host):
    return host["metadata"].get("labels") or {}


class _Pass:
    """State of a single reconciliation pass over one OpenStackBaremetalSet."""

    def __init__(self, body, clients, cfg):
        self.clients = clients
        self.cfg = cfg
        self.meta = body["metadata"]
        self.name = self.meta["name"]
        self.namespace = self.meta["namespace"]
        self.owner = metadata_owner(self.meta)
        self.spec = with_defaults(body.get("spec"), cfg)
        self.bmh_namespace = self.spec["bmhNamespace"]
        self.status = copy.deepcopy(dict(body.get("status") or {}))
        self.records = copy.deepcopy(self.status.get("baremetalHosts") or {})
        self.conditions = Conditions.from_status(self.status)
        self.phase = self.status.get("phase") or crd.PHASE_INITIALIZING

    def finish(self, phase=None, requeue_after=None, error=None):
        if phase is not None:
            self.phase = phase
        self.conditions.update_ready()
        status = dict(self.status)
        status["phase"] = self.phase
        status["conditions"] = self.conditions.to_list()
        status["baremetalHosts"] = self.records
        if self.meta.get("generation") is not None:
            status["observedGeneration"] = self.meta["generation"]
        return ReconcileResult(status=status, requeue_after=requeue_after, error=error)

    #
    # Inputs
    #

    def _secret(self, kind, name):
        found = get_secret(self.clients.core, name, self.namespace) if name else None
        if found is None:
            raise SecretNotFoundError(kind, name or "<unset>", self.namespace, requeue_after=self.cfg.input_delay)
        return found

    def check_inputs(self):
        """Returns ``(authorized_keys, root_password)``."""
        ssh_data, ssh_hash = self._secret("deploymentSSHSecret", self.spec.get("deploymentSSHSecret"))
        digest = hashlib.sha256(ssh_hash.encode())

        root_password = None
        password_secret = (self.spec.get("passwordSecret") or {}).get("name")
        if password_secret:
            password_data, password_hash = self._secret("passwordSecret", password_secret)
            digest.update(password_hash.encode())
            if password_data.get("NodeRootPassword"):
                root_password = password_data["NodeRootPassword"].decode()

        for slot, slot_spec in sorted(self.spec["baremetalHosts"].items()):
            parse_cidr(slot, (slot_spec or {}).get("ctlPlaneIP"))

        mode = self.spec["automatedCleaningMode"]
        if mode not in crd.ALLOWED_CLEANING_MODES:
            raise InputError(
                f"automatedCleaningMode {mode!r} is not one of {crd.ALLOWED_CLEANING_MODES}",
                requeue_after=self.cfg.input_delay,
            )

        self.status.setdefault("hash", {})[crd.INPUT_HASH] = digest.hexdigest()
        return ssh_data.get("authorized_keys", b"").decode().rstrip("\n"), root_password

    #
    # Provision server
    #

    def _ensure_owned_provision_server(self):
        server_name = owned_provision_server_name(self.name)
        custom = self.clients.custom
        existing = get_provision_server(custom, self.namespace, server_name)

        if existing is None:
            ports, created = list_provision_server_ports(custom)
            port = assign_port(
                identity(self.namespace, server_name),
                ports,
                self.cfg.port_start,
                self.cfg.port_end,
                created,
            )
            body = create_owned_provision_server(server_name, self.namespace, self.spec, port, self.owner)
            logger.info(f"Creating OpenStackProvisionServer {server_name} on port {port} for {self.name}")
            return create_provision_server(custom, body)

        desired = create_owned_provision_server(
            server_name, self.namespace, self.spec, existing["spec"].get("port"), self.owner
        )
        if any(existing["spec"].get(k) != v for k, v in desired["spec"].items() if k != "port"):
            updated = copy.deepcopy(existing)
            updated["spec"].update({k: v for k, v in desired["spec"].items() if k != "port"})
            logger.info(f"Updating OpenStackProvisionServer {server_name} for {self.name}")
            return replace_provision_server(custom, updated)
        return existing

    def provision_server(self):
        server_name = self.spec.get("provisionServerName")
        if not server_name:
            return self._ensure_owned_provision_server()

        server = get_provision_server(self.clients.custom, self.namespace, server_name)
        if server is None:
            raise DependencyNotReadyError(
                f"OpenStackProvisionServer {server_name} not found in namespace {self.namespace}",
                requeue_after=self.cfg.provserver_missing_delay,
            )
        return server

    #
    # Hosts
    #

    def check_consistency(self, hosts_by_name):
        seen = {}
        for slot, record in sorted(self.records.items()):
            ref = record.get("bmhRef")
            if ref not in hosts_by_name:
                raise ConsistencyError(
                    f"BaremetalHost {ref} recorded for {slot} not found in namespace {self.bmh_namespace}"
                )
            if ref in seen:
                raise ConsistencyError(f"BaremetalHost {ref} is recorded for both {seen[ref]} and {slot}")
            seen[ref] = slot

        # Hosts of slots being removed are released whatever state they are in
        desired = self.spec["baremetalHosts"]
        slot_key = crd.hostname_label_key(self.name)
        mine = set_owner(self.owner)

        for slot, record in sorted(self.records.items()):
            if slot not in desired:
                continue
            host = hosts_by_name[record["bmhRef"]]
            if _host_labels(host).get(slot_key) != slot:
                raise ConsistencyError(
                    f"BaremetalHost {record['bmhRef']} recorded for {slot} no longer carries the "
                    f"{slot_key}={slot} label"
                )

        for host in self.owned_hosts(hosts_by_name.values()):
            if _host_labels(host).get(slot_key) not in desired:
                continue
            state = claim_state(host)
            if state != UNCLAIMED and state != mine:
                raise ConsistencyError(
                    f"BaremetalHost {_host_name(host)} held by {self.name} is claimed by "
                    f"{state.kind} {state.namespace}/{state.name}"
                )

    def owned_hosts(self, hosts):
        labels = crd.owner_labels(crd.SERVICE_NAME, self.name, self.namespace, self.owner["uid"])
        return [h for h in hosts if is_subset(_host_labels(h), labels)]

    def scale_down(self, owned):
        desired = self.spec["baremetalHosts"]
        slot_key = crd.hostname_label_key(self.name)

        for host in owned:
            slot = _host_labels(host).get(slot_key)
            if slot is None:
                logger.warning(f"BaremetalHost {_host_name(host)} carries {self.name} labels but no slot label")
                continue
            if slot not in desired:
                deprovision_host(self.clients, self.bmh_namespace, self.owner, slot, _host_name(host))
                self.records.pop(slot, None)

        for slot in sorted(self.records):
            if slot not in desired:
                deprovision_host(self.clients, self.bmh_namespace, self.owner, slot, self.records[slot].get("bmhRef"))
                del self.records[slot]

    def allocate(self, hosts, owned):
        """Hosts for every desired slot: recorded, already labelled, or newly found."""
        desired = self.spec["baremetalHosts"]
        slot_key = crd.hostname_label_key(self.name)

        hosts_for_slots = {slot: record["bmhRef"] for slot, record in self.records.items()}
        for host in owned:
            slot = _host_labels(host).get(slot_key)
            if slot in desired:
                hosts_for_slots.setdefault(slot, _host_name(host))

        new_slots = {
            slot: (desired[slot] or {}).get("bmhLabelSelector") or None
            for slot in sorted(desired)
            if slot not in hosts_for_slots
        }
        if not new_slots:
            return hosts_for_slots

        self.phase = crd.PHASE_ALLOCATING
        selector = self.spec.get("bmhLabelSelector") or None
        candidates = [h for h in hosts if is_subset(_host_labels(h), selector)]
        in_use = len(set(hosts_for_slots.values()))
        assignment = verify_scale_up(
            self.name,
            self.bmh_namespace,
            new_slots,
            candidates,
            HardwareRequirement.from_spec(self.spec.get("hardwareReqs")),
            in_use,
            selector,
        )
        hosts_for_slots.update(assignment)
        return hosts_for_slots

    def provision(self, hosts_for_slots, server, authorized_keys, root_password):
        self.phase = crd.PHASE_PROVISIONING
        image = host_image(server)
        for slot in sorted(self.spec["baremetalHosts"]):
            slot_spec = self.spec["baremetalHosts"][slot] or {}
            host_name = hosts_for_slots[slot]
            user_data, network_data = ensure_cloudinit_secrets(
                self.clients.core,
                self.owner,
                self.spec,
                slot,
                self.bmh_namespace,
                authorized_keys,
                root_password,
            )
            host = provision_host(
                self.clients.custom,
                self.bmh_namespace,
                host_name,
                self.owner,
                slot,
                image,
                user_data,
                network_data,
                self.spec["automatedCleaningMode"],
            )

            record = self.records.get(slot) or {"hostname": slot, "bmhRef": host_name, "ipAddresses": {}}
            record.setdefault("ipAddresses", {})["ctlplane"] = slot_spec["ctlPlaneIP"]
            record["userDataSecretName"] = user_data["name"]
            record["networkDataSecretName"] = network_data["name"]
            record["provisioningState"] = provisioning_state(host)
            record["annotatedForDeletion"] = crd.HOST_REMOVAL_ANNOTATION in (host["metadata"].get("annotations") or {})
            self.records[slot] = record


def reconcile_baremetalset(body, clients=None, cfg=None):
    """Reconcile one OpenStackBaremetalSet; returns a ReconcileResult."""
    clients = clients or get_clients()
    cfg = cfg or get_config()
    run = _Pass(body, clients, cfg)
    conditions = run.conditions

    conditions.init(
        unknown_condition(crd.INPUT_READY_CONDITION, crd.REASON_INIT, crd.INPUT_READY_INIT_MESSAGE),
        unknown_condition(crd.BMSET_PROVSERVER_READY_CONDITION, crd.REASON_INIT, crd.BMSET_PROVSERVER_READY_INIT_MESSAGE),
        unknown_condition(
            crd.BMSET_BMH_PROVISIONING_READY_CONDITION, crd.REASON_INIT, crd.BMSET_BMH_PROVISIONING_READY_INIT_MESSAGE
        ),
    )
    logger.info(f"Reconciling OpenStackBaremetalSet {run.name} in namespace {run.namespace}")

    try:
        # Inputs
        try:
            authorized_keys, root_password = run.check_inputs()
        except SecretNotFoundError as e:
            logger.info(f"Waiting on input for {run.name}: {e}")
            conditions.mark_false(
                crd.INPUT_READY_CONDITION, crd.REASON_REQUESTED, crd.SEVERITY_INFO, crd.INPUT_READY_WAITING_MESSAGE
            )
            return run.finish(crd.PHASE_WAITING_ON_INPUTS, cfg.input_delay, e)
        except InputError as e:
            logger.warning(f"Invalid input for {run.name}: {e}")
            conditions.mark_false(
                crd.INPUT_READY_CONDITION, crd.REASON_ERROR, crd.SEVERITY_WARNING, crd.INPUT_READY_ERROR_MESSAGE, e
            )
            return run.finish(crd.PHASE_WAITING_ON_INPUTS, cfg.input_delay, e)
        conditions.mark_true(crd.INPUT_READY_CONDITION, crd.INPUT_READY_MESSAGE)

        # Provision server
        try:
            server = run.provision_server()
        except DependencyNotReadyError as e:
            logger.info(f"{run.name} waiting for provision server: {e}")
            conditions.mark_false(
                crd.BMSET_PROVSERVER_READY_CONDITION,
                crd.REASON_REQUESTED,
                crd.SEVERITY_INFO,
                crd.BMSET_PROVSERVER_READY_WAITING_MESSAGE,
            )
            return run.finish(crd.PHASE_WAITING_ON_DEPENDENCY, e.requeue_after, e)
        except PortRangeExhaustedError as e:
            logger.error(f"Cannot create provision server for {run.name}: {e}")
            conditions.mark_false(
                crd.BMSET_PROVSERVER_READY_CONDITION,
                crd.REASON_ERROR,
                crd.SEVERITY_WARNING,
                crd.BMSET_PROVSERVER_READY_ERROR_MESSAGE,
                e,
            )
            return run.finish(crd.PHASE_WAITING_ON_DEPENDENCY, cfg.error_delay, e)

        server_status = server.get("status") or {}
        if not server_status.get("localImageUrl") or not server_status.get("localImageChecksumUrl"):
            logger.info(f"Provision server {server['metadata']['name']} for {run.name} is not serving its image yet")
            conditions.mark_false(
                crd.BMSET_PROVSERVER_READY_CONDITION,
                crd.REASON_REQUESTED,
                crd.SEVERITY_INFO,
                crd.BMSET_PROVSERVER_READY_RUNNING_MESSAGE,
            )
            return run.finish(crd.PHASE_WAITING_ON_DEPENDENCY, cfg.provserver_image_delay)
        conditions.mark_true(crd.BMSET_PROVSERVER_READY_CONDITION, crd.BMSET_PROVSERVER_READY_MESSAGE)

        # Hosts
        try:
            hosts = list_baremetal_hosts(clients.custom, run.bmh_namespace)
            run.check_consistency({_host_name(h): h for h in hosts})
            owned = run.owned_hosts(hosts)
            run.scale_down(owned)
            hosts_for_slots = run.allocate(hosts, owned)
            run.provision(hosts_for_slots, server, authorized_keys, root_password)
        except ConsistencyError as e:
            logger.error(f"OpenStackBaremetalSet {run.name} is inconsistent with its BaremetalHosts: {e}")
            conditions.mark_false(
                crd.BMSET_BMH_PROVISIONING_READY_CONDITION,
                crd.REASON_ERROR,
                crd.SEVERITY_ERROR,
                crd.BMSET_BMH_PROVISIONING_READY_ERROR_MESSAGE,
                e,
            )
            return run.finish(error=e)
        except AllocationError as e:
            logger.warning(f"Allocation for {run.name} failed: {e}")
            conditions.mark_false(
                crd.BMSET_BMH_PROVISIONING_READY_CONDITION,
                crd.REASON_ERROR,
                crd.SEVERITY_WARNING,
                crd.BMSET_BMH_PROVISIONING_READY_ERROR_MESSAGE,
                e,
            )
            return run.finish(crd.PHASE_ALLOCATING, cfg.provisioning_delay, e)

        pending = sorted(
            slot for slot, record in run.records.items() if record.get("provisioningState") != crd.BMH_STATE_PROVISIONED
        )
        if pending:
            logger.info(f"OpenStackBaremetalSet {run.name} waiting on provisioning of {', '.join(pending)}")
            conditions.mark_false(
                crd.BMSET_BMH_PROVISIONING_READY_CONDITION,
                crd.REASON_REQUESTED,
                crd.SEVERITY_INFO,
                crd.BMSET_BMH_PROVISIONING_READY_RUNNING_MESSAGE,
            )
            return run.finish(crd.PHASE_PROVISIONING, cfg.provisioning_delay)

        conditions.mark_true(crd.BMSET_BMH_PROVISIONING_READY_CONDITION, crd.BMSET_BMH_PROVISIONING_READY_MESSAGE)
        logger.info(f"OpenStackBaremetalSet {run.name} is ready with {len(run.records)} hosts")
        return run.finish(crd.PHASE_READY)

    except ConflictError as e:
        logger.info(f"Conflict while reconciling {run.name}, retrying: {e}")
        return run.finish(requeue_after=cfg.conflict_delay, error=e)


def reconcile_baremetalset_delete(body, clients=None, cfg=None):
    """Release every host held by a deleted OpenStackBaremetalSet.

    Errors propagate so the deletion is retried and the finalizer stays.
    """
    clients = clients or get_clients()
    cfg = cfg or get_config()
    run = _Pass(body, clients, cfg)
    run.phase = crd.PHASE_DELETING
    logger.info(f"Deleting OpenStackBaremetalSet {run.name}, releasing {len(run.records)} recorded hosts")

    for slot in sorted(run.records):
        deprovision_host(clients, run.bmh_namespace, run.owner, slot, run.records[slot].get("bmhRef"))
        del run.records[slot]

    slot_key = crd.hostname_label_key(run.name)
    for host in run.owned_hosts(list_baremetal_hosts(clients.custom, run.bmh_namespace)):
        slot = _host_labels(host).get(slot_key)
        if slot is not None:
            deprovision_host(clients, run.bmh_namespace, run.owner, slot, _host_name(host))

    return run.finish()
