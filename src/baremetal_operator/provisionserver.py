"""OpenStackProvisionServer reconciliation."""

import copy
import ipaddress
import logging

from kubernetes.client.rest import ApiException

from . import crd
from .conditions import Conditions, unknown_condition
from .config import get_config
from .errors import BaremetalOperatorError, ConflictError, PortRangeExhaustedError, ProvisioningAgentError
from .k8s import (
    create_job,
    create_or_patch_deployment,
    delete_job,
    ensure_config_map,
    ensure_role,
    ensure_role_binding,
    ensure_service_account,
    get_clients,
    get_job,
    get_provision_server,
    get_provisioning_config,
    list_pods,
    list_provision_server_ports,
    object_hash,
    replace_provision_server,
)
from .ports import assign_port, identity
from .reconcile import ReconcileResult
from .templates import (
    checksum_job_name,
    create_checksum_job_manifest,
    create_deployment_manifest,
    create_httpd_config_map,
    create_rbac_manifests,
    owner_reference,
    provision_server_labels,
)

logger = logging.getLogger(__name__)

JOB_HASH_ANNOTATION = f"{crd.GROUP}/job-hash"

# Status fields owned by the discovery agents; the operator only reads them
AGENT_STATUS_FIELDS = ("provisionIp", "provisionIpError", "osImageChecksumFilename", "osImageChecksumType")


def with_defaults(spec, cfg):
    spec = copy.deepcopy(dict(spec or {}))
    spec["osImage"] = spec.get("osImage") or cfg.os_image
    spec["osImageDir"] = spec.get("osImageDir") or crd.DEFAULT_OS_IMAGE_DIR
    spec["osContainerImageUrl"] = spec.get("osContainerImageUrl") or cfg.os_container_image_url
    spec["apacheImageUrl"] = spec.get("apacheImageUrl") or cfg.apache_image_url
    spec["agentImageUrl"] = spec.get("agentImageUrl") or cfg.agent_image_url
    return spec


def url_host(ip):
    """Host part of a URL for ``ip``, bracketing IPv6 addresses."""
    try:
        if ipaddress.ip_address(ip).version == 6:
            return f"[{ip}]"
    except ValueError:
        pass
    return ip


def local_image_url(ip, port, path):
    return f"http://{url_host(ip)}:{port}/{path}"


def provisioning_interface(custom_api, spec):
    """Interface to discover the provisioning IP on, or None to use the pod's host IP."""
    if spec.get("interface"):
        return spec["interface"]
    provisioning = get_provisioning_config(custom_api)
    if provisioning is None:
        return None
    prov_spec = provisioning.get("spec") or {}
    if prov_spec.get("provisioningNetwork") == crd.PROVISIONING_NETWORK_MANAGED:
        return prov_spec.get("provisioningInterface") or None
    return None


def ensure_port(custom_api, name, namespace, spec, cfg):
    """Make sure the server holds a port no older server holds; returns it."""
    ports, created = list_provision_server_ports(custom_api)
    ident = identity(namespace, name)
    ports[ident] = int(spec.get("port") or 0)
    port = assign_port(ident, ports, cfg.port_start, cfg.port_end, created)
    if port == ports[ident]:
        return port

    current = get_provision_server(custom_api, namespace, name)
    if current is None:
        raise ConflictError(f"OpenStackProvisionServer {ident} disappeared while assigning its port")
    current = copy.deepcopy(current)
    current.setdefault("spec", {})["port"] = port
    replace_provision_server(custom_api, current)
    logger.info(f"OpenStackProvisionServer {ident} now uses port {port}")
    return port


def _job_failed(job):
    for cond in (job.status.conditions if job.status else None) or []:
        if cond.type == "Failed" and cond.status == "True":
            return cond.message or cond.reason or "job failed"
    return None


def _pod_host_ip(pods):
    for pod in pods:
        if pod.status and pod.status.host_ip:
            return pod.status.host_ip
    return None


def reconcile_provisionserver(body, clients=None, cfg=None):
    """Reconcile one OpenStackProvisionServer; returns a ReconcileResult."""
    clients = clients or get_clients()
    cfg = cfg or get_config()

    meta = body["metadata"]
    name = meta["name"]
    namespace = meta["namespace"]
    uid = meta.get("uid", "")
    spec = with_defaults(body.get("spec"), cfg)
    status = copy.deepcopy(dict(body.get("status") or {}))
    hashes = status.setdefault("hash", {})
    conditions = Conditions.from_status(status)

    def finish(requeue_after=None, error=None):
        conditions.update_ready()
        status["conditions"] = conditions.to_list()
        if meta.get("generation") is not None:
            status["observedGeneration"] = meta["generation"]
        return ReconcileResult(status=status, requeue_after=requeue_after, error=error)

    conditions.init(
        unknown_condition(crd.SERVICE_CONFIG_READY_CONDITION, crd.REASON_INIT, crd.SERVICE_CONFIG_READY_INIT_MESSAGE),
        unknown_condition(crd.SERVICE_ACCOUNT_READY_CONDITION, crd.REASON_INIT, crd.SERVICE_ACCOUNT_READY_INIT_MESSAGE),
        unknown_condition(crd.ROLE_READY_CONDITION, crd.REASON_INIT, crd.ROLE_READY_INIT_MESSAGE),
        unknown_condition(crd.ROLE_BINDING_READY_CONDITION, crd.REASON_INIT, crd.ROLE_BINDING_READY_INIT_MESSAGE),
        unknown_condition(crd.DEPLOYMENT_READY_CONDITION, crd.REASON_INIT, crd.DEPLOYMENT_READY_INIT_MESSAGE),
        unknown_condition(
            crd.PROVSERVER_LOCAL_IMAGE_URL_READY_CONDITION,
            crd.REASON_INIT,
            crd.PROVSERVER_LOCAL_IMAGE_URL_READY_INIT_MESSAGE,
        ),
        unknown_condition(
            crd.PROVSERVER_CHECKSUM_READY_CONDITION, crd.REASON_INIT, crd.PROVSERVER_CHECKSUM_READY_INIT_MESSAGE
        ),
    )
    logger.info(f"Reconciling OpenStackProvisionServer {name} in namespace {namespace}")

    labels = provision_server_labels(name, namespace, uid)
    owner_refs = [owner_reference(crd.API_VERSION, crd.PROVISIONSERVER_KIND, name, uid)]

    try:
        # Port
        try:
            spec["port"] = ensure_port(clients.custom, name, namespace, spec, cfg)
        except PortRangeExhaustedError as e:
            logger.error(f"OpenStackProvisionServer {name}: {e}")
            conditions.mark_false(
                crd.DEPLOYMENT_READY_CONDITION, crd.REASON_ERROR, crd.SEVERITY_WARNING, crd.DEPLOYMENT_READY_ERROR_MESSAGE, e
            )
            return finish(cfg.error_delay, e)

        # RBAC for the agents
        service_account, role, role_binding = create_rbac_manifests(name, namespace, labels, owner_refs)
        try:
            ensure_service_account(clients.core, service_account)
            conditions.mark_true(crd.SERVICE_ACCOUNT_READY_CONDITION, crd.SERVICE_ACCOUNT_READY_MESSAGE)
            ensure_role(clients.rbac, role)
            conditions.mark_true(crd.ROLE_READY_CONDITION, crd.ROLE_READY_MESSAGE)
            ensure_role_binding(clients.rbac, role_binding)
            conditions.mark_true(crd.ROLE_BINDING_READY_CONDITION, crd.ROLE_BINDING_READY_MESSAGE)
        except ApiException as e:
            logger.error(f"Error creating RBAC for OpenStackProvisionServer {name}: {e}")
            for type_ in (crd.SERVICE_ACCOUNT_READY_CONDITION, crd.ROLE_READY_CONDITION, crd.ROLE_BINDING_READY_CONDITION):
                if not conditions.is_true(type_):
                    conditions.mark_false(type_, crd.REASON_ERROR, crd.SEVERITY_WARNING, crd.RBAC_ERROR_MESSAGE, e.reason)
            return finish(cfg.error_delay, BaremetalOperatorError(f"RBAC create failed: {e.reason}"))

        # Service config
        config_map = create_httpd_config_map(name, namespace, spec["port"], spec["osImageDir"], labels, owner_refs)
        try:
            ensure_config_map(clients.core, config_map)
        except ApiException as e:
            logger.error(f"Error creating httpd config for OpenStackProvisionServer {name}: {e}")
            conditions.mark_false(
                crd.SERVICE_CONFIG_READY_CONDITION,
                crd.REASON_ERROR,
                crd.SEVERITY_WARNING,
                crd.SERVICE_CONFIG_READY_ERROR_MESSAGE,
                e.reason,
            )
            return finish(cfg.error_delay, BaremetalOperatorError(f"httpd config create failed: {e.reason}"))
        hashes[crd.INPUT_HASH] = object_hash(config_map.data)
        conditions.mark_true(crd.SERVICE_CONFIG_READY_CONDITION, crd.SERVICE_CONFIG_READY_MESSAGE)

        # Provisioning interface
        prov_intf = provisioning_interface(clients.custom, spec)
        if prov_intf:
            if crd.PROVSERVER_PROV_INTF_READY_CONDITION not in conditions:
                conditions.mark_unknown(
                    crd.PROVSERVER_PROV_INTF_READY_CONDITION,
                    crd.REASON_INIT,
                    crd.PROVSERVER_PROV_INTF_READY_INIT_MESSAGE,
                )
        else:
            conditions.remove(crd.PROVSERVER_PROV_INTF_READY_CONDITION)

        # Deployment
        deployment = create_deployment_manifest(
            name, namespace, spec, hashes[crd.INPUT_HASH], labels, prov_intf, owner_refs
        )
        live = create_or_patch_deployment(clients.apps, deployment)
        ready = (live.status.ready_replicas if live.status else None) or 0
        status["readyCount"] = ready
        if ready == 0:
            conditions.mark_false(
                crd.DEPLOYMENT_READY_CONDITION, crd.REASON_REQUESTED, crd.SEVERITY_INFO, crd.DEPLOYMENT_READY_RUNNING_MESSAGE
            )
            return finish(cfg.deployment_delay)
        conditions.mark_true(crd.DEPLOYMENT_READY_CONDITION, crd.DEPLOYMENT_READY_MESSAGE)

        # Provisioning IP
        if prov_intf:
            if status.get("provisionIpError"):
                e = ProvisioningAgentError(status["provisionIpError"])
                logger.error(f"OpenStackProvisionServer {name}: {e}")
                conditions.mark_false(
                    crd.PROVSERVER_PROV_INTF_READY_CONDITION,
                    crd.REASON_ERROR,
                    crd.SEVERITY_WARNING,
                    crd.PROVSERVER_PROV_INTF_READY_ERROR_MESSAGE,
                    e.detail,
                )
                return finish(cfg.error_delay, e)
            if not status.get("provisionIp"):
                conditions.mark_false(
                    crd.PROVSERVER_PROV_INTF_READY_CONDITION,
                    crd.REASON_REQUESTED,
                    crd.SEVERITY_INFO,
                    crd.PROVSERVER_PROV_INTF_READY_RUNNING_MESSAGE,
                )
                return finish(cfg.deployment_delay)
            conditions.mark_true(crd.PROVSERVER_PROV_INTF_READY_CONDITION, crd.PROVSERVER_PROV_INTF_READY_MESSAGE)
            ip = status["provisionIp"]
        else:
            ip = _pod_host_ip(list_pods(clients.core, namespace, labels))

        if not ip:
            conditions.mark_false(
                crd.PROVSERVER_LOCAL_IMAGE_URL_READY_CONDITION,
                crd.REASON_REQUESTED,
                crd.SEVERITY_INFO,
                crd.PROVSERVER_LOCAL_IMAGE_URL_READY_RUNNING_MESSAGE,
            )
            return finish(cfg.deployment_delay)
        status["localImageUrl"] = local_image_url(ip, spec["port"], spec["osImage"])
        conditions.mark_true(crd.PROVSERVER_LOCAL_IMAGE_URL_READY_CONDITION, crd.PROVSERVER_LOCAL_IMAGE_URL_READY_MESSAGE)

        # Checksum discovery
        job = create_checksum_job_manifest(name, namespace, spec, labels, owner_refs)
        job_hash = object_hash(job)
        if hashes.get(crd.CHECKSUM_HASH) != job_hash:
            job.metadata.annotations = {JOB_HASH_ANNOTATION: job_hash}
            job_name = checksum_job_name(name)
            existing = get_job(clients.batch, job_name, namespace)
            if existing is not None and (existing.metadata.annotations or {}).get(JOB_HASH_ANNOTATION) != job_hash:
                logger.info(f"Checksum job {job_name} is out of date, replacing it")
                delete_job(clients.batch, job_name, namespace)
                existing = None
            elif existing is None:
                create_job(clients.batch, job)

            failure = _job_failed(existing) if existing is not None else None
            if failure:
                e = BaremetalOperatorError(f"checksum job {job_name} failed: {failure}")
                conditions.mark_false(
                    crd.PROVSERVER_CHECKSUM_READY_CONDITION,
                    crd.REASON_ERROR,
                    crd.SEVERITY_WARNING,
                    crd.PROVSERVER_CHECKSUM_READY_ERROR_MESSAGE,
                    failure,
                )
                return finish(cfg.error_delay, e)
            if existing is None or not (existing.status and existing.status.succeeded):
                conditions.mark_false(
                    crd.PROVSERVER_CHECKSUM_READY_CONDITION,
                    crd.REASON_REQUESTED,
                    crd.SEVERITY_INFO,
                    crd.PROVSERVER_CHECKSUM_READY_RUNNING_MESSAGE,
                )
                return finish(cfg.checksum_delay)

            hashes[crd.CHECKSUM_HASH] = job_hash
            if not spec.get("preserveJobs"):
                delete_job(clients.batch, job_name, namespace)

        filename = status.get("osImageChecksumFilename")
        if not filename:
            conditions.mark_false(
                crd.PROVSERVER_CHECKSUM_READY_CONDITION,
                crd.REASON_REQUESTED,
                crd.SEVERITY_INFO,
                crd.PROVSERVER_CHECKSUM_READY_RUNNING_MESSAGE,
            )
            return finish(cfg.checksum_delay)
        status["localImageChecksumUrl"] = local_image_url(ip, spec["port"], filename)
        conditions.mark_true(crd.PROVSERVER_CHECKSUM_READY_CONDITION, crd.PROVSERVER_CHECKSUM_READY_MESSAGE)

        logger.info(f"OpenStackProvisionServer {name} is serving {status['localImageUrl']}")
        return finish()

    except ConflictError as e:
        logger.info(f"Conflict while reconciling OpenStackProvisionServer {name}, retrying: {e}")
        return finish(cfg.conflict_delay, e)
