"""Kubernetes client helpers."""

import base64
import hashlib
import json
import logging
from collections import namedtuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from . import crd
from .errors import ConflictError

logger = logging.getLogger(__name__)

Clients = namedtuple("Clients", ["core", "custom", "apps", "batch", "rbac"])

# Initialize clients
_clients = None


def load_kube_config():
    """Load in-cluster config, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")


def init_clients():
    """Initialize Kubernetes clients."""
    global _clients

    load_kube_config()
    _clients = Clients(
        core=client.CoreV1Api(),
        custom=client.CustomObjectsApi(),
        apps=client.AppsV1Api(),
        batch=client.BatchV1Api(),
        rbac=client.RbacAuthorizationV1Api(),
    )
    return _clients


def get_clients():
    """Get initialized Kubernetes clients."""
    if _clients is None:
        init_clients()
    return _clients


def _not_found(e):
    return isinstance(e, ApiException) and e.status == 404


def _raise_conflict(e, what):
    if e.status == 409:
        raise ConflictError(f"{what} was modified concurrently, retrying from a fresh read") from e
    raise e


def label_selector(labels):
    """Render a label map as a Kubernetes label selector string."""
    return ",".join(f"{k}={v}" for k, v in sorted((labels or {}).items()))


def object_hash(obj):
    """Stable SHA-256 of an API object or plain structure."""
    data = client.ApiClient().sanitize_for_serialization(obj)
    return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()


#
# BareMetalHosts
#


def list_baremetal_hosts(custom_api, namespace, labels=None):
    """List BareMetalHosts in a namespace, optionally filtered by labels."""
    kwargs = {}
    if labels:
        kwargs["label_selector"] = label_selector(labels)
    result = custom_api.list_namespaced_custom_object(
        crd.METAL3_GROUP, crd.METAL3_VERSION, namespace, crd.BMH_PLURAL, **kwargs
    )
    return result.get("items", [])


def get_baremetal_host(custom_api, namespace, name):
    """Get a BareMetalHost, or None if it does not exist."""
    try:
        return custom_api.get_namespaced_custom_object(
            crd.METAL3_GROUP, crd.METAL3_VERSION, namespace, crd.BMH_PLURAL, name
        )
    except ApiException as e:
        if _not_found(e):
            return None
        raise


def replace_baremetal_host(custom_api, host):
    """Write a BareMetalHost back; fails with ConflictError if it changed since read."""
    meta = host["metadata"]
    try:
        return custom_api.replace_namespaced_custom_object(
            crd.METAL3_GROUP, crd.METAL3_VERSION, meta["namespace"], crd.BMH_PLURAL, meta["name"], host
        )
    except ApiException as e:
        _raise_conflict(e, f"BareMetalHost {meta['name']}")


#
# Secrets
#


def _secret_hash(data):
    digest = hashlib.sha256()
    for key in sorted(data):
        digest.update(key.encode())
        digest.update(data[key])
    return digest.hexdigest()


def get_secret(v1, name, namespace):
    """Get secret data as bytes plus a hash of it, or None if missing."""
    try:
        secret = v1.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as e:
        if _not_found(e):
            return None
        logger.error(f"Error getting secret {name}: {e}")
        raise
    data = {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}
    return data, _secret_hash(data)


def ensure_secret(v1, name, namespace, data, labels=None, owner_refs=None):
    """Create or update a secret from ``key -> str|bytes``; returns its data hash."""
    raw = {k: v.encode() if isinstance(v, str) else v for k, v in data.items()}
    encoded = {k: base64.b64encode(v).decode() for k, v in raw.items()}
    body = client.V1Secret(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels, owner_references=owner_refs),
        type="Opaque",
        data=encoded,
    )
    try:
        existing = v1.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as e:
        if not _not_found(e):
            raise
        logger.info(f"Creating secret {name} in namespace {namespace}")
        v1.create_namespaced_secret(namespace=namespace, body=body)
        return _secret_hash(raw)

    if existing.data != encoded or (labels and existing.metadata.labels != labels):
        body.metadata.resource_version = existing.metadata.resource_version
        try:
            v1.replace_namespaced_secret(name=name, namespace=namespace, body=body)
        except ApiException as e:
            _raise_conflict(e, f"Secret {name}")
        logger.info(f"Updated secret {name} in namespace {namespace}")
    return _secret_hash(raw)


def delete_secret(v1, name, namespace):
    """Delete a secret; returns False if it was already gone."""
    try:
        v1.delete_namespaced_secret(name=name, namespace=namespace)
    except ApiException as e:
        if _not_found(e):
            return False
        raise
    logger.info(f"Deleted secret {name} in namespace {namespace}")
    return True


#
# OpenStackProvisionServers
#


def get_provision_server(custom_api, namespace, name):
    try:
        return custom_api.get_namespaced_custom_object(
            crd.GROUP, crd.VERSION, namespace, crd.PROVISIONSERVER_PLURAL, name
        )
    except ApiException as e:
        if _not_found(e):
            return None
        raise


def create_provision_server(custom_api, body):
    meta = body["metadata"]
    try:
        return custom_api.create_namespaced_custom_object(
            crd.GROUP, crd.VERSION, meta["namespace"], crd.PROVISIONSERVER_PLURAL, body
        )
    except ApiException as e:
        _raise_conflict(e, f"OpenStackProvisionServer {meta['name']}")


def replace_provision_server(custom_api, body):
    meta = body["metadata"]
    try:
        return custom_api.replace_namespaced_custom_object(
            crd.GROUP, crd.VERSION, meta["namespace"], crd.PROVISIONSERVER_PLURAL, meta["name"], body
        )
    except ApiException as e:
        _raise_conflict(e, f"OpenStackProvisionServer {meta['name']}")


def list_provision_server_ports(custom_api):
    """Ports held by every OpenStackProvisionServer in the cluster.

    Returns ``(ports, created)`` keyed by ``namespace/name``.
    """
    result = custom_api.list_cluster_custom_object(crd.GROUP, crd.VERSION, crd.PROVISIONSERVER_PLURAL)
    ports = {}
    created = {}
    for item in result.get("items", []):
        meta = item["metadata"]
        key = f"{meta['namespace']}/{meta['name']}"
        ports[key] = int((item.get("spec") or {}).get("port") or 0)
        created[key] = meta.get("creationTimestamp") or ""
    return ports, created


def get_provisioning_config(custom_api):
    """The cluster's Metal3 Provisioning resource, or None."""
    try:
        return custom_api.get_cluster_custom_object(
            crd.METAL3_GROUP, crd.METAL3_VERSION, crd.PROVISIONING_PLURAL, crd.PROVISIONING_NAME
        )
    except ApiException as e:
        if _not_found(e):
            return None
        raise


#
# Workloads
#


def ensure_config_map(v1, config_map):
    """Create or replace a ConfigMap."""
    name = config_map.metadata.name
    namespace = config_map.metadata.namespace
    try:
        existing = v1.read_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as e:
        if not _not_found(e):
            raise
        logger.info(f"Creating ConfigMap {name}")
        return v1.create_namespaced_config_map(namespace=namespace, body=config_map)

    if existing.data != config_map.data:
        config_map.metadata.resource_version = existing.metadata.resource_version
        try:
            existing = v1.replace_namespaced_config_map(name=name, namespace=namespace, body=config_map)
        except ApiException as e:
            _raise_conflict(e, f"ConfigMap {name}")
        logger.info(f"Updated ConfigMap {name}")
    return existing


def create_or_patch_deployment(apps_api, deployment):
    """Create a Deployment or patch it to match; returns the live object."""
    name = deployment.metadata.name
    namespace = deployment.metadata.namespace
    try:
        apps_api.read_namespaced_deployment(name=name, namespace=namespace)
    except ApiException as e:
        if not _not_found(e):
            logger.error(f"Error checking deployment: {e}")
            raise
        logger.info(f"Creating deployment {name}")
        return apps_api.create_namespaced_deployment(namespace=namespace, body=deployment)
    return apps_api.patch_namespaced_deployment(name=name, namespace=namespace, body=deployment)


def get_job(batch_api, name, namespace):
    try:
        return batch_api.read_namespaced_job(name=name, namespace=namespace)
    except ApiException as e:
        if _not_found(e):
            return None
        raise


def create_job(batch_api, job):
    logger.info(f"Creating job {job.metadata.name}")
    return batch_api.create_namespaced_job(namespace=job.metadata.namespace, body=job)


def delete_job(batch_api, name, namespace):
    try:
        batch_api.delete_namespaced_job(name=name, namespace=namespace, propagation_policy="Background")
    except ApiException as e:
        if not _not_found(e):
            raise


def list_pods(v1, namespace, labels):
    return v1.list_namespaced_pod(namespace=namespace, label_selector=label_selector(labels)).items


def ensure_service_account(v1, service_account):
    name = service_account.metadata.name
    namespace = service_account.metadata.namespace
    try:
        return v1.read_namespaced_service_account(name=name, namespace=namespace)
    except ApiException as e:
        if not _not_found(e):
            raise
    logger.info(f"Creating ServiceAccount {name}")
    return v1.create_namespaced_service_account(namespace=namespace, body=service_account)


def ensure_role(rbac_api, role):
    name = role.metadata.name
    namespace = role.metadata.namespace
    try:
        rbac_api.read_namespaced_role(name=name, namespace=namespace)
    except ApiException as e:
        if not _not_found(e):
            raise
        logger.info(f"Creating Role {name}")
        return rbac_api.create_namespaced_role(namespace=namespace, body=role)
    return rbac_api.patch_namespaced_role(name=name, namespace=namespace, body=role)


def ensure_role_binding(rbac_api, role_binding):
    name = role_binding.metadata.name
    namespace = role_binding.metadata.namespace
    try:
        rbac_api.read_namespaced_role_binding(name=name, namespace=namespace)
    except ApiException as e:
        if not _not_found(e):
            raise
        logger.info(f"Creating RoleBinding {name}")
        return rbac_api.create_namespaced_role_binding(namespace=namespace, body=role_binding)
    return rbac_api.patch_namespaced_role_binding(name=name, namespace=namespace, body=role_binding)
