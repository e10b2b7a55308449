"""In-memory stand-ins for the kubernetes API classes used by the operator."""

import base64
import copy
import itertools

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from baremetal_operator import crd
from baremetal_operator.config import OperatorConfig
from baremetal_operator.k8s import Clients

NAMESPACE = "openstack"
BMH_NAMESPACE = "openshift-machine-api"


def _not_found(what):
    return ApiException(status=404, reason=f"{what} not found")


def _conflict(what):
    return ApiException(status=409, reason=f"{what} conflict")


def _matches_selector(labels, selector):
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if (labels or {}).get(key) != value:
            return False
    return True


class FakeCustomObjectsApi:
    """Custom objects keyed by (plural, namespace, name), with resourceVersion checks."""

    def __init__(self):
        self.objects = {}
        self.writes = []
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

    def put(self, plural, obj):
        obj = copy.deepcopy(obj)
        meta = obj.setdefault("metadata", {})
        meta["resourceVersion"] = str(next(self._versions))
        meta.setdefault("uid", f"uid-{next(self._uids)}")
        meta.setdefault("creationTimestamp", f"2024-01-01T00:00:{len(self.objects):02d}Z")
        self.objects[(plural, meta.get("namespace"), meta["name"])] = obj
        return copy.deepcopy(obj)

    def peek(self, plural, namespace, name):
        return self.objects[(plural, namespace, name)]

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        try:
            return copy.deepcopy(self.objects[(plural, namespace, name)])
        except KeyError:
            raise _not_found(name)

    def get_cluster_custom_object(self, group, version, plural, name):
        return self.get_namespaced_custom_object(group, version, None, plural, name)

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=None):
        items = [
            copy.deepcopy(obj)
            for (p, ns, _), obj in sorted(self.objects.items(), key=lambda kv: kv[0][2])
            if p == plural and ns == namespace and _matches_selector(obj["metadata"].get("labels"), label_selector)
        ]
        return {"items": items}

    def list_cluster_custom_object(self, group, version, plural):
        return {"items": [copy.deepcopy(obj) for (p, _, _), obj in sorted(self.objects.items()) if p == plural]}

    def create_namespaced_custom_object(self, group, version, namespace, plural, body):
        if (plural, namespace, body["metadata"]["name"]) in self.objects:
            raise _conflict(body["metadata"]["name"])
        self.writes.append(("create", plural, body["metadata"]["name"]))
        return self.put(plural, body)

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        current = self.objects.get((plural, namespace, name))
        if current is None:
            raise _not_found(name)
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise _conflict(name)
        self.writes.append(("replace", plural, name))
        return self.put(plural, body)


class FakeCoreV1Api:
    def __init__(self):
        self.secrets = {}
        self.config_maps = {}
        self.service_accounts = {}
        self.pods = []
        self.deleted_secrets = []

    def add_secret(self, name, namespace, data):
        encoded = {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
        self.secrets[(namespace, name)] = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, resource_version="1"),
            data=encoded,
        )

    def secret_text(self, name, namespace, key):
        return base64.b64decode(self.secrets[(namespace, name)].data[key]).decode()

    def read_namespaced_secret(self, name, namespace):
        try:
            return copy.deepcopy(self.secrets[(namespace, name)])
        except KeyError:
            raise _not_found(name)

    def create_namespaced_secret(self, namespace, body):
        body = copy.deepcopy(body)
        body.metadata.resource_version = "1"
        self.secrets[(namespace, body.metadata.name)] = body
        return body

    def replace_namespaced_secret(self, name, namespace, body):
        if (namespace, name) not in self.secrets:
            raise _not_found(name)
        self.secrets[(namespace, name)] = copy.deepcopy(body)
        return body

    def delete_namespaced_secret(self, name, namespace):
        if self.secrets.pop((namespace, name), None) is None:
            raise _not_found(name)
        self.deleted_secrets.append(name)

    def read_namespaced_config_map(self, name, namespace):
        try:
            return copy.deepcopy(self.config_maps[(namespace, name)])
        except KeyError:
            raise _not_found(name)

    def create_namespaced_config_map(self, namespace, body):
        self.config_maps[(namespace, body.metadata.name)] = copy.deepcopy(body)
        return body

    def replace_namespaced_config_map(self, name, namespace, body):
        self.config_maps[(namespace, name)] = copy.deepcopy(body)
        return body

    def read_namespaced_service_account(self, name, namespace):
        try:
            return self.service_accounts[(namespace, name)]
        except KeyError:
            raise _not_found(name)

    def create_namespaced_service_account(self, namespace, body):
        self.service_accounts[(namespace, body.metadata.name)] = body
        return body

    def list_namespaced_pod(self, namespace, label_selector=None):
        return client.V1PodList(
            items=[
                p
                for p in self.pods
                if p.metadata.namespace == namespace and _matches_selector(p.metadata.labels, label_selector)
            ]
        )


class FakeAppsV1Api:
    def __init__(self):
        self.deployments = {}
        self.ready_replicas = 0

    def _live(self, deployment):
        deployment = copy.deepcopy(deployment)
        deployment.status = client.V1DeploymentStatus(ready_replicas=self.ready_replicas)
        return deployment

    def read_namespaced_deployment(self, name, namespace):
        try:
            return self._live(self.deployments[(namespace, name)])
        except KeyError:
            raise _not_found(name)

    def create_namespaced_deployment(self, namespace, body):
        self.deployments[(namespace, body.metadata.name)] = copy.deepcopy(body)
        return self._live(body)

    def patch_namespaced_deployment(self, name, namespace, body):
        self.deployments[(namespace, name)] = copy.deepcopy(body)
        return self._live(body)


class FakeBatchV1Api:
    def __init__(self):
        self.jobs = {}
        self.deleted = []

    def read_namespaced_job(self, name, namespace):
        try:
            return copy.deepcopy(self.jobs[(namespace, name)])
        except KeyError:
            raise _not_found(name)

    def create_namespaced_job(self, namespace, body):
        self.jobs[(namespace, body.metadata.name)] = copy.deepcopy(body)
        return body

    def delete_namespaced_job(self, name, namespace, propagation_policy=None):
        if self.jobs.pop((namespace, name), None) is None:
            raise _not_found(name)
        self.deleted.append(name)


class FakeRbacAuthorizationV1Api:
    def __init__(self):
        self.roles = {}
        self.role_bindings = {}

    def read_namespaced_role(self, name, namespace):
        try:
            return self.roles[(namespace, name)]
        except KeyError:
            raise _not_found(name)

    def create_namespaced_role(self, namespace, body):
        self.roles[(namespace, body.metadata.name)] = body
        return body

    def patch_namespaced_role(self, name, namespace, body):
        self.roles[(namespace, name)] = body
        return body

    def read_namespaced_role_binding(self, name, namespace):
        try:
            return self.role_bindings[(namespace, name)]
        except KeyError:
            raise _not_found(name)

    def create_namespaced_role_binding(self, namespace, body):
        self.role_bindings[(namespace, body.metadata.name)] = body
        return body

    def patch_namespaced_role_binding(self, name, namespace, body):
        self.role_bindings[(namespace, name)] = body
        return body


@pytest.fixture
def clients():
    return Clients(
        core=FakeCoreV1Api(),
        custom=FakeCustomObjectsApi(),
        apps=FakeAppsV1Api(),
        batch=FakeBatchV1Api(),
        rbac=FakeRbacAuthorizationV1Api(),
    )


@pytest.fixture
def cfg():
    return OperatorConfig()


def make_host(name, state=crd.BMH_STATE_AVAILABLE, labels=None, hardware=None, online=False, consumer_ref=None):
    host = {
        "apiVersion": f"{crd.METAL3_GROUP}/{crd.METAL3_VERSION}",
        "kind": crd.BMH_KIND,
        "metadata": {"name": name, "namespace": BMH_NAMESPACE, "labels": dict(labels or {})},
        "spec": {"online": online},
        "status": {"provisioning": {"state": state}},
    }
    if hardware is not None:
        host["status"]["hardware"] = hardware
    if consumer_ref is not None:
        host["spec"]["consumerRef"] = consumer_ref
    return host


def make_baremetalset(name="compute", slots=None, **spec):
    body = {
        "apiVersion": crd.API_VERSION,
        "kind": crd.BAREMETALSET_KIND,
        "metadata": {"name": name, "namespace": NAMESPACE, "uid": f"{name}-uid", "generation": 1},
        "spec": {
            "baremetalHosts": slots if slots is not None else {"compute-0": {"ctlPlaneIP": "192.168.122.10/24"}},
            "deploymentSSHSecret": "ssh-keys",
            "ctlplaneInterface": "eth0",
            "ctlplaneGateway": "192.168.122.1",
        },
        "status": {},
    }
    body["spec"].update(spec)
    return body


def make_provision_server(name="prov", port=6190, serving=True, **spec):
    server = {
        "apiVersion": crd.API_VERSION,
        "kind": crd.PROVISIONSERVER_KIND,
        "metadata": {"name": name, "namespace": NAMESPACE, "uid": f"{name}-uid", "generation": 1},
        "spec": {"port": port, "osImage": "edpm-hardened-uefi.qcow2", **spec},
        "status": {},
    }
    if serving:
        server["status"] = {
            "localImageUrl": f"http://10.0.0.5:{port}/edpm-hardened-uefi.qcow2",
            "localImageChecksumUrl": f"http://10.0.0.5:{port}/edpm-hardened-uefi.qcow2.sha256sum",
            "osImageChecksumType": "sha256",
        }
    return server


def condition(status, type_):
    for cond in status.get("conditions", []):
        if cond["type"] == type_:
            return cond
    return None
