"""Kubernetes resource templates and cloud-init rendering."""

import ipaddress
import re

import yaml
from kubernetes import client

from . import crd

HTTPD_COMMAND = f"cp -f {crd.HTTPD_CONF_PATH} /etc/httpd/conf/httpd.conf && /usr/bin/run-httpd"
AGENT_BINARY = "/openstack-baremetal-agent"

_FQDN_RE = re.compile(r"^([a-zA-Z0-9-]+\.)*[a-zA-Z0-9-]+\.[a-zA-Z]{2,}$")


def owner_reference(api_version, kind, name, uid, controller=True):
    """Owner reference for objects that should be garbage collected with their owner."""
    return client.V1OwnerReference(
        api_version=api_version,
        kind=kind,
        name=name,
        uid=uid,
        controller=controller,
        block_owner_deletion=True,
    )


def deployment_name(server_name):
    return f"{server_name}-openstackprovisionserver"


def checksum_job_name(server_name):
    return f"{server_name}-checksum-discovery"


def httpd_config_map_name(server_name):
    return f"{server_name}-httpd-config"


def rbac_name(server_name):
    return f"{server_name}-{crd.DEFAULT_PROVSERVER_SERVICE_ACCOUNT}"


def provision_server_labels(name, namespace, uid):
    labels = crd.owner_labels(crd.PROVSERVER_APP_LABEL, name, namespace, uid)
    labels["app"] = crd.PROVSERVER_APP_LABEL
    labels[crd.APP_SELECTOR] = name
    return labels


#
# OpenStackProvisionServer workloads
#


def create_httpd_config_map(name, namespace, port, os_image_dir, labels=None, owner_refs=None):
    """Apache config serving the OS image directory on the assigned port."""
    conf = "\n".join(
        [
            "ServerRoot /etc/httpd",
            f"Listen {port}",
            "Include conf.modules.d/*.conf",
            "User apache",
            "Group apache",
            f'DocumentRoot "{os_image_dir}"',
            f'<Directory "{os_image_dir}">',
            "    Options Indexes FollowSymLinks",
            "    AllowOverride None",
            "    Require all granted",
            "</Directory>",
            'ErrorLog "/dev/stderr"',
            "LogLevel warn",
            "TypesConfig /etc/mime.types",
            "",
        ]
    )
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=httpd_config_map_name(name),
            namespace=namespace,
            labels=labels,
            owner_references=owner_refs,
        ),
        data={"httpd.conf": conf},
    )


def _init_volume_mounts(os_image_dir):
    return [client.V1VolumeMount(name="image-data", mount_path=os_image_dir)]


def _init_container(os_container_image_url, os_image_dir):
    return client.V1Container(
        name="init",
        image=os_container_image_url,
        env=[client.V1EnvVar(name="DEST_DIR", value=os_image_dir)],
        security_context=client.V1SecurityContext(privileged=False),
        volume_mounts=_init_volume_mounts(os_image_dir),
    )


def _http_probe(port, **kwargs):
    return client.V1Probe(
        http_get=client.V1HTTPGetAction(path="/", port=port),
        timeout_seconds=5,
        **kwargs,
    )


def create_deployment_manifest(name, namespace, spec, config_hash, labels, prov_interface=None, owner_refs=None):
    """Provision server Deployment.

    Host networking means an old pod must be gone before its replacement
    binds the port, hence the Recreate strategy and the anti-affinity between
    provision servers.
    """
    os_image_dir = spec.get("osImageDir") or crd.DEFAULT_OS_IMAGE_DIR
    port = int(spec["port"])

    containers = [
        client.V1Container(
            name="osp-httpd",
            image=spec["apacheImageUrl"],
            command=["/bin/bash"],
            args=["-c", HTTPD_COMMAND],
            env=[client.V1EnvVar(name="CONFIG_HASH", value=config_hash)],
            resources=spec.get("resources"),
            startup_probe=_http_probe(port, period_seconds=10, failure_threshold=12),
            liveness_probe=_http_probe(port, period_seconds=3),
            readiness_probe=_http_probe(port, period_seconds=5, initial_delay_seconds=5),
            volume_mounts=[
                client.V1VolumeMount(name="image-data", mount_path=os_image_dir),
                client.V1VolumeMount(
                    name="httpd-config",
                    mount_path=crd.HTTPD_CONF_PATH,
                    sub_path="httpd.conf",
                    read_only=True,
                ),
            ],
        )
    ]

    if prov_interface:
        containers.append(
            client.V1Container(
                name="osp-provision-ip-discovery-agent",
                image=spec["agentImageUrl"],
                image_pull_policy="Always",
                command=[AGENT_BINARY, "provision-ip-discovery"],
                env=[
                    client.V1EnvVar(name="PROV_INTF", value=prov_interface),
                    client.V1EnvVar(name="PROV_SERVER_NAME", value=name),
                    client.V1EnvVar(name="PROV_SERVER_NAMESPACE", value=namespace),
                ],
            )
        )

    pod_spec = client.V1PodSpec(
        service_account_name=spec.get("serviceAccount") or rbac_name(name),
        host_network=True,
        containers=containers,
        init_containers=[_init_container(spec["osContainerImageUrl"], os_image_dir)],
        node_selector=spec.get("nodeSelector") or None,
        volumes=[
            client.V1Volume(name="image-data", empty_dir=client.V1EmptyDirVolumeSource()),
            client.V1Volume(
                name="httpd-config",
                config_map=client.V1ConfigMapVolumeSource(name=httpd_config_map_name(name)),
            ),
        ],
        affinity=client.V1Affinity(
            pod_anti_affinity=client.V1PodAntiAffinity(
                required_during_scheduling_ignored_during_execution=[
                    client.V1PodAffinityTerm(
                        label_selector=client.V1LabelSelector(
                            match_expressions=[
                                client.V1LabelSelectorRequirement(
                                    key="app", operator="In", values=[crd.PROVSERVER_APP_LABEL]
                                )
                            ]
                        ),
                        namespaces=[namespace],
                        topology_key="kubernetes.io/hostname",
                    )
                ]
            )
        ),
    )

    return client.V1Deployment(
        metadata=client.V1ObjectMeta(
            name=deployment_name(name),
            namespace=namespace,
            labels=labels,
            owner_references=owner_refs,
        ),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=labels),
            strategy=client.V1DeploymentStrategy(type="Recreate"),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=pod_spec,
            ),
        ),
    )


def create_checksum_job_manifest(name, namespace, spec, labels, owner_refs=None):
    """Job that unpacks the OS image and reports its checksum file name."""
    os_image_dir = spec.get("osImageDir") or crd.DEFAULT_OS_IMAGE_DIR
    return client.V1Job(
        metadata=client.V1ObjectMeta(
            name=checksum_job_name(name),
            namespace=namespace,
            labels=labels,
            owner_references=owner_refs,
        ),
        spec=client.V1JobSpec(
            template=client.V1PodTemplateSpec(
                spec=client.V1PodSpec(
                    restart_policy="OnFailure",
                    service_account_name=spec.get("serviceAccount") or rbac_name(name),
                    node_selector=spec.get("nodeSelector") or None,
                    init_containers=[_init_container(spec["osContainerImageUrl"], os_image_dir)],
                    containers=[
                        client.V1Container(
                            name=checksum_job_name(name),
                            image=spec["agentImageUrl"],
                            command=["/bin/bash"],
                            args=["-c", f"{AGENT_BINARY} checksum-discovery"],
                            env=[
                                client.V1EnvVar(name="OS_IMAGE_DIR", value=os_image_dir),
                                client.V1EnvVar(name="PROV_SERVER_NAME", value=name),
                                client.V1EnvVar(name="PROV_SERVER_NAMESPACE", value=namespace),
                            ],
                            volume_mounts=_init_volume_mounts(os_image_dir),
                        )
                    ],
                    volumes=[client.V1Volume(name="image-data", empty_dir=client.V1EmptyDirVolumeSource())],
                )
            ),
        ),
    )


def create_rbac_manifests(name, namespace, labels=None, owner_refs=None):
    """ServiceAccount, Role and RoleBinding letting the agents update provision server status."""
    rbac = rbac_name(name)
    metadata = dict(name=rbac, namespace=namespace, labels=labels, owner_references=owner_refs)
    service_account = client.V1ServiceAccount(metadata=client.V1ObjectMeta(**metadata))
    role = client.V1Role(
        metadata=client.V1ObjectMeta(**metadata),
        rules=[
            client.V1PolicyRule(
                api_groups=[crd.GROUP],
                resources=[crd.PROVISIONSERVER_PLURAL],
                verbs=["get", "list", "update", "patch", "watch"],
            ),
            client.V1PolicyRule(
                api_groups=[crd.GROUP],
                resources=[f"{crd.PROVISIONSERVER_PLURAL}/status"],
                verbs=["get", "update", "patch"],
            ),
        ],
    )
    role_binding = client.V1RoleBinding(
        metadata=client.V1ObjectMeta(**metadata),
        role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="Role", name=rbac),
        subjects=[client.RbacV1Subject(kind="ServiceAccount", name=rbac, namespace=namespace)],
    )
    return service_account, role, role_binding


def create_owned_provision_server(name, namespace, spec, port, owner):
    """Body of the provision server an OpenStackBaremetalSet creates for itself.

    ``owner`` is the set's metadata.
    """
    server_spec = {
        "port": port,
        "osImage": spec["osImage"],
        "osContainerImageUrl": spec["osContainerImageUrl"],
        "apacheImageUrl": spec["apacheImageUrl"],
        "agentImageUrl": spec["agentImageUrl"],
    }
    if spec.get("provisioningInterface"):
        server_spec["interface"] = spec["provisioningInterface"]
    return {
        "apiVersion": crd.API_VERSION,
        "kind": crd.PROVISIONSERVER_KIND,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": crd.owner_labels(crd.SERVICE_NAME, owner["name"], owner["namespace"], owner["uid"]),
            "ownerReferences": [
                {
                    "apiVersion": crd.API_VERSION,
                    "kind": crd.BAREMETALSET_KIND,
                    "name": owner["name"],
                    "uid": owner["uid"],
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ],
        },
        "spec": server_spec,
    }


#
# cloud-init
#


def host_name_is_fqdn(hostname):
    return bool(_FQDN_RE.match(hostname))


def render_user_data(hostname, authorized_keys, cloud_user=crd.DEFAULT_CLOUD_USER, domain_name="", root_password=None):
    """cloud-config user data for a provisioned host."""
    if not host_name_is_fqdn(hostname) and domain_name:
        fqdn = f"{hostname}.{domain_name}"
    else:
        fqdn = hostname

    keys = [line for line in authorized_keys.strip().splitlines() if line.strip()]
    doc = {
        "hostname": hostname,
        "fqdn": fqdn,
        "users": [
            {
                "name": cloud_user,
                "lock_passwd": True,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "ssh_authorized_keys": keys,
            }
        ],
    }
    if root_password:
        doc["chpasswd"] = {
            "expire": False,
            "users": [{"name": "root", "password": root_password, "type": "text"}],
        }
    return "#cloud-config\n" + yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)


def render_network_data(ctlplane_ip, interface, gateway="", vlan=None, dns=None, dns_search=None):
    """OpenStack network_data for the control plane interface.

    ``ctlplane_ip`` is a CIDR; raises ValueError when it is not one.
    """
    iface = ipaddress.ip_interface(ctlplane_ip)
    link_id = interface
    links = [{"id": interface, "name": interface, "type": "phy"}]
    if vlan is not None:
        link_id = f"{interface}.{vlan}"
        links.append({"id": link_id, "type": "vlan", "vlan_id": int(vlan), "vlan_link": interface})

    network = {
        "id": "ctlplane",
        "link": link_id,
        "type": "ipv4" if iface.version == 4 else "ipv6",
        "ip_address": str(iface.ip),
        "netmask": str(iface.network.netmask),
    }
    if gateway:
        default = "0.0.0.0" if iface.version == 4 else "::"
        network["routes"] = [{"network": default, "netmask": default, "gateway": gateway}]

    services = [{"type": "dns", "address": address} for address in dns or []]
    doc = {"links": links, "networks": [network], "services": services}
    if dns_search:
        doc["dns_search"] = list(dns_search)
    return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)
