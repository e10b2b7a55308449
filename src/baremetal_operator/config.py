"""Operator configuration from environment variables."""

import os
from dataclasses import dataclass

# Fall-back images used when neither the resource nor the environment names one
OS_CONTAINER_IMAGE = "quay.io/podified-antelope-centos9/edpm-hardened-uefi:current-podified"
AGENT_IMAGE = "quay.io/openstack-k8s-operators/openstack-baremetal-operator-agent:latest"
APACHE_IMAGE = "registry.redhat.io/rhel8/httpd-24:latest"
OS_IMAGE = "edpm-hardened-uefi.qcow2"


@dataclass(frozen=True)
class OperatorConfig:
    os_container_image_url: str = OS_CONTAINER_IMAGE
    agent_image_url: str = AGENT_IMAGE
    apache_image_url: str = APACHE_IMAGE
    os_image: str = OS_IMAGE
    bmh_namespace: str = "openshift-machine-api"
    port_start: int = 6190
    port_end: int = 6220
    log_level: str = "INFO"

    # Re-check delays, in seconds
    input_delay: int = 10
    provserver_missing_delay: int = 10
    provserver_image_delay: int = 30
    provisioning_delay: int = 20
    deployment_delay: int = 10
    checksum_delay: int = 5
    conflict_delay: int = 1
    error_delay: int = 30


def _int_env(environ, key, default):
    value = environ.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be an integer, got {value!r}")


def load_config(environ=None):
    """Build an OperatorConfig from the environment."""
    if environ is None:
        environ = os.environ
    defaults = OperatorConfig()

    cfg = OperatorConfig(
        os_container_image_url=environ.get(
            "RELATED_IMAGE_OS_CONTAINER_IMAGE_URL_DEFAULT", defaults.os_container_image_url
        ),
        agent_image_url=environ.get("RELATED_IMAGE_AGENT_IMAGE_URL_DEFAULT", defaults.agent_image_url),
        apache_image_url=environ.get("RELATED_IMAGE_APACHE_IMAGE_URL_DEFAULT", defaults.apache_image_url),
        os_image=environ.get("OS_IMAGE_DEFAULT", defaults.os_image),
        bmh_namespace=environ.get("BMH_NAMESPACE_DEFAULT", defaults.bmh_namespace),
        port_start=_int_env(environ, "PROVISION_SERVER_PORT_START", defaults.port_start),
        port_end=_int_env(environ, "PROVISION_SERVER_PORT_END", defaults.port_end),
        log_level=environ.get("LOG_LEVEL", defaults.log_level).upper(),
        input_delay=_int_env(environ, "REQUEUE_INPUT_SECONDS", defaults.input_delay),
        provserver_missing_delay=_int_env(
            environ, "REQUEUE_PROVSERVER_MISSING_SECONDS", defaults.provserver_missing_delay
        ),
        provserver_image_delay=_int_env(environ, "REQUEUE_PROVSERVER_IMAGE_SECONDS", defaults.provserver_image_delay),
        provisioning_delay=_int_env(environ, "REQUEUE_PROVISIONING_SECONDS", defaults.provisioning_delay),
        deployment_delay=_int_env(environ, "REQUEUE_DEPLOYMENT_SECONDS", defaults.deployment_delay),
        checksum_delay=_int_env(environ, "REQUEUE_CHECKSUM_SECONDS", defaults.checksum_delay),
        conflict_delay=_int_env(environ, "REQUEUE_CONFLICT_SECONDS", defaults.conflict_delay),
        error_delay=_int_env(environ, "REQUEUE_ERROR_SECONDS", defaults.error_delay),
    )

    if cfg.port_start > cfg.port_end:
        raise ValueError(f"Invalid provision server port range {cfg.port_start}-{cfg.port_end}")

    return cfg


_config = None


def get_config():
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config
