"""CRD schema constants and helpers."""

# CRD Group and Version
GROUP = "baremetal.openstack.org"
VERSION = "v1beta1"

# API version string
API_VERSION = f"{GROUP}/{VERSION}"

BAREMETALSET_PLURAL = "openstackbaremetalsets"
BAREMETALSET_KIND = "OpenStackBaremetalSet"
PROVISIONSERVER_PLURAL = "openstackprovisionservers"
PROVISIONSERVER_KIND = "OpenStackProvisionServer"

# Metal3 resources
METAL3_GROUP = "metal3.io"
METAL3_VERSION = "v1alpha1"
BMH_PLURAL = "baremetalhosts"
BMH_KIND = "BareMetalHost"
PROVISIONING_PLURAL = "provisionings"
PROVISIONING_NAME = "provisioning-configuration"
PROVISIONING_NETWORK_MANAGED = "Managed"

# Metal3 provisioning states
BMH_STATE_AVAILABLE = "available"
BMH_STATE_PROVISIONED = "provisioned"

# Status phases
PHASE_INITIALIZING = "Initializing"
PHASE_WAITING_ON_INPUTS = "WaitingOnInputs"
PHASE_WAITING_ON_DEPENDENCY = "WaitingOnDependency"
PHASE_ALLOCATING = "Allocating"
PHASE_PROVISIONING = "Provisioning"
PHASE_READY = "Ready"
PHASE_DELETING = "Deleting"

# Condition types
READY_CONDITION = "Ready"
INPUT_READY_CONDITION = "InputReady"
SERVICE_CONFIG_READY_CONDITION = "ServiceConfigReady"
DEPLOYMENT_READY_CONDITION = "DeploymentReady"
SERVICE_ACCOUNT_READY_CONDITION = "ServiceAccountReady"
ROLE_READY_CONDITION = "RoleReady"
ROLE_BINDING_READY_CONDITION = "RoleBindingReady"
PROVSERVER_PROV_INTF_READY_CONDITION = "OpenStackProvisionServerProvIntfReady"
PROVSERVER_LOCAL_IMAGE_URL_READY_CONDITION = "OpenStackProvisionServerLocalImageUrlReady"
PROVSERVER_CHECKSUM_READY_CONDITION = "OpenStackProvisionServerChecksumReady"
BMSET_PROVSERVER_READY_CONDITION = "OpenStackBaremetalSetProvServerReady"
BMSET_BMH_PROVISIONING_READY_CONDITION = "OpenStackBaremetalSetBmhProvisioningReady"

# Condition reasons
REASON_INIT = "Init"
REASON_REQUESTED = "Requested"
REASON_ERROR = "Error"
REASON_READY = "Ready"

# Condition severities
SEVERITY_ERROR = "Error"
SEVERITY_WARNING = "Warning"
SEVERITY_INFO = "Info"

# Condition messages
READY_INIT_MESSAGE = "Setup started"
READY_MESSAGE = "Setup complete"
INPUT_READY_INIT_MESSAGE = "Input data not started"
INPUT_READY_WAITING_MESSAGE = "Input data resources missing"
INPUT_READY_ERROR_MESSAGE = "Input data error occurred {}"
INPUT_READY_MESSAGE = "Input data complete"
SERVICE_CONFIG_READY_INIT_MESSAGE = "Service config create not started"
SERVICE_CONFIG_READY_ERROR_MESSAGE = "Service config create error occurred {}"
SERVICE_CONFIG_READY_MESSAGE = "Service config create completed"
DEPLOYMENT_READY_INIT_MESSAGE = "Deployment not started"
DEPLOYMENT_READY_RUNNING_MESSAGE = "Deployment in progress"
DEPLOYMENT_READY_ERROR_MESSAGE = "Deployment error occurred {}"
DEPLOYMENT_READY_MESSAGE = "Deployment completed"
SERVICE_ACCOUNT_READY_INIT_MESSAGE = "ServiceAccount create not started"
SERVICE_ACCOUNT_READY_MESSAGE = "ServiceAccount created"
ROLE_READY_INIT_MESSAGE = "Role create not started"
ROLE_READY_MESSAGE = "Role created"
ROLE_BINDING_READY_INIT_MESSAGE = "RoleBinding create not started"
ROLE_BINDING_READY_MESSAGE = "RoleBinding created"
RBAC_ERROR_MESSAGE = "RBAC create error occurred {}"

PROVSERVER_PROV_INTF_READY_INIT_MESSAGE = "OpenStackProvisionServerProvIntf not started"
PROVSERVER_PROV_INTF_READY_RUNNING_MESSAGE = "OpenStackProvisionServerProvIntf discovery in progress"
PROVSERVER_PROV_INTF_READY_ERROR_MESSAGE = "OpenStackProvisionServerProvIntf error occured {}"
PROVSERVER_PROV_INTF_READY_MESSAGE = "OpenStackProvisionServerProvIntf found"
PROVSERVER_LOCAL_IMAGE_URL_READY_INIT_MESSAGE = "OpenStackProvisionServerLocalImageUrl not started"
PROVSERVER_LOCAL_IMAGE_URL_READY_RUNNING_MESSAGE = "OpenStackProvisionServerLocalImageUrl generation in progress"
PROVSERVER_LOCAL_IMAGE_URL_READY_MESSAGE = "OpenStackProvisionServerLocalImageUrl generated"
PROVSERVER_CHECKSUM_READY_INIT_MESSAGE = "OpenStackProvisionServerChecksum not started"
PROVSERVER_CHECKSUM_READY_RUNNING_MESSAGE = "OpenStackProvisionServerChecksum generation in progress"
PROVSERVER_CHECKSUM_READY_ERROR_MESSAGE = "OpenStackProvisionServerChecksum error occured {}"
PROVSERVER_CHECKSUM_READY_MESSAGE = "OpenStackProvisionServerChecksum generated"

BMSET_PROVSERVER_READY_INIT_MESSAGE = "OpenStackBaremetalSet provision server not started"
BMSET_PROVSERVER_READY_WAITING_MESSAGE = "OpenStackBaremetalSet waiting for provision server creation"
BMSET_PROVSERVER_READY_RUNNING_MESSAGE = "OpenStackBaremetalSet provision server deployment in progress"
BMSET_PROVSERVER_READY_ERROR_MESSAGE = "OpenStackBaremetalSet provision server error occured {}"
BMSET_PROVSERVER_READY_MESSAGE = "OpenStackBaremetalSet provision server ready"
BMSET_BMH_PROVISIONING_READY_INIT_MESSAGE = "OpenStackBaremetalSet BMH provisioning not started"
BMSET_BMH_PROVISIONING_READY_RUNNING_MESSAGE = "OpenStackBaremetalSet BMH provisioning in progress"
BMSET_BMH_PROVISIONING_READY_ERROR_MESSAGE = "OpenStackBaremetalSet BMH provisioning error occured {}"
BMSET_BMH_PROVISIONING_READY_MESSAGE = "OpenStackBaremetalSet BMH provisioning completed"

# Labels and annotations
SERVICE_NAME = "openstackbaremetalset"
PROVSERVER_APP_LABEL = "openstackprovisionserver"
APP_SELECTOR = "service"
HOSTNAME_LABEL_SUFFIX = "-osbms-hostname"
HOST_REMOVAL_ANNOTATION = "baremetal.openstack.org/delete-host"
MUST_GATHER_SECRET_LABEL = "baremetal.openstack.org/must-gather-secret"

# Generated cloud-init secret names: <set name>, <slot name>
CLOUDINIT_USERDATA_SECRET = "{}-cloudinit-userdata-{}"
CLOUDINIT_NETWORKDATA_SECRET = "{}-cloudinit-networkdata-{}"

# Status hash keys
INPUT_HASH = "input"
CHECKSUM_HASH = "checksum"

# Spec defaults
DEFAULT_CLOUD_USER = "cloud-admin"
DEFAULT_CLEANING_MODE = "metadata"
ALLOWED_CLEANING_MODES = ["metadata", "disabled"]
DEFAULT_OS_IMAGE_DIR = "/usr/local/apache2/htdocs"
DEFAULT_PROVSERVER_SERVICE_ACCOUNT = "provisionserver"
HTTPD_CONF_PATH = "/usr/local/apache2/conf/httpd.conf"


def group_label(service):
    """Label key prefix for resources owned by a service kind."""
    return f"{service}.openstack.org"


def owner_labels(service, name, namespace, uid):
    """Ownership labels placed on resources managed for an instance."""
    prefix = group_label(service)
    return {
        f"{prefix}/uid": uid,
        f"{prefix}/namespace": namespace,
        f"{prefix}/name": name,
    }


def hostname_label_key(set_name):
    """Label key tying a BareMetalHost to a slot of a baremetal set."""
    return f"{set_name}{HOSTNAME_LABEL_SUFFIX}"
