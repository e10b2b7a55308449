"""Typed errors raised during reconciliation."""


class BaremetalOperatorError(Exception):
    """Base error. ``requeue_after`` is the suggested re-check delay in seconds."""

    requeue_after = None

    def __init__(self, message, requeue_after=None):
        super().__init__(message)
        if requeue_after is not None:
            self.requeue_after = requeue_after


class InputError(BaremetalOperatorError):
    """A required input is missing or malformed."""


class SecretNotFoundError(InputError):
    def __init__(self, kind, name, namespace, requeue_after=None):
        super().__init__(f"{kind} secret {name} not found in namespace {namespace}", requeue_after)
        self.secret_name = name
        self.namespace = namespace


class InvalidCIDRError(InputError):
    def __init__(self, slot, value, requeue_after=None):
        super().__init__(f"ctlPlaneIP {value!r} of {slot} is not a valid CIDR", requeue_after)
        self.slot = slot
        self.value = value


class DependencyNotReadyError(BaremetalOperatorError):
    """A resource this one depends on does not exist or is not serving yet."""


class AllocationError(BaremetalOperatorError):
    """Not enough hosts could be allocated for the requested slots."""


class InsufficientHostsError(AllocationError):
    """Not every new slot can get a free host; ``shortfall`` says how many cannot."""

    def __init__(self, message, needed, assigned, in_use, available, labels=""):
        super().__init__(message)
        self.needed = needed
        self.assigned = assigned
        self.shortfall = needed - assigned
        self.in_use = in_use
        self.available = available
        self.labels = labels


class LabelMismatchError(InsufficientHostsError):
    """Enough hosts exist, but no assignment satisfies every slot's label selector."""


class ConsistencyError(BaremetalOperatorError):
    """Tracked state disagrees with the inventory and must not be auto-healed."""


class ConflictError(BaremetalOperatorError):
    """The API server rejected a write because the object changed since it was read."""


class PortRangeExhaustedError(BaremetalOperatorError):
    def __init__(self, start, end, requeue_after=None):
        super().__init__(f"no free provision server port in range {start}-{end}", requeue_after)
        self.start = start
        self.end = end


class ProvisioningAgentError(BaremetalOperatorError):
    """The provisioning IP discovery agent reported an error."""

    def __init__(self, detail, requeue_after=None):
        super().__init__(f"provisioning agent reported error: {detail}", requeue_after)
        self.detail = detail
