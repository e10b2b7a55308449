"""Slot to BareMetalHost allocation."""

import logging

from . import crd
from .errors import InsufficientHostsError, LabelMismatchError
from .hardware import is_subset, satisfies

logger = logging.getLogger(__name__)

LABEL_MISMATCH_MESSAGE = (
    "one or more computes did not match the available Baremetalhosts due to their bmhLabelSelector(s)"
)


def _name(host):
    return host["metadata"]["name"]


def _labels(host):
    return host["metadata"].get("labels") or {}


def format_labels(selector):
    """Render a label selector as ``[k=v,...]`` for messages."""
    if not selector:
        return ""
    return "[" + ",".join(f"{k}={v}" for k, v in sorted(selector.items())) + "]"


def available_hosts(hosts, requirement):
    """Hosts that are free to claim: available, offline, unclaimed and matching hardware."""
    available = []
    for host in sorted(hosts, key=_name):
        name = _name(host)
        spec = host.get("spec") or {}
        state = ((host.get("status") or {}).get("provisioning") or {}).get("state", "")

        if state != crd.BMH_STATE_AVAILABLE:
            logger.info(f"BaremetalHost {name} cannot be used because its provisioning state is {state!r}")
            continue
        if spec.get("online"):
            logger.info(f"BaremetalHost {name} cannot be used because it is already online")
            continue
        if spec.get("consumerRef"):
            logger.info(f"BaremetalHost {name} cannot be used because it already has a consumerRef")
            continue
        if not satisfies(requirement, host):
            continue

        logger.debug(f"Available BaremetalHost {name} (slot labels not yet processed)")
        available.append(host)
    return available


def candidate_graph(slots, hosts):
    """Map each slot name to the names of hosts whose labels satisfy its selector."""
    return {
        slot: [_name(host) for host in hosts if is_subset(_labels(host), selector)]
        for slot, selector in slots.items()
    }


def find_assignments(slots, hosts):
    """Assign every slot a distinct host whose labels satisfy the slot's selector.

    ``slots`` maps slot name to its label selector (or None). Greedy first-fit
    can consume the only host a later slot could use, so this searches
    depth-first and undoes choices that leave a later slot without a host.
    Slots with the fewest candidates go first to prune early.

    Returns the complete assignment, or None when none exists.
    """
    graph = candidate_graph(slots, sorted(hosts, key=_name))
    order = sorted(graph, key=lambda slot: (len(graph[slot]), slot))

    def backtrack(index, used, assignment):
        if index == len(order):
            return assignment
        slot = order[index]
        for host in graph[slot]:
            if host in used:
                continue
            found = backtrack(index + 1, used | {host}, {**assignment, slot: host})
            if found is not None:
                return found
        return None

    return backtrack(0, frozenset(), {})


def max_matching(slots, hosts):
    """Size of the largest partial assignment of slots to distinct hosts."""
    graph = candidate_graph(slots, sorted(hosts, key=_name))
    holder = {}

    def augment(slot, seen):
        for host in graph[slot]:
            if host in seen:
                continue
            seen.add(host)
            if host not in holder or augment(holder[host], seen):
                holder[host] = slot
                return True
        return False

    return sum(1 for slot in sorted(graph) if augment(slot, set()))


def verify_scale_up(name, namespace, new_slots, hosts, requirement, in_use, label_selector=None):
    """Pick hosts for slots that have none yet.

    ``hosts`` is the inventory already narrowed by the set-wide label
    selector; ``in_use`` is how many hosts the set currently owns.
    Raises InsufficientHostsError, or LabelMismatchError when only the
    per-slot selectors stand in the way.
    """
    needed = len(new_slots)
    if needed == 0:
        return {}

    labels = format_labels(label_selector)
    logger.info(
        f"Attempting to find {needed} BaremetalHosts for scale-up of OpenStackBaremetalSet {name} "
        f"in namespace {namespace} (labels {labels or 'none'})"
    )

    available = available_hosts(hosts, requirement)
    assignment = {}
    mismatch = False

    if len(available) >= needed:
        assignment = find_assignments(new_slots, available) or {}
        if not assignment:
            logger.info("Unable to match requested new computes to satisfactory set of BaremetalHosts due to labeling")
            mismatch = True

    if len(assignment) < needed:
        matched = max_matching(new_slots, available)
        with_labels = f" with labels {labels}" if labels else ""
        message = (
            f"unable to find {needed} requested BaremetalHosts{with_labels} in namespace {namespace} "
            f"for scale-up ({needed - matched} short, {in_use} in use, {len(available)} available)"
        )
        error_cls = InsufficientHostsError
        if mismatch:
            message = f"{message}: {LABEL_MISMATCH_MESSAGE}"
            error_cls = LabelMismatchError
        raise error_cls(
            message,
            needed=needed,
            assigned=matched,
            in_use=in_use,
            available=len(available),
            labels=labels,
        )

    logger.info(f"Found sufficient BaremetalHosts for scale-up of OpenStackBaremetalSet {name}: {assignment}")
    return assignment
