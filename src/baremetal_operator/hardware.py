"""Hardware requirement and label selector matching for BareMetalHosts."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

GIB = 1024 ** 3


@dataclass(frozen=True)
class HardwareRequirement:
    """Requested hardware. Zero values leave a dimension unconstrained.

    When an ``*_exact`` flag is false, an observed value greater than the
    requested one also matches. Architecture always matches exactly, and the
    SSD flag is only considered when ``ssd`` or ``ssd_exact`` is set, since
    ``ssd=False`` cannot otherwise be told apart from "not requested".
    """

    arch: str = ""
    cpu_count: int = 0
    cpu_count_exact: bool = False
    cpu_mhz: int = 0
    cpu_mhz_exact: bool = False
    memory_gb: int = 0
    memory_gb_exact: bool = False
    disk_gb: int = 0
    disk_gb_exact: bool = False
    ssd: bool = False
    ssd_exact: bool = False

    @classmethod
    def from_spec(cls, reqs):
        """Parse the ``hardwareReqs`` block of an OpenStackBaremetalSet spec."""
        reqs = reqs or {}
        cpu = reqs.get("cpuReqs") or {}
        count = cpu.get("countReq") or {}
        mhz = cpu.get("mhzReq") or {}
        mem = (reqs.get("memReqs") or {}).get("gbReq") or {}
        disk_reqs = reqs.get("diskReqs") or {}
        disk = disk_reqs.get("gbReq") or {}
        ssd = disk_reqs.get("ssdReq") or {}
        return cls(
            arch=cpu.get("arch") or "",
            cpu_count=int(count.get("count") or 0),
            cpu_count_exact=bool(count.get("exactMatch", False)),
            cpu_mhz=int(mhz.get("mhz") or 0),
            cpu_mhz_exact=bool(mhz.get("exactMatch", False)),
            memory_gb=int(mem.get("gb") or 0),
            memory_gb_exact=bool(mem.get("exactMatch", False)),
            disk_gb=int(disk.get("gb") or 0),
            disk_gb_exact=bool(disk.get("exactMatch", False)),
            ssd=bool(ssd.get("ssd", False)),
            ssd_exact=bool(ssd.get("exactMatch", False)),
        )

    def is_empty(self):
        return self == HardwareRequirement()


def _matches(observed, requested, exact):
    return observed == requested or (not exact and observed > requested)


def hardware_mismatch(requirement, host):
    """Return why ``host`` fails ``requirement``, or None when it satisfies it."""
    if requirement.is_empty():
        return None

    details = (host.get("status") or {}).get("hardware")
    if not details:
        return "host lacks hardware details in status"

    cpu = details.get("cpu") or {}

    if requirement.arch and cpu.get("arch", "") != requirement.arch:
        return f"CPU arch {cpu.get('arch', '')!r} does not match request {requirement.arch!r}"

    if requirement.cpu_count:
        count = int(cpu.get("count") or 0)
        if not _matches(count, requirement.cpu_count, requirement.cpu_count_exact):
            return f"CPU count {count} does not match request {requirement.cpu_count}"

    if requirement.cpu_mhz:
        mhz = int(cpu.get("clockMegahertz") or 0)
        if not _matches(mhz, requirement.cpu_mhz, requirement.cpu_mhz_exact):
            return f"CPU mhz {mhz} does not match request {requirement.cpu_mhz}"

    if requirement.memory_gb:
        memory_gb = float(details.get("ramMebibytes") or 0) / 1024
        if not _matches(memory_gb, float(requirement.memory_gb), requirement.memory_gb_exact):
            return f"memory size {memory_gb}GB does not match request {requirement.memory_gb}GB"

    storage = details.get("storage") or []
    found_disk = None

    if requirement.disk_gb:
        for disk in storage:
            disk_gb = float(disk.get("sizeBytes") or 0) / GIB
            if _matches(disk_gb, float(requirement.disk_gb), requirement.disk_gb_exact):
                found_disk = disk
                break
        if found_disk is None:
            return f"no disk matches size request {requirement.disk_gb}GB"

    if requirement.ssd or requirement.ssd_exact:
        # Size and type must hold for the same disk when a size was requested
        candidates = [found_disk] if found_disk is not None else storage
        if not any(bool(disk.get("rotational", False)) != requirement.ssd for disk in candidates):
            return f"no disk matches rotational={not requirement.ssd} request"

    return None


def satisfies(requirement, host):
    """Check whether a BareMetalHost satisfies the hardware requirement."""
    name = (host.get("metadata") or {}).get("name", "")
    reason = hardware_mismatch(requirement, host)
    if reason is not None:
        logger.info(f"BaremetalHost {name} does not satisfy hardware requirements: {reason}")
        return False
    logger.debug(f"BaremetalHost {name} satisfies hardware requirements")
    return True


def is_subset(labels, selector):
    """True when every key/value of ``selector`` is present in ``labels``."""
    if not selector:
        return True
    labels = labels or {}
    for key, value in selector.items():
        if key not in labels or labels[key] != value:
            return False
    return True
