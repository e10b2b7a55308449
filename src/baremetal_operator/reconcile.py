"""Shared reconciliation plumbing."""

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Optional

from .errors import BaremetalOperatorError, InvalidCIDRError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass.

    ``status`` is the complete new status. ``requeue_after`` asks for another
    pass after that many seconds; ``error`` is the typed error that ended the
    pass early, if any.
    """

    status: dict = field(default_factory=dict)
    requeue_after: Optional[float] = None
    error: Optional[BaremetalOperatorError] = None

    @property
    def done(self):
        return self.error is None and self.requeue_after is None


def metadata_owner(meta):
    return {"name": meta["name"], "namespace": meta["namespace"], "uid": meta.get("uid", "")}


def status_patch(old, new):
    """Merge patch turning status ``old`` into ``new``.

    Keys dropped from a nested map (such as a removed slot record) are sent
    as None so the API server deletes them.
    """
    old = old or {}
    patch = {}
    for key, value in new.items():
        previous = old.get(key)
        if isinstance(value, dict) and isinstance(previous, dict):
            nested = {k: None for k in previous if k not in value}
            nested.update(value)
            patch[key] = nested
        else:
            patch[key] = value
    return patch


def parse_cidr(slot, value):
    """Validate a ``address/prefix`` string; raises InvalidCIDRError."""
    if not value or "/" not in value:
        raise InvalidCIDRError(slot, value)
    try:
        return ipaddress.ip_interface(value)
    except ValueError:
        raise InvalidCIDRError(slot, value)
