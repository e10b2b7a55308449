"""Status conditions with an aggregate Ready condition.

Conditions are stored in resource status as a list of dicts::

    {"type": ..., "status": "True"|"False"|"Unknown", "severity": ...,
     "reason": ..., "message": ..., "lastTransitionTime": ...}

``lastTransitionTime`` only moves when a condition's status changes, so
re-setting the same state on every reconciliation does not churn it.
"""

import logging
from datetime import datetime, timezone

from . import crd

logger = logging.getLogger(__name__)

STATUS_TRUE = "True"
STATUS_FALSE = "False"
STATUS_UNKNOWN = "Unknown"

_SEVERITY_RANK = {crd.SEVERITY_ERROR: 0, crd.SEVERITY_WARNING: 1, crd.SEVERITY_INFO: 2, "": 3}


def _now():
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def unknown_condition(type_, reason, message, *args):
    return {
        "type": type_,
        "status": STATUS_UNKNOWN,
        "severity": "",
        "reason": reason,
        "message": message.format(*args),
    }


def true_condition(type_, message, *args):
    return {
        "type": type_,
        "status": STATUS_TRUE,
        "severity": "",
        "reason": crd.REASON_READY,
        "message": message.format(*args),
    }


def false_condition(type_, reason, severity, message, *args):
    return {
        "type": type_,
        "status": STATUS_FALSE,
        "severity": severity,
        "reason": reason,
        "message": message.format(*args),
    }


class Conditions:
    """Ordered set of conditions keyed by type."""

    def __init__(self, conditions=None):
        self._items = {}
        for cond in conditions or []:
            self._items[cond["type"]] = dict(cond)

    @classmethod
    def from_status(cls, status):
        return cls((status or {}).get("conditions"))

    def __contains__(self, type_):
        return type_ in self._items

    def get(self, type_):
        cond = self._items.get(type_)
        return dict(cond) if cond is not None else None

    def init(self, *conditions):
        """Add conditions (normally Unknown) for types not tracked yet.

        A Ready condition is always present afterwards.
        """
        if crd.READY_CONDITION not in self._items:
            self.set(unknown_condition(crd.READY_CONDITION, crd.REASON_INIT, crd.READY_INIT_MESSAGE))
        for cond in conditions:
            if cond["type"] not in self._items:
                self.set(cond)

    def set(self, cond):
        cond = dict(cond)
        previous = self._items.get(cond["type"])
        if previous is not None and previous.get("status") == cond["status"]:
            cond["lastTransitionTime"] = previous.get("lastTransitionTime") or _now()
        else:
            cond["lastTransitionTime"] = _now()
            if previous is not None:
                logger.debug(f"Condition {cond['type']} changed {previous.get('status')} -> {cond['status']}")
        self._items[cond["type"]] = cond

    def mark_true(self, type_, message, *args):
        self.set(true_condition(type_, message, *args))

    def mark_false(self, type_, reason, severity, message, *args):
        self.set(false_condition(type_, reason, severity, message, *args))

    def mark_unknown(self, type_, reason, message, *args):
        self.set(unknown_condition(type_, reason, message, *args))

    def remove(self, type_):
        self._items.pop(type_, None)

    def _status(self, type_):
        cond = self._items.get(type_)
        return cond.get("status") if cond else None

    def is_true(self, type_):
        return self._status(type_) == STATUS_TRUE

    def is_false(self, type_):
        return self._status(type_) == STATUS_FALSE

    def is_unknown(self, type_):
        return self._status(type_) in (None, STATUS_UNKNOWN)

    def sub_conditions(self):
        return [c for t, c in self._items.items() if t != crd.READY_CONDITION]

    def mirror(self, target=crd.READY_CONDITION):
        """Summarise the sub-conditions into a condition of type ``target``.

        The most severe False sub-condition wins, then the first Unknown one;
        if every sub-condition is True the summary is True.
        """
        subs = self.sub_conditions()
        falses = [c for c in subs if c["status"] == STATUS_FALSE]
        if falses:
            worst = min(falses, key=lambda c: _SEVERITY_RANK.get(c.get("severity", ""), 3))
            return {**worst, "type": target}
        unknowns = [c for c in subs if c["status"] == STATUS_UNKNOWN]
        if unknowns:
            return {**unknowns[0], "type": target}
        return true_condition(target, crd.READY_MESSAGE)

    def update_ready(self):
        """Set the Ready condition from the current sub-conditions."""
        summary = self.mirror()
        summary.pop("lastTransitionTime", None)
        self.set(summary)
        return summary["status"] == STATUS_TRUE

    def to_list(self):
        """Conditions as stored in status: Ready first, then by type."""
        return sorted(
            (dict(c) for c in self._items.values()),
            key=lambda c: (c["type"] != crd.READY_CONDITION, c["type"]),
        )
