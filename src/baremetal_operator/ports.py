"""Provision server port assignment.

Provision servers run on host networking, so two of them must never listen
on the same port. Ports are computed from a freshly listed snapshot of every
provision server on each reconciliation; nothing is remembered in between.
"""

import logging

from .errors import PortRangeExhaustedError

logger = logging.getLogger(__name__)


def identity(namespace, name):
    """Key of a provision server in an assigned-port map."""
    return f"{namespace}/{name}"


def port_conflict(ident, assigned, created=None):
    """Return the identity of an older server holding the same port as ``ident``.

    ``created`` maps identity to creation timestamp; ties and missing
    timestamps fall back to identity order. Two servers created concurrently
    can both pick the same free port, and the younger one has to move.
    """
    created = created or {}
    port = assigned.get(ident)
    if not port:
        return None
    mine = (created.get(ident, ""), ident)
    for other, other_port in sorted(assigned.items()):
        if other == ident or other_port != port:
            continue
        if (created.get(other, ""), other) < mine:
            return other
    return None


def assign_port(ident, assigned, start, end, created=None):
    """Pick the port for provision server ``ident``.

    ``assigned`` maps provision server identity to its current port (0 or
    missing when none). A port already held by ``ident`` is kept unless an
    older server holds it too; otherwise the lowest port in ``[start, end]``
    not held by any other server is returned.
    """
    current = assigned.get(ident) or 0
    if current:
        holder = port_conflict(ident, assigned, created)
        if holder is None:
            return current
        logger.warning(f"Port {current} of OpenStackProvisionServer {ident} is also held by {holder}, reassigning")

    taken = {port for key, port in assigned.items() if key != ident and port}
    for port in range(start, end + 1):
        if port not in taken:
            logger.info(f"Assigned port {port} to OpenStackProvisionServer {ident}")
            return port

    raise PortRangeExhaustedError(start, end)
