"""
Flow execution error taxonomy shared by the store, the executor and the triggers.

Transport and capacity errors live next to the code that raises them
(channels.base.TransportError, dispatch.queue.CapacityExceeded).
"""
from __future__ import annotations


class FlowError(Exception):
    """Base exception for flow execution."""


class GraphError(FlowError):
    """Malformed flow definition: missing node, bad edge, runaway traversal."""

    def __init__(self, message: str, flow_id: str = "", node_id: str = ""):
        self.flow_id = flow_id
        self.node_id = node_id
        super().__init__(message)


class RoutingError(FlowError):
    """The contact has no connected channel to send on."""

    def __init__(self, contact_id: str):
        self.contact_id = contact_id
        super().__init__(f"No channel route for contact {contact_id}")


class ConcurrencyConflict(FlowError):
    """A concurrent writer updated the same flow state first."""

    def __init__(self, contact_id: str, flow_id: str, expected_version: int):
        self.contact_id = contact_id
        self.flow_id = flow_id
        self.expected_version = expected_version
        super().__init__(
            f"Flow state {contact_id}/{flow_id} changed since version {expected_version}"
        )


class FlowVersionExists(FlowError):
    """A published (flow_id, version) is immutable and cannot be saved again."""

    def __init__(self, flow_id: str, version: int):
        self.flow_id = flow_id
        self.version = version
        super().__init__(f"Flow {flow_id} version {version} is already published")
