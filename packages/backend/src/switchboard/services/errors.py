"""Service-layer exceptions.

Routes catch these and translate them to HTTP errors: NotFoundError → 404,
InvalidTransitionError → 409. DeliveryFailure never reaches a caller; it
is logged by the escalation path.
"""

from typing import Optional


class SwitchboardError(Exception):
    """Base class for all service errors."""


class NotFoundError(SwitchboardError):
    """Referenced dispatch, event, message or agent does not exist."""

    kind = "not_found"


class DispatchNotFoundError(NotFoundError):
    def __init__(self, dispatch_id: int):
        self.dispatch_id = dispatch_id
        super().__init__(f"Dispatch {dispatch_id} not found")


class EventNotFoundError(NotFoundError):
    def __init__(self, event_id: int):
        self.event_id = event_id
        super().__init__(f"Event {event_id} not found")


class MessageNotFoundError(NotFoundError):
    def __init__(self, message_id: int):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found")


class AgentNotFoundError(NotFoundError):
    """A name- or id-based agent lookup failed."""

    kind = "agent_not_found"

    def __init__(self, agent: str):
        self.agent = agent
        super().__init__(f"Agent not found: {agent}")


class InvalidTransitionError(SwitchboardError):
    """Precondition on the current status was not met.

    Always carries the status that was actually observed.
    """

    kind = "invalid_transition"

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class DeliveryFailure(SwitchboardError):
    """An escalation message could not be delivered."""

    kind = "delivery_failure"
