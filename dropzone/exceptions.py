"""Exception types raised by dropzone."""


class DropzoneError(Exception):
    """Base class for all dropzone errors."""


class ConfigError(DropzoneError):
    """Invalid configuration value or file."""


class TransferError(DropzoneError):
    """Payload protocol violated or transfer aborted."""


class NegotiationError(DropzoneError):
    """Direct-channel negotiation failed."""


class InvalidTransition(NegotiationError):
    """A link event is not allowed in the current state."""

    def __init__(self, state, event):
        super().__init__(f"Event {event.name} not allowed in state {state.name}")
        self.state = state
        self.event = event
