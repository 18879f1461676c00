"""popguard error taxonomy."""


class PopguardError(Exception):
    """Base class for engine errors."""
    pass


class InvalidDecision(PopguardError):
    """Raised when resolve() receives a decision outside close/keep/dismiss."""

    def __init__(self, decision: object):
        self.decision = decision
        super().__init__(
            f"Invalid decision {decision!r}: expected one of close, keep, dismiss"
        )


class UnknownPopup(PopguardError):
    """Raised when a popup id has no pending decision."""

    def __init__(self, popup_id: str):
        self.popup_id = popup_id
        super().__init__(f"No pending decision for popup {popup_id!r}")


class DuplicatePopup(PopguardError):
    """Raised when a decision is already pending for a popup id."""

    def __init__(self, popup_id: str):
        self.popup_id = popup_id
        super().__init__(f"A decision is already pending for popup {popup_id!r}")


class PersistenceFailure(PopguardError):
    """A persistence adapter call failed. In-memory state stays authoritative."""

    def __init__(self, operation: str, cause: BaseException):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Persistence {operation} failed: {cause}")


class MalformedPattern(PopguardError):
    """A stored pattern record could not be loaded."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Malformed pattern {key!r}: {reason}")


class EngineClosed(PopguardError):
    """Raised when a decision is opened while the coordinator is shut down."""

    def __init__(self):
        super().__init__("Decision coordinator is shut down; call init() first")
