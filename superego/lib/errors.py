"""Exception types raised by the superego core."""


class SuperegoError(Exception):
    """Base class for superego errors."""


class NotInitializedError(SuperegoError):
    """The superego root directory does not exist."""


class EvaluatorError(SuperegoError):
    """The external evaluation did not complete."""


class EvaluatorTimeout(EvaluatorError):
    """The external evaluation exceeded its time budget."""


class MailboxError(SuperegoError):
    """Feedback could not be written to the mailbox slot."""
