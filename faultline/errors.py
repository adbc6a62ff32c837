"""
Exception types shared across the pipeline.
"""


class FaultlineError(Exception):
    """Base class for application errors."""


class StoreUnavailable(FaultlineError):
    """The backing event/issue store could not be reached or rejected a write."""


class NotFoundError(FaultlineError):
    """A requested issue, rule or alert does not exist."""


class ChannelError(FaultlineError):
    """A notification channel was misconfigured or its endpoint rejected the payload."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class JobError(FaultlineError):
    """Dispatch job could not be routed to a queue or handler."""
