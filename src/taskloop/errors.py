"""Exception taxonomy for the task loop."""


class TaskLoopError(Exception):
    """Base class for all task loop errors."""


class ConfigError(TaskLoopError, ValueError):
    """Configuration is missing or invalid."""


class StreamError(TaskLoopError):
    """The model stream failed before reaching its end-of-stream signal."""

    def __init__(self, message: str, status_code: int = 0, received_content: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.received_content = received_content


class FatalToolError(TaskLoopError):
    """Raised by a tool when the environment is unusable.

    The dispatcher reports it like any other failure but also aborts the
    task, since retrying cannot succeed.
    """


class CheckpointError(TaskLoopError):
    """A checkpoint could not be written or read back."""


class UnknownModeError(TaskLoopError, KeyError):
    """A mode slug does not name a registered mode."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown mode"
