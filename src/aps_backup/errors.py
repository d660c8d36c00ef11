"""Exception types raised by the backup engine."""


class BackupError(Exception):
    """Base class for all backup failures."""


class Unauthorized(BackupError):
    """No access token was supplied for the run."""

    def __init__(self, message: str = "Access token is missing"):
        super().__init__(message)


class NotFound(BackupError):
    """A requested hub or project is not visible to the caller."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class DirectoryError(BackupError):
    """A directory listing call failed."""

    def __init__(self, message: str, cause: BaseException | None = None):
        self.cause = cause
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class Unavailable(BackupError):
    """A version's binary content could not be obtained."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SinkError(BackupError):
    """Writing or finalizing the archive container failed."""


class OperationTimeout(BackupError):
    """An operation did not finish before its timeout guard fired."""

    def __init__(self, description: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"{description} timed out after {timeout:.1f}s")
