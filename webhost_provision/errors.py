# ----------------------------------------------------------------
# Custom Exceptions
# ----------------------------------------------------------------
class SetupError(Exception):
    """Base exception for setup errors."""

    exit_code: int = 1


class PreconditionError(SetupError):
    """Raised when the host is not fit for provisioning (privileges, OS, disk, network)."""

    pass


class ValidationError(SetupError):
    """Raised when user supplied input fails validation."""

    exit_code = 2


class ConfigurationError(SetupError):
    """Raised when the saved configuration cannot be loaded or is incomplete."""

    pass


class ExecutionError(SetupError):
    """Raised when command execution fails."""

    def __init__(self, message: str, returncode: int = -1, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class RetriableError(ExecutionError):
    """Raised when a network-bound step failed; re-running the tool may succeed."""

    exit_code = 75


class BlockAnchorError(SetupError):
    """Raised when the anchor line for a managed block is missing."""

    pass


class StagedConfigError(SetupError):
    """Raised when a staged configuration failed validation and was reverted."""

    pass


class CommitError(SetupError):
    """Raised when a validated configuration could not be activated."""

    pass
