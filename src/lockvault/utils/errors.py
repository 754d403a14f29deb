"""Error taxonomy for vault operations.

`VaultError` carries one `ErrorKind` from a closed set. Anything that is not
one of the well-known conditions is raised as `ErrorKind.OTHER` with the
underlying exception attached as `cause` (and as `__cause__`).
"""

from enum import Enum


class ErrorKind(Enum):
    NOT_INITIALIZED = "not-initialized"
    ALREADY_EXISTS = "already-exists"
    WRONG_PASSWORD = "wrong-password"
    PASSWORD_REQUIRED = "password-required"
    NO_TRACKED_FILES = "no-tracked-files"
    OTHER = "other"


_DEFAULT_MESSAGES = {
    ErrorKind.NOT_INITIALIZED: "vault not initialized",
    ErrorKind.ALREADY_EXISTS: "vault already exists",
    ErrorKind.WRONG_PASSWORD: "wrong password",
    ErrorKind.PASSWORD_REQUIRED: "password required",
    ErrorKind.NO_TRACKED_FILES: "no files in vault",
}


class VaultError(Exception):
    def __init__(self, kind: ErrorKind, message: str | None = None, cause: BaseException | None = None) -> None:
        self.kind = kind
        self.cause = cause
        super().__init__(message or _DEFAULT_MESSAGES.get(kind, "vault operation failed"))

    @classmethod
    def wrap(cls, context: str, cause: BaseException) -> "VaultError":
        """Wrap an unexpected failure with operation context."""
        if isinstance(cause, VaultError):
            return cause
        err = cls(ErrorKind.OTHER, f"{context}: {cause}", cause)
        err.__cause__ = cause
        return err

    def __repr__(self) -> str:
        return f"VaultError({self.kind.value!r}, {str(self)!r})"


class OperationCancelled(Exception):
    """Raised between files when SIGINT/SIGTERM was received."""
