# limen/core/errors.py
"""Error taxonomy raised by the snapshot providers."""


class LimenError(Exception):
    """Base class for every provider-level failure."""


class AccessDeniedError(LimenError):
    def __init__(self, message: str = "Access denied. Additional permissions may be required."):
        super().__init__(message)


class NotFoundError(LimenError):
    def __init__(self, what: str):
        super().__init__(f"{what} not found.")


class SystemCallError(LimenError):
    """An OS call or an external introspection command failed."""

    def __init__(self, message: str):
        super().__init__(f"System error: {message}")
        self.detail = message
