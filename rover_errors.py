# Author: Omi Shrestha

"""Error types shared by the rover controller modules."""


class RoverError(Exception):
    """Base class for every error raised by this package."""


class DriverFailure(RoverError):
    """A radio driver call was rejected (scan, connect, read, write...)."""

    def __init__(self, operation, identity=None, message=""):
        self.operation = operation
        self.identity = identity
        detail = f"{operation} failed"
        if identity:
            detail += f" for {identity}"
        if message:
            detail += f": {message}"
        super().__init__(detail)


class PermissionDenied(RoverError):
    """The user or the OS refused a permission needed for scanning."""


class PreconditionFailure(RoverError):
    """An operation needs a connected peripheral and there is none."""
