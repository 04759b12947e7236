# errors.py - District Collect
# Error taxonomy shared by the store and the HTTP layer

from __future__ import annotations


class CollectError(Exception):
    """Base class. `status` is the HTTP status the request boundary answers with."""

    status = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(CollectError):
    """Entity absent, or not owned by the caller (deliberately indistinguishable)."""

    status = 404


class InvalidState(CollectError):
    status = 400


class ValidationError(CollectError):
    status = 400


class AllocatorFailure(CollectError):
    """Counter could not be repaired after one retry. Aborts the request."""

    status = 500
