from __future__ import annotations


class QuoterError(Exception):
    """Base quoting error."""

    def __init__(self, msg: str = "", **ctx):
        super().__init__(msg)
        self.msg = msg
        self.ctx = ctx

    def __str__(self):
        base = self.msg or self.__class__.__name__
        if self.ctx:
            details = ", ".join(f"{k}={v}" for k, v in self.ctx.items())
            return f"{base} [{details}]"
        return base


class NotReadyError(QuoterError):
    """Order-book cache has no usable top of book yet."""


class LoadError(QuoterError):
    """Initial full fetch of a book side failed."""


class FetchOrdersError(QuoterError):
    """Resting orders could not be fetched from the venue."""


class SubmitError(QuoterError):
    """A batch was rejected or its confirmation failed."""


class CrossedQuoteError(QuoterError):
    """Desired bid is at or above desired ask after applying the offset."""
