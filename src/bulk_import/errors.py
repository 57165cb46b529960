"""Exception hierarchy for the bulk import pipeline."""

from __future__ import annotations


class BulkImportError(Exception):
    """Base class for every error raised by this package."""


class ConversionError(BulkImportError):
    """A single file could not be converted or uploaded; retryable."""


class TransferError(ConversionError):
    """Moving bytes to the blob store failed."""


class TransferAbortedError(TransferError):
    """Raised inside a transfer once the gateway has signalled it to stop."""


class TransferStalledError(TransferError):
    """No transfer progress for longer than the stall window."""


class ConversionTimeoutError(TransferError):
    """The whole conversion exceeded its hard time ceiling."""


class ConversionServiceError(ConversionError):
    """The conversion service answered with an error or an unusable body."""


class MissingOutputError(ConversionServiceError):
    """The conversion service succeeded but returned no output reference."""


class PersistenceError(BulkImportError):
    """The record store rejected a read or write."""


class CommitError(BulkImportError):
    """The final commit stage failed; the session stays in review."""


class StageTransitionError(BulkImportError):
    """The controller was asked for a stage change it cannot make yet."""


class InvalidTransitionError(BulkImportError):
    """An item state change that the item state machine does not allow."""
