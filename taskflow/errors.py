"""
Error taxonomy for the replica core.

Load, subscription, and mutation failures are raised to the caller.
Merge anomalies are not errors: see replica.kernel.types.MergeAnomaly.
"""

from __future__ import annotations


class StoreError(Exception):
    """The remote store (or its change feed) rejected or failed an operation."""

    def __init__(self, message: str, *, collection: str | None = None):
        super().__init__(message)
        self.message = message
        self.collection = collection


class LoadError(Exception):
    """The initial bulk read of a family failed. No retry is attempted."""

    def __init__(self, family: str, cause: BaseException):
        super().__init__(f"{family}: snapshot load failed: {cause}")
        self.family = family
        self.cause = cause


class SubscriptionError(Exception):
    """A change-feed channel could not be opened. No reconnection is attempted."""

    def __init__(self, collection: str, cause: BaseException):
        super().__init__(f"{collection}: subscription failed: {cause}")
        self.collection = collection
        self.cause = cause


class MutationError(Exception):
    """A remote write failed. Local replica state is left untouched."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause
