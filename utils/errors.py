from __future__ import annotations


class FeeStoreError(Exception):
    """Base class for every failure raised by the fee/payment core."""


class NotInitialized(FeeStoreError):
    pass


class QueryFailed(FeeStoreError):
    pass


class NotFound(FeeStoreError):
    pass


class UnsupportedFormat(FeeStoreError):
    pass


class InvalidAmount(FeeStoreError, ValueError):
    pass
