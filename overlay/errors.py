"""Error taxonomy for the overlay pipeline.

Every exception carries the outward ``FailureReason`` it is reported as, so the
orchestrator can turn any failure into an outcome without a lookup table.
"""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    INVALID_INPUT = "invalid_input"
    FETCH_ERROR = "fetch_error"
    NO_ANCHOR_FOUND = "no_anchor_found"
    ASSET_NOT_FOUND = "asset_not_found"
    COMPOSITE_ERROR = "composite_error"
    TIMEOUT = "timeout"
    BUSY = "busy"


class OverlayError(Exception):
    reason: FailureReason = FailureReason.COMPOSITE_ERROR


class InvalidInputError(OverlayError):
    """Bad URL, empty image or otherwise unusable user input."""

    reason = FailureReason.INVALID_INPUT


class PayloadTooLargeError(InvalidInputError):
    pass


class DecodeError(InvalidInputError):
    """Bytes were fetched but are not an image OpenCV can decode."""


class FetchError(OverlayError):
    reason = FailureReason.FETCH_ERROR

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """A fetch failure worth another attempt (reset, timeout, 5xx)."""


class AssetNotFoundError(OverlayError):
    reason = FailureReason.ASSET_NOT_FOUND

    def __init__(self, asset_id: str):
        super().__init__(f"Overlay asset {asset_id!r} is not registered")
        self.asset_id = asset_id


class AssetLoadError(Exception):
    """Raised at startup when the asset directory is unusable."""


class CompositeError(OverlayError):
    reason = FailureReason.COMPOSITE_ERROR


class OperationCancelled(Exception):
    """A CPU-bound stage observed its cancel event and stopped early."""
