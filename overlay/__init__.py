"""Overlay package for DegenBot.

This package contains the image pipeline behind the bot: it fetches a
user-submitted photo, finds the spot where an overlay asset belongs, composites
the asset onto the photo and hands the encoded result back to the chat layer.
"""

from .errors import FailureReason
from .models import CompositeResult, DetectedAnchor, PipelineOutcome, PipelineRequest
from .pipeline import OverlayPipeline

__all__ = [
    "CompositeResult",
    "DetectedAnchor",
    "FailureReason",
    "OverlayPipeline",
    "PipelineOutcome",
    "PipelineRequest",
]
