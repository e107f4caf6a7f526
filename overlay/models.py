"""Value types passed between pipeline stages.

All of them are frozen; pixel buffers are marked read-only so that a stage can
never scribble over the output of the stage before it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from .errors import FailureReason


class ColorFormat(str, Enum):
    GRAY = "gray"
    BGR = "bgr"
    BGRA = "bgra"


class PipelineState(str, Enum):
    FETCHING = "fetching"
    DETECTING = "detecting"
    COMPOSITING = "compositing"
    DONE = "done"
    FAILED = "failed"


def _frozen_pixels(pixels: np.ndarray) -> np.ndarray:
    if pixels.dtype != np.uint8:
        raise ValueError(f"Expected uint8 pixels, got {pixels.dtype}")
    if pixels.ndim not in (2, 3):
        raise ValueError(f"Expected a 2D or 3D pixel array, got {pixels.ndim}D")
    frozen = np.array(pixels, copy=True)
    frozen.setflags(write=False)
    return frozen


def color_format_of(pixels: np.ndarray) -> ColorFormat:
    if pixels.ndim == 2 or pixels.shape[2] == 1:
        return ColorFormat.GRAY
    if pixels.shape[2] == 3:
        return ColorFormat.BGR
    if pixels.shape[2] == 4:
        return ColorFormat.BGRA
    raise ValueError(f"Unsupported channel count: {pixels.shape[2]}")


@dataclass(frozen=True)
class SourceImage:
    """A decoded user photo. ``format`` is the sniffed container (png, jpeg...)."""

    pixels: np.ndarray
    format: str = "png"

    def __post_init__(self):
        object.__setattr__(self, "pixels", _frozen_pixels(self.pixels))
        color_format_of(self.pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    @property
    def color_format(self) -> ColorFormat:
        return color_format_of(self.pixels)


@dataclass(frozen=True)
class OverlayAsset:
    """
    A pre-authored BGRA graphic plus the metadata needed to place it.

    ``anchor_point`` is the point that must land on the detected anchor centre,
    in continuous asset coordinates: ``(w / 2, h)`` is the middle of the bottom
    edge. ``anchor_scale_hint`` is the pixel span, in the asset, of the feature
    the detector measures in the photo: the overlay is scaled by
    ``anchor.scale / anchor_scale_hint``.
    """

    id: str
    raster: np.ndarray
    reference_width: int
    reference_height: int
    anchor_point: Tuple[float, float]
    anchor_scale_hint: float
    group: Optional[str] = None
    orientation: str = "any"

    def __post_init__(self):
        raster = _frozen_pixels(self.raster)
        if raster.ndim != 3 or raster.shape[2] != 4:
            raise ValueError(f"Overlay asset {self.id!r} must be a 4-channel BGRA raster")
        if self.anchor_scale_hint <= 0:
            raise ValueError(f"Overlay asset {self.id!r} has a non-positive anchor_scale_hint")
        object.__setattr__(self, "raster", raster)
        object.__setattr__(self, "anchor_point", (float(self.anchor_point[0]), float(self.anchor_point[1])))


@dataclass(frozen=True)
class DetectedAnchor:
    """
    Where the overlay goes: centre in source pixels, span of the anchor region
    in source pixels, rotation in degrees (counter-clockwise positive).

    Positions are continuous image coordinates: pixel ``i`` covers ``[i, i + 1)``,
    so the bottom-right corner of a WxH image is ``(W, H)``.
    """

    center: Tuple[float, float]
    scale: float
    rotation: float = 0.0
    confidence: float = 1.0

    def __post_init__(self):
        if not self.scale > 0:
            raise ValueError(f"Anchor scale must be positive, got {self.scale}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Anchor confidence must be within [0, 1], got {self.confidence}")

    def rescaled(self, factor: float, factor_y: Optional[float] = None) -> "DetectedAnchor":
        """
        Map an anchor found on a resized image back to the full-size geometry.

        Continuous coordinates scale linearly, so plain division is exact.
        """
        return DetectedAnchor(
            center=(self.center[0] / factor, self.center[1] / (factor_y or factor)),
            scale=self.scale / factor,
            rotation=self.rotation,
            confidence=self.confidence,
        )


@dataclass(frozen=True)
class CompositeResult:
    data: bytes
    format: str

    @property
    def file_name(self) -> str:
        ext = "jpg" if self.format == "jpeg" else self.format
        return f"overlay.{ext}"


@dataclass(frozen=True)
class PipelineRequest:
    source_url: str
    asset_id: str
    deadline: float


@dataclass(frozen=True)
class PipelineOutcome:
    state: PipelineState
    result: Optional[CompositeResult] = None
    failure: Optional[FailureReason] = None
    detail: str = field(default="", compare=False)

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    @classmethod
    def done(cls, result: CompositeResult) -> "PipelineOutcome":
        return cls(state=PipelineState.DONE, result=result)

    @classmethod
    def failed(cls, reason: FailureReason, detail: str = "") -> "PipelineOutcome":
        return cls(state=PipelineState.FAILED, failure=reason, detail=detail)
