"""Placing an overlay asset onto a photo with a similarity transform."""

from __future__ import annotations

import logging
import math
import threading
from typing import Optional, Tuple

import cv2
import numpy as np

from .errors import CompositeError, OperationCancelled
from .models import CompositeResult, DetectedAnchor, OverlayAsset, SourceImage

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("png", "jpeg", "webp", "source")

_ENCODERS = {
    "png": (".png", [int(cv2.IMWRITE_PNG_COMPRESSION), 6]),
    "jpeg": (".jpg", [int(cv2.IMWRITE_JPEG_QUALITY), 92]),
    "webp": (".webp", [int(cv2.IMWRITE_WEBP_QUALITY), 92]),
    "bmp": (".bmp", []),
    "tiff": (".tiff", []),
}


def similarity_matrix(anchor_point: Tuple[float, float], center: Tuple[float, float],
                      scale: float, rotation: float) -> np.ndarray:
    """
    2x3 matrix: rotate and scale about ``anchor_point``, then move it onto ``center``.

    Both points are continuous image coordinates (pixel ``i`` covers
    ``[i, i + 1)``); the matrix itself maps pixel centres to pixel centres,
    which is what ``cv2.warpAffine`` samples.
    """
    pivot = (anchor_point[0] - 0.5, anchor_point[1] - 0.5)
    matrix = cv2.getRotationMatrix2D(pivot, rotation, scale)
    matrix[0, 2] += center[0] - anchor_point[0]
    matrix[1, 2] += center[1] - anchor_point[1]
    return matrix


def _premultiplied(raster: np.ndarray) -> np.ndarray:
    bgra = raster.astype(np.float32)
    alpha = bgra[:, :, 3:4] / 255.0
    return np.concatenate([bgra[:, :, :3] * alpha, bgra[:, :, 3:4]], axis=2)


def _prefilter(premul: np.ndarray, anchor_point: Tuple[float, float], scale: float):
    """Shrink with area averaging before a downscaling warp, so fine detail does not alias."""
    h, w = premul.shape[:2]
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    fx, fy = new_w / w, new_h / h
    shrunk = cv2.resize(premul, (new_w, new_h), interpolation=cv2.INTER_AREA)
    point = (anchor_point[0] * fx, anchor_point[1] * fy)
    return shrunk, point, scale / fx


def _coverage(matrix: np.ndarray, shape: Tuple[int, int], width: int, height: int) -> np.ndarray:
    """1.0 where a destination pixel centre falls inside the transformed overlay, else 0.0."""
    inverse = cv2.invertAffineTransform(matrix)
    ys, xs = np.mgrid[0:shape[0], 0:shape[1]].astype(np.float64)
    u = inverse[0, 0] * xs + inverse[0, 1] * ys + inverse[0, 2]
    v = inverse[1, 0] * xs + inverse[1, 1] * ys + inverse[1, 2]
    eps = 1e-6
    inside = (u >= -0.5 - eps) & (u <= width - 0.5 + eps) & (v >= -0.5 - eps) & (v <= height - 0.5 + eps)
    return inside.astype(np.float32)


class OverlayCompositor:
    """
    Alpha-blends an overlay asset onto a source photo.

    Works on premultiplied colour so bilinear resampling does not bleed the
    colour of fully transparent pixels into the edges. Neither input is
    modified; the result is a freshly encoded image.
    """

    def __init__(self, output_format: str = "png"):
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format {output_format!r}")
        self.output_format = output_format

    def composite(self, source: SourceImage, overlay: OverlayAsset, anchor: DetectedAnchor,
                  cancel: Optional[threading.Event] = None) -> CompositeResult:
        try:
            blended = self.blend(source, overlay, anchor, cancel)
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("Compositing cancelled")
            return self.encode(blended, source.format)
        except (OperationCancelled, CompositeError):
            raise
        except (cv2.error, ValueError, MemoryError) as e:
            raise CompositeError(f"Compositing failed: {e}") from e

    def blend(self, source: SourceImage, overlay: OverlayAsset, anchor: DetectedAnchor,
              cancel: Optional[threading.Event] = None) -> np.ndarray:
        base = source.pixels
        if base.ndim == 2:
            base = cv2.cvtColor(base, cv2.COLOR_GRAY2BGR)
        else:
            base = base.copy()
        canvas_h, canvas_w = base.shape[:2]

        scale = anchor.scale / overlay.anchor_scale_hint
        premul = _premultiplied(overlay.raster)
        anchor_point = overlay.anchor_point
        if scale < 1.0:
            premul, anchor_point, scale = _prefilter(premul, anchor_point, scale)

        matrix = similarity_matrix(anchor_point, anchor.center, scale, anchor.rotation)

        # Only warp the part of the canvas the overlay can reach.
        h, w = premul.shape[:2]
        corners = np.array(
            [[-0.5, -0.5, 1], [w - 0.5, -0.5, 1], [-0.5, h - 0.5, 1], [w - 0.5, h - 0.5, 1]], dtype=np.float64
        )
        mapped = corners @ matrix.T
        x0 = max(0, int(math.floor(mapped[:, 0].min())))
        y0 = max(0, int(math.floor(mapped[:, 1].min())))
        x1 = min(canvas_w, int(math.ceil(mapped[:, 0].max())) + 1)
        y1 = min(canvas_h, int(math.ceil(mapped[:, 1].max())) + 1)
        if x0 >= x1 or y0 >= y1:
            logger.info("Overlay %s falls entirely outside the %dx%d photo", overlay.id, canvas_w, canvas_h)
            return base

        if cancel is not None and cancel.is_set():
            raise OperationCancelled("Compositing cancelled")

        matrix[0, 2] -= x0
        matrix[1, 2] -= y0
        # A replicated one-pixel border keeps edge pixels at full strength up to
        # the overlay's true outline; the coverage mask cuts everything beyond it.
        padded = cv2.copyMakeBorder(premul, 1, 1, 1, 1, cv2.BORDER_REPLICATE)
        padded_matrix = matrix.copy()
        padded_matrix[:, 2] -= matrix[:, 0] + matrix[:, 1]
        warped = cv2.warpAffine(
            padded, padded_matrix, (x1 - x0, y1 - y0),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(0, 0, 0, 0),
        )
        warped *= _coverage(matrix, (y1 - y0, x1 - x0), w, h)[:, :, None]

        alpha = np.clip(warped[:, :, 3:4] / 255.0, 0.0, 1.0)
        region = base[y0:y1, x0:x1].astype(np.float32)
        out = np.empty_like(region)
        out[:, :, :3] = np.clip(warped[:, :, :3], 0.0, 255.0) + region[:, :, :3] * (1.0 - alpha)
        if region.shape[2] == 4:
            out[:, :, 3:4] = alpha * 255.0 + region[:, :, 3:4] * (1.0 - alpha)
        base[y0:y1, x0:x1] = np.clip(np.rint(out), 0, 255).astype(np.uint8)
        return base

    def encode(self, pixels: np.ndarray, source_format: str) -> CompositeResult:
        fmt = self.output_format
        if fmt == "source":
            fmt = source_format if source_format in _ENCODERS else "png"
        ext, params = _ENCODERS[fmt]
        if fmt == "jpeg" and pixels.ndim == 3 and pixels.shape[2] == 4:
            pixels = cv2.cvtColor(pixels, cv2.COLOR_BGRA2BGR)

        ok, buf = cv2.imencode(ext, pixels, params)
        if not ok:
            raise CompositeError(f"Failed to encode result as {fmt}")
        return CompositeResult(data=buf.tobytes(), format=fmt)
