"""
Anchor detection.

A detector looks at a decoded photo and answers "where should the overlay
go?" with a DetectedAnchor, or None when nothing clears the confidence
threshold. All detectors here are deterministic: the same pixels always give
the same anchor.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import List, Optional, Sequence, Union

import cv2
import numpy as np

from .errors import InvalidInputError, OperationCancelled
from .models import DetectedAnchor, SourceImage

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.5
DEFAULT_MAX_PIXELS = 1_000_000


def to_canonical_bgr(pixels: np.ndarray) -> np.ndarray:
    if pixels.ndim == 2:
        return cv2.cvtColor(pixels, cv2.COLOR_GRAY2BGR)
    if pixels.shape[2] == 4:
        return cv2.cvtColor(pixels, cv2.COLOR_BGRA2BGR)
    return pixels


def pick_best(candidates: Sequence[DetectedAnchor]) -> Optional[DetectedAnchor]:
    """Highest confidence wins; ties go to the leftmost, then topmost centre."""
    if not candidates:
        return None
    return min(candidates, key=lambda a: (-a.confidence, a.center[0], a.center[1]))


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Detection cancelled")


class AnchorDetector:
    """Base class: validation, canonical colour, downscaling and thresholding."""

    name = "base"

    def __init__(self, confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
                 max_pixels: int = DEFAULT_MAX_PIXELS):
        if not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        self.confidence_threshold = confidence_threshold
        self.max_pixels = max_pixels

    def detect(self, image: SourceImage, cancel: Optional[threading.Event] = None) -> Optional[DetectedAnchor]:
        if image.width == 0 or image.height == 0:
            raise InvalidInputError("Cannot detect anchors in an empty image")
        _check_cancel(cancel)

        bgr = to_canonical_bgr(image.pixels)
        factor = factor_y = 1.0
        pixel_count = image.width * image.height
        if pixel_count > self.max_pixels:
            new_w = max(1, int(round(image.width * math.sqrt(self.max_pixels / pixel_count))))
            factor = new_w / image.width
            new_h = max(1, int(round(image.height * factor)))
            factor_y = new_h / image.height
            bgr = cv2.resize(bgr, (new_w, new_h), interpolation=cv2.INTER_AREA)
            logger.debug("Downscaled %dx%d to %dx%d for detection", image.width, image.height, new_w, new_h)

        best = pick_best(self.find_candidates(bgr, cancel))
        if best is None or best.confidence < self.confidence_threshold:
            logger.info(
                "%s detector found no anchor above %.2f (best: %s)",
                self.name, self.confidence_threshold,
                "none" if best is None else f"{best.confidence:.3f}",
            )
            return None
        return best if factor == 1.0 else best.rescaled(factor, factor_y)

    def find_candidates(self, bgr: np.ndarray, cancel: Optional[threading.Event]) -> List[DetectedAnchor]:
        raise NotImplementedError


class FrameAnchorDetector(AnchorDetector):
    """
    Fixed placement: the anchor is the bottom centre of the photo and spans
    its full width, so a point-of-view overlay is scaled to the photo width
    and rests on the bottom edge.
    """

    name = "frame"

    def detect(self, image: SourceImage, cancel: Optional[threading.Event] = None) -> Optional[DetectedAnchor]:
        if image.width == 0 or image.height == 0:
            raise InvalidInputError("Cannot detect anchors in an empty image")
        _check_cancel(cancel)
        return DetectedAnchor(center=(image.width / 2.0, float(image.height)), scale=float(image.width))


def _rotate_bound(image: np.ndarray, angle: float) -> np.ndarray:
    h, w = image.shape[:2]
    center = ((w - 1) / 2.0, (h - 1) / 2.0)
    matrix = cv2.getRotationMatrix2D(center, angle, 1.0)
    cos, sin = abs(matrix[0, 0]), abs(matrix[0, 1])
    new_w = int(math.ceil(h * sin + w * cos))
    new_h = int(math.ceil(h * cos + w * sin))
    matrix[0, 2] += (new_w - 1) / 2.0 - center[0]
    matrix[1, 2] += (new_h - 1) / 2.0 - center[1]
    return cv2.warpAffine(image, matrix, (new_w, new_h), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)


class TemplateAnchorDetector(AnchorDetector):
    """
    Multi-scale, multi-rotation template matching (normalised correlation).

    The anchor span is the matched template width, so the asset's
    ``anchor_scale_hint`` should be the width of the same feature in the asset.
    """

    name = "template"

    def __init__(self, template: np.ndarray,
                 scales: Sequence[float] = (0.5, 0.63, 0.79, 1.0, 1.26, 1.59, 2.0),
                 rotations: Sequence[float] = (0.0, -15.0, 15.0, -30.0, 30.0),
                 min_template_size: int = 8,
                 **kwargs):
        super().__init__(**kwargs)
        if template is None or template.size == 0:
            raise ValueError("Template image is empty")
        gray = cv2.cvtColor(to_canonical_bgr(template), cv2.COLOR_BGR2GRAY)
        if float(gray.std()) == 0.0:
            raise ValueError("Template image has no contrast to match against")
        self.template = gray
        self.scales = tuple(scales)
        self.rotations = tuple(rotations)
        self.min_template_size = min_template_size

    @classmethod
    def from_file(cls, path: str, **kwargs) -> "TemplateAnchorDetector":
        template = cv2.imread(path, cv2.IMREAD_UNCHANGED)
        if template is None:
            raise ValueError(f"Could not read template image {path!r}")
        return cls(template, **kwargs)

    def find_candidates(self, bgr: np.ndarray, cancel: Optional[threading.Event]) -> List[DetectedAnchor]:
        gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
        img_h, img_w = gray.shape
        base_h, base_w = self.template.shape
        candidates: List[DetectedAnchor] = []

        for rotation in self.rotations:
            rotated = self.template if rotation == 0 else _rotate_bound(self.template, rotation)
            for scale in self.scales:
                _check_cancel(cancel)
                tw = int(round(rotated.shape[1] * scale))
                th = int(round(rotated.shape[0] * scale))
                if min(tw, th) < self.min_template_size or tw > img_w or th > img_h:
                    continue
                interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
                scaled = rotated if scale == 1.0 else cv2.resize(rotated, (tw, th), interpolation=interpolation)
                if float(scaled.std()) == 0.0:
                    continue

                scores = cv2.matchTemplate(gray, scaled, cv2.TM_CCOEFF_NORMED)
                _, max_val, _, max_loc = cv2.minMaxLoc(scores)
                if not np.isfinite(max_val):
                    continue
                candidates.append(DetectedAnchor(
                    center=(max_loc[0] + tw / 2.0, max_loc[1] + th / 2.0),
                    scale=base_w * scale,
                    rotation=float(rotation),
                    confidence=float(min(1.0, max(0.0, max_val))),
                ))
        return candidates


class FaceAnchorDetector(AnchorDetector):
    """Haar-cascade face detection; the anchor spans the face width."""

    name = "face"

    def __init__(self, cascade: Optional[Union[str, "cv2.CascadeClassifier"]] = None,
                 scale_factor: float = 1.1, min_neighbors: int = 5, min_size: int = 40, **kwargs):
        super().__init__(**kwargs)
        if cascade is None:
            cascade = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        if isinstance(cascade, str):
            path = cascade
            cascade = cv2.CascadeClassifier(path)
            if cascade.empty():
                raise ValueError(f"Could not load Haar cascade from {path!r}")
        self.cascade = cascade
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size

    def find_candidates(self, bgr: np.ndarray, cancel: Optional[threading.Event]) -> List[DetectedAnchor]:
        gray = cv2.equalizeHist(cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY))
        _check_cancel(cancel)
        rects, _, weights = self.cascade.detectMultiScale3(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(self.min_size, self.min_size),
            outputRejectLevels=True,
        )
        candidates = []
        for (x, y, w, h), weight in zip(rects, np.ravel(weights)):
            candidates.append(DetectedAnchor(
                center=(float(x + w / 2.0), float(y + h / 2.0)),
                scale=float(w),
                confidence=1.0 / (1.0 + math.exp(-float(weight))),
            ))
        return candidates


def build_detector(kind: str, template_path: Optional[str] = None, **kwargs) -> AnchorDetector:
    if kind == "frame":
        return FrameAnchorDetector(**kwargs)
    if kind == "template":
        if not template_path:
            raise ValueError("The template detector needs a template image path")
        return TemplateAnchorDetector.from_file(template_path, **kwargs)
    if kind == "face":
        return FaceAnchorDetector(**kwargs)
    raise ValueError(f"Unknown detector kind {kind!r}")
