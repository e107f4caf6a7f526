"""
Global fixtures for the DegenBot test suite.

Images are synthesised with numpy/OpenCV; the network is faked with
httpx.MockTransport. Nothing here talks to Telegram.
"""
from typing import Callable, List

import cv2
import httpx
import numpy as np
import pytest

from overlay.models import OverlayAsset, SourceImage
from overlay.registry import AssetRegistry

RED = (0, 0, 255, 255)


def encode_png(pixels: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", pixels)
    assert ok
    return buf.tobytes()


def decode(data: bytes) -> np.ndarray:
    return cv2.imdecode(np.frombuffer(data, np.uint8), cv2.IMREAD_UNCHANGED)


def red_centroid(pixels: np.ndarray):
    """Centre of the pure-red marker pixels in a BGR(A) image."""
    mask = (pixels[:, :, 2] > 200) & (pixels[:, :, 1] < 60) & (pixels[:, :, 0] < 60)
    ys, xs = np.nonzero(mask)
    assert len(xs) > 0, "no marker pixels found"
    return float(xs.mean()), float(ys.mean())


def marker_raster(size: int = 41, marker_at=(20, 20), half: int = 2) -> np.ndarray:
    """Transparent BGRA square with an opaque red block at ``marker_at``."""
    raster = np.zeros((size, size, 4), dtype=np.uint8)
    x, y = marker_at
    raster[y - half:y + half + 1, x - half:x + half + 1] = RED
    return raster


def make_asset(asset_id: str = "marker", marker_at=(20, 20), group=None, orientation="any", half: int = 2) -> OverlayAsset:
    return OverlayAsset(
        id=asset_id,
        raster=marker_raster(marker_at=marker_at, half=half),
        reference_width=41,
        reference_height=41,
        anchor_point=(20.0, 20.0),
        anchor_scale_hint=1.0,
        group=group,
        orientation=orientation,
    )


@pytest.fixture
def gray_photo() -> np.ndarray:
    return np.full((400, 400, 3), 128, dtype=np.uint8)


@pytest.fixture
def gray_source(gray_photo) -> SourceImage:
    return SourceImage(pixels=gray_photo, format="png")


@pytest.fixture
def marker_asset() -> OverlayAsset:
    return make_asset()


@pytest.fixture
def registry() -> AssetRegistry:
    """Small in-memory registry: one exact asset plus a two-variant group."""
    return AssetRegistry([
        make_asset("marker"),
        make_asset("hands_portrait", group="hands", orientation="portrait"),
        make_asset("hands_landscape", group="hands", orientation="landscape"),
    ])


@pytest.fixture
def noise():
    """Deterministic noise generator: noise(shape, seed)."""
    def _noise(shape, seed=0) -> np.ndarray:
        rng = np.random.default_rng(seed)
        return rng.integers(0, 256, size=shape, dtype=np.uint8)
    return _noise


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def _recording(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_recording)


@pytest.fixture
def mock_http():
    """Factory: mock_http(handler) -> (AsyncClient, RecordingTransport)."""
    def _factory(handler):
        transport = RecordingTransport(handler)
        return httpx.AsyncClient(transport=transport), transport

    return _factory


async def no_sleep(_delay: float) -> None:
    return None
