"""Image acquisition: download a user photo and decode it into a SourceImage."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Sequence

import cv2
import httpx
import numpy as np

from .errors import (
    DecodeError,
    FetchError,
    InvalidInputError,
    PayloadTooLargeError,
    TransientFetchError,
)
from .models import SourceImage

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 20 * 1024 * 1024
DEFAULT_MAX_PIXELS = 40_000_000

# Telegram's file API serves photos as application/octet-stream
_GENERIC_CONTENT_TYPES = {"application/octet-stream", "binary/octet-stream"}

_MAGIC = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
    (b"II*\x00", "tiff"),
    (b"MM\x00*", "tiff"),
    (b"BM", "bmp"),
)


def sniff_format(data: bytes) -> Optional[str]:
    """Return the container format from the leading magic bytes, if known."""
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    for magic, fmt in _MAGIC:
        if data.startswith(magic):
            return fmt
    return None


def decode_image(data: bytes, max_pixels: int = DEFAULT_MAX_PIXELS) -> SourceImage:
    if not data:
        raise InvalidInputError("Image payload is empty")

    fmt = sniff_format(data)
    if fmt is None:
        raise DecodeError("Unsupported or unrecognised image encoding")

    # IMREAD_UNCHANGED skips EXIF orientation; JPEG has no alpha to keep anyway
    flags = cv2.IMREAD_COLOR if fmt == "jpeg" else cv2.IMREAD_UNCHANGED
    try:
        pixels = cv2.imdecode(np.frombuffer(data, np.uint8), flags)
    except cv2.error as e:
        raise DecodeError(f"Failed to decode {fmt} image: {e}") from e
    if pixels is None:
        raise DecodeError(f"Failed to decode {fmt} image")

    if pixels.dtype == np.uint16:
        pixels = (pixels >> 8).astype(np.uint8)
    elif pixels.dtype != np.uint8:
        raise DecodeError(f"Unsupported pixel depth: {pixels.dtype}")

    if pixels.ndim == 3 and pixels.shape[2] == 1:
        pixels = pixels[:, :, 0]

    height, width = pixels.shape[:2]
    if width == 0 or height == 0:
        raise InvalidInputError("Image has zero width or height")
    if width * height > max_pixels:
        raise PayloadTooLargeError(f"Image is {width}x{height}, above the {max_pixels} pixel limit")

    return SourceImage(pixels=pixels, format=fmt)


def _validate_url(url: str, allowed_schemes: Sequence[str]) -> httpx.URL:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise InvalidInputError(f"Malformed URL: {e}") from e
    if parsed.scheme not in allowed_schemes:
        raise InvalidInputError(f"URL scheme {parsed.scheme!r} is not allowed")
    if not parsed.host:
        raise InvalidInputError("URL has no host")
    return parsed


class ImageFetcher:
    """
    Downloads images with bounded retries.

    Connection failures, timeouts and 5xx responses are retried with
    exponential backoff plus jitter; 4xx, oversized payloads and undecodable
    bytes fail immediately. Nothing is cached.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_pixels: int = DEFAULT_MAX_PIXELS,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        allowed_schemes: Sequence[str] = ("http", "https"),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = client
        self.max_attempts = max_attempts
        self.max_bytes = max_bytes
        self.max_pixels = max_pixels
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.allowed_schemes = tuple(allowed_schemes)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int) -> float:
        ceiling = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        return ceiling / 2 + self._rng.uniform(0, ceiling / 2)

    async def fetch(self, url: str, timeout: float) -> SourceImage:
        parsed = _validate_url(url, self.allowed_schemes)
        if self._client is not None:
            data = await self._fetch_with_retries(self._client, parsed, timeout)
        else:
            async with httpx.AsyncClient() as client:
                data = await self._fetch_with_retries(client, parsed, timeout)
        return decode_image(data, max_pixels=self.max_pixels)

    async def _fetch_with_retries(self, client: httpx.AsyncClient, url: httpx.URL, timeout: float) -> bytes:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._download(client, url, timeout)
            except TransientFetchError as e:
                if attempt >= self.max_attempts:
                    raise FetchError(
                        f"Giving up on {url.host} after {attempt} attempts: {e}",
                        status_code=e.status_code,
                    ) from e
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Fetch attempt %d/%d from %s failed (%s), retrying in %.2fs",
                    attempt, self.max_attempts, url.host, e, delay,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _download(self, client: httpx.AsyncClient, url: httpx.URL, timeout: float) -> bytes:
        try:
            async with client.stream("GET", url, timeout=timeout, follow_redirects=True) as resp:
                if resp.status_code >= 500:
                    raise TransientFetchError(f"HTTP {resp.status_code}", status_code=resp.status_code)
                if resp.status_code >= 400:
                    raise FetchError(f"HTTP {resp.status_code}", status_code=resp.status_code)
                if not resp.is_success:
                    raise FetchError(f"Unexpected HTTP {resp.status_code}", status_code=resp.status_code)

                content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
                if content_type and not (content_type.startswith("image/") or content_type in _GENERIC_CONTENT_TYPES):
                    raise InvalidInputError(f"Content type {content_type!r} is not an image")

                declared = resp.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise PayloadTooLargeError(f"Declared size {declared} exceeds {self.max_bytes} bytes")

                buf = bytearray()
                async for chunk in resp.aiter_bytes():
                    buf.extend(chunk)
                    if len(buf) > self.max_bytes:
                        raise PayloadTooLargeError(f"Payload exceeds {self.max_bytes} bytes")
                return bytes(buf)
        except httpx.TransportError as e:
            raise TransientFetchError(f"{type(e).__name__}: {e}") from e
        except (httpx.DecodingError, httpx.TooManyRedirects) as e:
            raise FetchError(f"{type(e).__name__}: {e}") from e
