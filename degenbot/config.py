"""Configuration for DegenBot."""

import os
from typing import Optional

from dotenv import load_dotenv

# Load variables from a .env file next to the project, if there is one
load_dotenv()


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


# Telegram bot token (required)
TELEGRAM_BOT_TOKEN: Optional[str] = os.environ.get("TELEGRAM_BOT_TOKEN")

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()

# Overlay assets
ASSET_DIR: str = os.environ.get("OVERLAY_ASSET_DIR", "img")
ASSET_ID: str = os.environ.get("OVERLAY_ASSET_ID", "hands")

# Detection: "frame" (fixed placement), "template" or "face"
DETECTOR: str = os.environ.get("OVERLAY_DETECTOR", "frame")
TEMPLATE_PATH: Optional[str] = os.environ.get("OVERLAY_TEMPLATE_PATH")
CONFIDENCE_THRESHOLD: float = _float("OVERLAY_CONFIDENCE_THRESHOLD", 0.5)
MAX_DETECT_PIXELS: int = _int("OVERLAY_MAX_DETECT_PIXELS", 1_000_000)

# Fetching
FETCH_ATTEMPTS: int = _int("OVERLAY_FETCH_ATTEMPTS", 3)
FETCH_TIMEOUT: float = _float("OVERLAY_FETCH_TIMEOUT", 15.0)
MAX_IMAGE_BYTES: int = _int("OVERLAY_MAX_IMAGE_BYTES", 20 * 1024 * 1024)
MAX_SOURCE_PIXELS: int = _int("OVERLAY_MAX_SOURCE_PIXELS", 40_000_000)

# Output and load limits
OUTPUT_FORMAT: str = os.environ.get("OVERLAY_OUTPUT_FORMAT", "png")
PIPELINE_TIMEOUT: float = _float("OVERLAY_PIPELINE_TIMEOUT", 60.0)
MAX_IN_FLIGHT: int = _int("OVERLAY_MAX_IN_FLIGHT", 4)
MAX_QUEUED: int = _int("OVERLAY_MAX_QUEUED", 16)
WORKERS: int = _int("OVERLAY_WORKERS", 2)

# Chat behaviour
RATE_LIMIT_REQUESTS: int = _int("RATE_LIMIT_REQUESTS", 5)
RATE_LIMIT_WINDOW: float = _float("RATE_LIMIT_WINDOW", 60.0)
PENDING_EXPIRY: float = _float("PENDING_EXPIRY", 180.0)
SWEEP_INTERVAL: float = _float("SWEEP_INTERVAL", 60.0)
