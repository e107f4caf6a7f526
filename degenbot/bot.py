"""
DegenBot — Telegram bot (aiogram 3)

Flow:
- /degenme → the bot answers with a prompt and remembers it for this user
- the user replies to that prompt with a photo (within 3 minutes)
- the photo goes through the overlay pipeline and comes back with the hands on it
Prompts nobody answered are swept away in the background.
"""

import asyncio
import html
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from aiogram import Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.filters import Command, CommandStart
from aiogram.types import BufferedInputFile, Message, PhotoSize

from overlay import FailureReason, OverlayPipeline
from overlay.compositor import OverlayCompositor
from overlay.detector import build_detector
from overlay.errors import AssetLoadError
from overlay.fetcher import ImageFetcher
from overlay.registry import AssetRegistry

from . import config

logging.basicConfig(level=config.LOG_LEVEL)

DEGEN_COMMAND = "degenme"

# ─────────────────────────────────────────────────────────────
# Texts (UX)
# ─────────────────────────────────────────────────────────────

START_MESSAGE = (
    "Welcome to the Degen POV bot! "
    f"Use /{DEGEN_COMMAND} to create an overlay in any channel, group, or DM I am in!"
)

HELP_MESSAGE = f"""How it works 👇

1) Send /{DEGEN_COMMAND}
2) Reply to my message with a photo (within 3 minutes)
3) Get your photo back from the Degen Point of View"""

PROMPT_MESSAGE = "Hey, {user}! Please reply within 3 minutes to this message with an image to see the Degen Point of View!"
PROMPT_REPLACED_MESSAGE = "Previous request cancelled. " + PROMPT_MESSAGE
PROCESSING_MESSAGE = "Making {user} a degen... Please wait..."
CAPTION = "Here you go {user}, you degen."
RATE_LIMITED = "You're sending commands too quickly. Please wait a moment before trying again."
EXPIRED_MESSAGE = f"Your overlay request has expired. Please use the /{DEGEN_COMMAND} command again."
FORGOT_MESSAGE = f"{{user}}, you degen, you forgot to send me a picture! Please run /{DEGEN_COMMAND} again to send an image."
ERROR_GENERAL = "Failed to process your image. Please try again."

FAILURE_MESSAGES: Dict[FailureReason, str] = {
    FailureReason.INVALID_INPUT: "That doesn't look like an image I can read. Please send a regular photo.",
    FailureReason.FETCH_ERROR: "Failed to download your image. Please try again.",
    FailureReason.NO_ANCHOR_FOUND: "Couldn't find a spot to put the overlay on this one. Try another photo.",
    FailureReason.ASSET_NOT_FOUND: "The overlay is not available right now. Please try again later.",
    FailureReason.COMPOSITE_ERROR: "Failed to process your image. Please try again later.",
    FailureReason.TIMEOUT: "That took too long. Please try again.",
    FailureReason.BUSY: "I'm busy degening other people right now. Try again in a minute.",
}


def _display_name(msg: Message, fallback: str) -> str:
    user = msg.from_user
    if user and user.username:
        return html.escape(f"@{user.username}")
    return fallback


# ─────────────────────────────────────────────────────────────
# Per-user state
# ─────────────────────────────────────────────────────────────

class RateLimiter:
    """Fixed window: at most ``max_requests`` per key every ``window`` seconds."""

    def __init__(self, max_requests: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._limits: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str) -> bool:
        now = self._clock()
        started, count = self._limits.get(key, (now, 0))
        if now - started > self.window:
            started, count = now, 0
        if count >= self.max_requests:
            return False
        self._limits[key] = (started, count + 1)
        return True


class ClaimStatus(str, Enum):
    NONE = "none"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    OK = "ok"


@dataclass(frozen=True)
class PendingRequest:
    message_id: int
    created: float
    user: str


class PendingOverlays:
    """(chat_id, user_id) → the prompt message the user has to reply to."""

    def __init__(self, expiry: float, clock: Callable[[], float] = time.monotonic):
        self.expiry = expiry
        self._clock = clock
        self._items: Dict[Tuple[int, int], PendingRequest] = {}

    def __contains__(self, key: Tuple[int, int]) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def put(self, chat_id: int, user_id: int, message_id: int, user: str) -> None:
        self._items[(chat_id, user_id)] = PendingRequest(message_id, self._clock(), user)

    def claim(self, chat_id: int, user_id: int, reply_to_id: int) -> ClaimStatus:
        key = (chat_id, user_id)
        item = self._items.get(key)
        if item is None:
            return ClaimStatus.NONE
        if item.message_id != reply_to_id:
            return ClaimStatus.MISMATCH
        del self._items[key]
        if self._clock() - item.created > self.expiry:
            return ClaimStatus.EXPIRED
        return ClaimStatus.OK

    def pop_expired(self) -> List[Tuple[int, PendingRequest]]:
        now = self._clock()
        expired = [key for key, item in self._items.items() if now - item.created > self.expiry]
        return [(chat_id, self._items.pop((chat_id, user_id))) for chat_id, user_id in expired]


async def sweep_expired(bot: Bot, pending: PendingOverlays) -> int:
    expired = pending.pop_expired()
    for chat_id, item in expired:
        logging.info("Removing expired overlay request in chat %s", chat_id)
        try:
            await bot.send_message(chat_id, FORGOT_MESSAGE.format(user=item.user))
        except Exception as e:
            logging.error("Failed to send expiry message: %s", e)
        try:
            await bot.delete_message(chat_id, item.message_id)
        except Exception as e:
            logging.error("Failed to delete expired overlay prompt: %s", e)
    return len(expired)


async def _sweeper(bot: Bot, pending: PendingOverlays, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        await sweep_expired(bot, pending)


# ─────────────────────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────────────────────

async def _photo_url(bot: Bot, photo: PhotoSize) -> str:
    file = await bot.get_file(photo.file_id)
    return f"https://api.telegram.org/file/bot{bot.token}/{file.file_path}"


async def handle_start(msg: Message):
    await msg.answer(START_MESSAGE)


async def handle_help(msg: Message):
    await msg.answer(HELP_MESSAGE)


async def handle_degenme(msg: Message, pending: PendingOverlays, limiter: RateLimiter):
    if msg.from_user is None:
        return await msg.answer(PROMPT_MESSAGE.format(user="there"))

    chat_id, user_id = msg.chat.id, msg.from_user.id
    if not limiter.allow(f"{chat_id}:{user_id}"):
        return await msg.answer(RATE_LIMITED)

    user = _display_name(msg, "there")
    template = PROMPT_REPLACED_MESSAGE if (chat_id, user_id) in pending else PROMPT_MESSAGE
    sent = await msg.answer(template.format(user=user))
    pending.put(chat_id, user_id, sent.message_id, _display_name(msg, "Degen"))


async def handle_photo(msg: Message, bot: Bot, pipeline: OverlayPipeline, pending: PendingOverlays):
    # Only photos sent as a reply to our prompt are ours to handle
    if msg.from_user is None or msg.reply_to_message is None or not msg.photo:
        return

    claim = pending.claim(msg.chat.id, msg.from_user.id, msg.reply_to_message.message_id)
    if claim is ClaimStatus.EXPIRED:
        return await msg.answer(EXPIRED_MESSAGE)
    if claim is not ClaimStatus.OK:
        return

    user = _display_name(msg, "Anonymous")
    status = await msg.answer(PROCESSING_MESSAGE.format(user=user))
    try:
        url = await _photo_url(bot, msg.photo[-1])
        deadline = asyncio.get_running_loop().time() + config.PIPELINE_TIMEOUT
        outcome = await pipeline.run_pipeline(url, config.ASSET_ID, deadline=deadline)

        await status.delete()
        if outcome.ok:
            await msg.answer_photo(
                BufferedInputFile(outcome.result.data, filename=outcome.result.file_name),
                caption=CAPTION.format(user=user),
            )
        else:
            logging.info("Overlay for %s failed: %s (%s)", user, outcome.failure.value, outcome.detail)
            await msg.answer(FAILURE_MESSAGES.get(outcome.failure, ERROR_GENERAL))

    except Exception as e:
        logging.error("OVERLAY ERROR: %s", e)
        try:
            await status.delete()
        except Exception:
            pass
        await msg.answer(ERROR_GENERAL)


# ─────────────────────────────────────────────────────────────
# Routing
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Route:
    handler: Callable[..., Awaitable[Any]]
    filters: Tuple[Any, ...]


ROUTES: Tuple[Route, ...] = (
    Route(handle_start, (CommandStart(),)),
    Route(handle_help, (Command("help"),)),
    Route(handle_degenme, (Command(DEGEN_COMMAND),)),
    Route(handle_photo, (F.photo,)),
)


def build_dispatcher(**dependencies: Any) -> Dispatcher:
    """Handlers get ``pipeline``, ``pending`` and ``limiter`` injected by name."""
    dp = Dispatcher(**dependencies)
    for route in ROUTES:
        dp.message.register(route.handler, *route.filters)
    return dp


def build_pipeline(registry: AssetRegistry, client: Optional[httpx.AsyncClient] = None) -> OverlayPipeline:
    detector = build_detector(
        config.DETECTOR,
        template_path=config.TEMPLATE_PATH,
        confidence_threshold=config.CONFIDENCE_THRESHOLD,
        max_pixels=config.MAX_DETECT_PIXELS,
    )
    fetcher = ImageFetcher(
        client=client,
        max_attempts=config.FETCH_ATTEMPTS,
        max_bytes=config.MAX_IMAGE_BYTES,
        max_pixels=config.MAX_SOURCE_PIXELS,
    )
    return OverlayPipeline(
        registry=registry,
        fetcher=fetcher,
        detector=detector,
        compositor=OverlayCompositor(output_format=config.OUTPUT_FORMAT),
        max_in_flight=config.MAX_IN_FLIGHT,
        max_queued=config.MAX_QUEUED,
        workers=config.WORKERS,
        fetch_timeout=config.FETCH_TIMEOUT,
        default_timeout=config.PIPELINE_TIMEOUT,
    )


# ─────────────────────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────────────────────

def load_registry(directory: str, asset_id: str) -> AssetRegistry:
    # Assets are loaded once, before any request can run
    registry = AssetRegistry.load_all(directory)
    if asset_id not in registry:
        raise AssetLoadError(
            f"Overlay asset {asset_id!r} is not in {directory} (found: {', '.join(registry.ids()) or 'nothing'})"
        )
    return registry


async def _run(bot: Bot, registry: AssetRegistry) -> None:
    pending = PendingOverlays(expiry=config.PENDING_EXPIRY)
    limiter = RateLimiter(config.RATE_LIMIT_REQUESTS, config.RATE_LIMIT_WINDOW)

    async with httpx.AsyncClient() as client:
        pipeline = build_pipeline(registry, client=client)
        dp = build_dispatcher(pipeline=pipeline, pending=pending, limiter=limiter)
        sweeper = asyncio.create_task(_sweeper(bot, pending, config.SWEEP_INTERVAL))
        try:
            await dp.start_polling(bot)
        finally:
            sweeper.cancel()
            pipeline.close()


def main():
    if not config.TELEGRAM_BOT_TOKEN:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")

    registry = load_registry(config.ASSET_DIR, config.ASSET_ID)

    bot = Bot(
        token=config.TELEGRAM_BOT_TOKEN,
        default=DefaultBotProperties(parse_mode="HTML"),
    )

    logging.info("DegenBot started")
    asyncio.run(_run(bot, registry))


if __name__ == "__main__":
    main()
