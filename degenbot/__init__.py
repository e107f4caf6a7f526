"""Bot package for DegenBot.

This package contains the Telegram bot that exposes the overlay pipeline to
users. A user runs /degenme, replies to the bot's prompt with a photo, and gets
the photo back with the overlay composited onto it.
"""
