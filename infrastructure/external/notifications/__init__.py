"""Notification channels for payment lifecycle events."""
from .notifier import DiscordNotifier, LoggingNotifier, build_notifier

__all__ = ["DiscordNotifier", "LoggingNotifier", "build_notifier"]
