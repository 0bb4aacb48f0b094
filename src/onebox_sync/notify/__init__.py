"""Notification sinks for interested leads."""

from .sinks import SlackNotifier, WebhookNotifier, build_notifiers

__all__ = ["SlackNotifier", "WebhookNotifier", "build_notifiers"]
