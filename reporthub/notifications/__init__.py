"""Outbound notifications for ingested runs."""

from .webhooks import WebhookNotifier

__all__ = ["WebhookNotifier"]
