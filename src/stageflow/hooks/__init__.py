"""Post-run hooks: the dispatcher and the notifier sinks it sends through."""

from stageflow.hooks.dispatcher import PostActionDispatcher, message_fields, render_message
from stageflow.hooks.notifiers import LogNotifier, Notifier, WebhookNotifier

__all__ = [
    "LogNotifier",
    "Notifier",
    "PostActionDispatcher",
    "WebhookNotifier",
    "message_fields",
    "render_message",
]
