from .base import DeliverySink
from .discord import DiscordWebhookSink
from .fanout import DispatchReport, FanoutNotifier
from .formatter import format_notification_text
from .sinks import CallbackSink, DestinationRouter, LogSink

__all__ = [
    "CallbackSink",
    "DeliverySink",
    "DestinationRouter",
    "DiscordWebhookSink",
    "DispatchReport",
    "FanoutNotifier",
    "LogSink",
    "format_notification_text",
]
