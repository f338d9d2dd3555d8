"""
Game Server Tracker (gst)

周期性查询多个游戏服务器的状态（BattleMetrics 等），
按每个 guild / 频道的订阅偏好，把状态变化分发为通知。
"""

from .models import PollResult, ServerState, Subscription, TrackedSource

__all__ = [
    "PollResult",
    "ServerState",
    "Subscription",
    "TrackedSource",
]
