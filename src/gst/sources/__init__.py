from .base import ServerQuery
from .battlemetrics import BattleMetricsQuery

__all__ = [
    "BattleMetricsQuery",
    "ServerQuery",
]
