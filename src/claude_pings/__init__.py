from claude_pings.stats import DayStats, StatsData, StatsStore
from claude_pings.watcher import (
    PollingSubscription,
    TriggerWatcher,
    WatchEvent,
    parse_identifiers,
    subscribe,
)

__all__ = [
    "DayStats",
    "PollingSubscription",
    "StatsData",
    "StatsStore",
    "TriggerWatcher",
    "WatchEvent",
    "parse_identifiers",
    "subscribe",
]
