"""Cache key layout and TTL policy for usage limiting.

Key schema
  usage_count:ip:{ip}     INT    counter              TTL = window
  usage_window:ip:{ip}    JSON   {window_start, reset_at}  TTL = window
  lock:ip:{ip}            STRING lock token           TTL = IP_LOCK_TTL
  usage_stats:global      JSON   UsageStatistics      TTL = USAGE_STATS_TTL
"""

from __future__ import annotations

IP_LOCK_TTL = 30
USAGE_STATS_TTL = 300


class CacheKeys:
    """Namespaced key builders."""

    @staticmethod
    def usage_count(ip: str) -> str:
        return f"usage_count:ip:{ip}"

    @staticmethod
    def usage_window(ip: str) -> str:
        return f"usage_window:ip:{ip}"

    @staticmethod
    def ip_lock(ip: str) -> str:
        return f"lock:ip:{ip}"

    @staticmethod
    def usage_stats() -> str:
        return "usage_stats:global"

    @classmethod
    def for_ip(cls, ip: str) -> tuple[str, str]:
        """Counter and window keys of one IP, in that order."""
        return cls.usage_count(ip), cls.usage_window(ip)
