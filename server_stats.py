"""
Server Statistics module - Counters over gate decisions
"""

from collections import Counter
from datetime import datetime

from models import ServerStats
from gatekeeper.context import GateDecision
from gatekeeper.route_classifier import RouteKind


class StatsCollector:
    """Count decisions by outcome and denial reason"""

    def __init__(self, stats: ServerStats):
        self.stats = stats
        self.denials: Counter = Counter()

    def record(self, decision: GateDecision):
        stats = self.stats
        stats.total_requests += 1

        if not decision.allowed:
            stats.blocked_count += 1
            self.denials[decision.reason or "unknown"] += 1
            if decision.reason == "evaluation_error":
                stats.error_count += 1
        elif decision.route_kind == RouteKind.PROTECTED.value:
            stats.allowed_count += 1
        else:
            # Public and static requests forwarded without auth work
            stats.passthrough_count += 1

    def get_stats(self) -> dict:
        """Get current statistics as dictionary"""
        stats = self.stats
        uptime_seconds = (datetime.now() - stats.start_time).total_seconds()
        forwarded = stats.allowed_count + stats.passthrough_count

        return {
            "total_requests": stats.total_requests,
            "allowed_count": stats.allowed_count,
            "blocked_count": stats.blocked_count,
            "passthrough_count": stats.passthrough_count,
            "error_count": stats.error_count,
            "allow_rate": forwarded / stats.total_requests * 100 if stats.total_requests else 0.0,
            "top_denials": dict(self.denials.most_common(10)),
            "uptime_seconds": uptime_seconds,
            "requests_per_sec": stats.total_requests / uptime_seconds if uptime_seconds > 0 else 0,
        }
