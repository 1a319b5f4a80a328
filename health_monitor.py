"""
Health Monitor module - Health, status and statistics endpoints
"""

import asyncio
import logging
import time
from datetime import datetime

from sanic import Request

from gate_server import GateServer
from response_builder import ResponseBuilder
from server_stats import StatsCollector

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Report liveness of the gate and its store"""

    def __init__(self, server: GateServer, responder: ResponseBuilder, stats: StatsCollector):
        self.server = server
        self.responder = responder
        self.stats = stats

    def _uptime(self) -> float:
        return (datetime.now() - self.server.stats.start_time).total_seconds()

    async def _check_store(self) -> bool:
        """One cheap read against the store"""
        try:
            await asyncio.wait_for(self.server.store.list_rules(), self.server.config.timeout_seconds)
            return True
        except Exception as e:
            logger.warning(f"⚠️ Store check failed: {e!r}")
            return False

    async def handle_health(self, request: Request):
        store_ok = await self._check_store()
        health = {
            "status": "healthy" if store_ok else "degraded",
            "timestamp": int(time.time()),
            "store": type(self.server.store).__name__,
            "store_ok": store_ok,
            "event_log": "active" if self.server.event_log.running else "idle",
            "uptime": self._uptime(),
        }
        return self.responder.send_json(health, 200 if store_ok else 503)

    async def handle_status(self, request: Request):
        """Counters, event log backlog, open alerts and the route table"""
        event_log = self.server.event_log
        try:
            open_alerts = len(await self.server.alerts.list_alerts(include_resolved=False))
        except Exception as e:
            logger.warning(f"Alert store unavailable for status: {e!r}")
            open_alerts = None

        return self.responder.send_json({
            "timestamp": int(time.time()),
            "server_stats": self.stats.get_stats(),
            "event_log": {
                "running": event_log.running,
                "pending": event_log.pending,
                "written": event_log.written,
                "dropped": event_log.dropped,
            },
            "open_alerts": open_alerts,
            "routes": [route.name for route in self.server.classifier.routes],
            "uptime": self._uptime(),
            "config": {
                "debug_mode": self.server.config.debug,
                "mode": self.server.config.mode,
                "environment": self.server.config.environment,
                "fail_closed_actions": list(self.server.config.fail_closed_actions),
            },
        })

    async def handle_stats(self, request: Request):
        return self.responder.send_json(self.stats.get_stats())
