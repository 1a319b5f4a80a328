"""
Security alert persistence and dispatch
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import aiohttp

from .event_log import SecurityEventLog
from .records import EventType, SecurityAlert, Severity
from .store import AlertStore

logger = logging.getLogger(__name__)


class AlertDispatcher(ABC):
    """Deliver alerts to operators"""

    @abstractmethod
    async def notify(self, alert: SecurityAlert) -> None:
        pass


class LoggingAlertDispatcher(AlertDispatcher):
    """Write alerts to the log"""

    LEVELS = {
        Severity.LOW: logging.INFO,
        Severity.MEDIUM: logging.WARNING,
        Severity.HIGH: logging.WARNING,
        Severity.CRITICAL: logging.CRITICAL,
    }

    def __init__(self, name: str = "gatekeeper.alerts"):
        self.logger = logging.getLogger(name)

    async def notify(self, alert: SecurityAlert) -> None:
        self.logger.log(
            self.LEVELS.get(alert.severity, logging.WARNING),
            f"🚨 {alert.severity.value.upper()} {alert.type.value}: "
            f"ip={alert.ip} user={alert.user_id or '-'} details={alert.details}",
        )


class WebhookAlertDispatcher(AlertDispatcher):
    """POST alerts as JSON to a webhook"""

    def __init__(self, url: str, timeout: float = 2.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def notify(self, alert: SecurityAlert) -> None:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.url, json=alert.to_dict()) as response:
                if response.status >= 400:
                    raise RuntimeError(f"Alert webhook answered {response.status}")


class AlertManager:
    """Record, de-duplicate and dispatch security alerts"""

    def __init__(self, store: AlertStore, event_log: SecurityEventLog,
                 dispatcher: Optional[AlertDispatcher] = None, timeout: float = 2.0):
        self.store = store
        self.event_log = event_log
        self.dispatcher = dispatcher or LoggingAlertDispatcher()
        self.timeout = timeout

    async def _find_duplicate(self, alert: SecurityAlert) -> Optional[SecurityAlert]:
        ip = alert.ip if alert.ip != "unknown" else None
        open_alerts = await asyncio.wait_for(
            self.store.find_unresolved(user_id=alert.user_id, ip=ip), self.timeout
        )
        for existing in open_alerts:
            if existing.type == alert.type and existing.user_id == alert.user_id and existing.ip == alert.ip:
                return existing
        return None

    async def raise_alert(self, alert: SecurityAlert) -> bool:
        """Persist and dispatch an alert; returns False when an open duplicate exists"""
        try:
            if await self._find_duplicate(alert) is not None:
                return False
            await asyncio.wait_for(self.store.add_alert(alert), self.timeout)
        except Exception as e:
            logger.warning(f"Could not persist alert {alert.type.value}: {e!r}")

        await self.event_log.record(
            EventType.SUSPICIOUS_ACTIVITY,
            alert.ip,
            user_id=alert.user_id,
            alert_id=alert.id,
            alert_type=alert.type.value,
            severity=alert.severity.value,
            **alert.details,
        )

        try:
            await asyncio.wait_for(self.dispatcher.notify(alert), self.timeout)
        except Exception as e:
            logger.error(f"Alert dispatch failed for {alert.id}: {e!r}")
        return True

    async def resolve(self, alert_id: str) -> bool:
        """Operator action"""
        return await asyncio.wait_for(self.store.resolve_alert(alert_id), self.timeout)

    async def has_unresolved(self, user_id: Optional[str] = None, ip: Optional[str] = None) -> bool:
        if ip == "unknown":
            ip = None
        if user_id is None and ip is None:
            return False
        alerts = await asyncio.wait_for(
            self.store.find_unresolved(user_id=user_id, ip=ip), self.timeout
        )
        return bool(alerts)

    async def list_alerts(self, include_resolved: bool = False) -> List[SecurityAlert]:
        return await asyncio.wait_for(self.store.list_alerts(include_resolved), self.timeout)
