"""
Suspicious activity detection over the persisted ledger.

Runs as a persist listener: every newly stored event is checked against
a trailing window of the actor's history and alerts are re-emitted into
the event queue as SYSTEM_* events. Detection is advisory; errors are
logged and never reach the writer.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from audit_ledger import metrics
from audit_ledger.config import Settings
from audit_ledger.events import ANONYMOUS_ACTOR, SYSTEM_ACTOR, AuditEvent, utc_now
from audit_ledger.risk import Outcome
from audit_ledger.services.store import AuditStore

logger = logging.getLogger(__name__)

FAILED_LOGIN_ACTION = "AUTH_FAILED_LOGIN"
PATIENT_ACTION_PREFIX = "PATIENT_"

RULE_FAILED_LOGINS = "SUSPICIOUS_LOGIN_ATTEMPTS"
RULE_PATIENT_ACCESS = "UNUSUAL_PATIENT_ACCESS_PATTERN"
RULE_MULTIPLE_IPS = "MULTIPLE_IP_ACCESS"

AlertKey = Tuple[str, str, str]


class SuspiciousActivityDetector:
    """
    Threshold rules over the last `detection_window_minutes` of activity.

    - failed logins by one actor
    - accesses by one actor to the same patient
    - distinct source IPs for one actor

    Once a rule fires for an (actor, subject) pair it stays quiet for the
    rest of the window.
    """

    def __init__(
        self,
        store: AuditStore,
        emit: Callable[[AuditEvent], None],
        settings: Settings
    ):
        self.store = store
        self.emit = emit
        self.window = timedelta(minutes=settings.detection_window_minutes)
        self.failed_login_threshold = settings.failed_login_threshold
        self.patient_access_threshold = settings.patient_access_threshold
        self.distinct_ip_threshold = settings.distinct_ip_threshold
        self._suppressed: Dict[AlertKey, datetime] = {}

    async def on_persisted(self, event: AuditEvent) -> None:
        """Analyse one newly persisted event. Never raises."""
        if event.actor_id == SYSTEM_ACTOR:
            return

        try:
            await self.analyze(event)
        except Exception as e:
            logger.error(f"Failed to detect suspicious activity for event {event.event_id}: {e}")

    async def analyze(self, event: AuditEvent) -> List[AuditEvent]:
        """
        Run every rule against `event`.

        Returns:
            The alert events emitted
        """
        now = event.timestamp or utc_now()
        since = now - self.window
        self._expire(now)

        alerts: List[AuditEvent] = []

        if event.action == FAILED_LOGIN_ACTION:
            alert = await self._check_failed_logins(event, since, now)
            if alert:
                alerts.append(alert)

        if event.actor_id != ANONYMOUS_ACTOR:
            if event.patient_id and event.action.startswith(PATIENT_ACTION_PREFIX):
                alert = await self._check_patient_access(event, since, now)
                if alert:
                    alerts.append(alert)

            alert = await self._check_distinct_ips(event, since, now)
            if alert:
                alerts.append(alert)

        for alert in alerts:
            self.emit(alert)
        return alerts

    # ========================================================================
    # Rules
    # ========================================================================

    async def _check_failed_logins(
        self,
        event: AuditEvent,
        since: datetime,
        now: datetime
    ) -> Optional[AuditEvent]:
        key = (RULE_FAILED_LOGINS, event.actor_id, "")
        if self._is_suppressed(key):
            return None

        failures = await self.store.count_actions_between(
            event.actor_id, FAILED_LOGIN_ACTION, since, now
        )
        if failures < self.failed_login_threshold:
            return None

        return self._raise(key, now, {
            "user_id": event.actor_id,
            "failure_count": failures,
            "ip_address": event.ip_address,
        })

    async def _check_patient_access(
        self,
        event: AuditEvent,
        since: datetime,
        now: datetime
    ) -> Optional[AuditEvent]:
        key = (RULE_PATIENT_ACCESS, event.actor_id, event.patient_id)
        if self._is_suppressed(key):
            return None

        accesses = await self.store.count_patient_accesses_between(
            event.actor_id, event.patient_id, since, now
        )
        if accesses < self.patient_access_threshold:
            return None

        return self._raise(key, now, {
            "user_id": event.actor_id,
            "patient_id": event.patient_id,
            "access_count": accesses,
        })

    async def _check_distinct_ips(
        self,
        event: AuditEvent,
        since: datetime,
        now: datetime
    ) -> Optional[AuditEvent]:
        key = (RULE_MULTIPLE_IPS, event.actor_id, "")
        if self._is_suppressed(key):
            return None

        addresses = await self.store.distinct_ips_between(event.actor_id, since, now)
        if len(addresses) < self.distinct_ip_threshold:
            return None

        return self._raise(key, now, {
            "user_id": event.actor_id,
            "ip_addresses": addresses,
        })

    # ========================================================================
    # Suppression
    # ========================================================================

    def _raise(self, key: AlertKey, now: datetime, details: dict) -> AuditEvent:
        rule = key[0]
        self._suppressed[key] = now + self.window
        metrics.detector_alerts.labels(rule=rule).inc()

        alert = AuditEvent.system(rule, details, Outcome.WARNING)
        logger.warning(
            f"Suspicious activity detected: rule={rule}, actor={key[1]}, "
            f"risk={alert.risk_level.value}"
        )
        return alert

    def _is_suppressed(self, key: AlertKey) -> bool:
        return key in self._suppressed

    def _expire(self, now: datetime) -> None:
        expired = [key for key, until in self._suppressed.items() if until <= now]
        for key in expired:
            del self._suppressed[key]
