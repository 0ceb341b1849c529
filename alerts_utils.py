#!/usr/bin/env python3
"""PagerDuty alerting for failed drain runs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
DRAIN_FAILURE_DEDUP_KEY = "node-drain-failure"


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class AlertAction(Enum):
    """PagerDuty event actions."""
    TRIGGER = "trigger"
    RESOLVE = "resolve"


class PagerDutyAlerter:
    """PagerDuty Events v2 client."""

    def __init__(self, integration_key: str, logger, session: Optional[requests.Session] = None):
        self.integration_key = integration_key
        self.logger = logger
        self.api_url = PAGERDUTY_EVENTS_URL
        self.session = session or requests.Session()

    def send_alert(
        self,
        summary: str,
        severity: AlertSeverity = AlertSeverity.ERROR,
        source: str = "node-drainer",
        component: Optional[str] = None,
        custom_details: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None,
        action: AlertAction = AlertAction.TRIGGER
    ) -> bool:
        """
        Send an event to PagerDuty.

        Returns:
            bool: True if the event was accepted, False otherwise.
        """
        payload = self._build_payload(summary, severity, source, component, custom_details, dedup_key, action)
        self.logger.info(
            "Sending PagerDuty alert",
            summary=summary,
            severity=severity.value,
            action=action.value,
            dedup_key=dedup_key
        )

        try:
            response = self.session.post(self.api_url, json=payload, timeout=30)
        except requests.exceptions.RequestException as e:
            self.logger.error("Network error sending PagerDuty alert", error=str(e))
            return False

        if response.status_code == 202:
            self.logger.info("PagerDuty alert sent successfully", dedup_key=dedup_key)
            return True

        self.logger.error(
            "Failed to send PagerDuty alert",
            status_code=response.status_code,
            response=response.text
        )
        return False

    def _build_payload(
        self,
        summary: str,
        severity: AlertSeverity,
        source: str,
        component: Optional[str],
        custom_details: Optional[Dict[str, Any]],
        dedup_key: Optional[str],
        action: AlertAction
    ) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "routing_key": self.integration_key,
            "event_action": action.value,
        }
        if dedup_key:
            event["dedup_key"] = dedup_key
        if action is AlertAction.RESOLVE:
            return event

        payload_data: Dict[str, Any] = {
            "summary": summary,
            "source": source,
            "severity": severity.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if component:
            payload_data["component"] = component
        if custom_details:
            payload_data["custom_details"] = custom_details
        event["payload"] = payload_data
        return event


class AlertManager:
    """Sends alerts when enabled and configured; otherwise a logged no-op."""

    def __init__(self, pagerduty_key: Optional[str], logger, enabled: bool = True,
                 alerter: Optional[PagerDutyAlerter] = None):
        self.logger = logger
        self.alerter = alerter or (PagerDutyAlerter(pagerduty_key, logger) if pagerduty_key else None)
        self.enabled = enabled and self.alerter is not None
        if enabled and self.alerter is None:
            self.logger.debug("PagerDuty integration key not provided, alerting disabled")

    def send_error_alert(
        self,
        summary: str,
        component: Optional[str] = None,
        custom_details: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None
    ) -> bool:
        if not self.enabled:
            self.logger.debug("Alerting disabled, skipping alert", summary=summary)
            return True
        return self.alerter.send_alert(
            summary=summary,
            severity=AlertSeverity.ERROR,
            component=component,
            custom_details=custom_details,
            dedup_key=dedup_key
        )

    def resolve_alert(self, dedup_key: str) -> bool:
        if not self.enabled:
            return True
        return self.alerter.send_alert(summary="Alert resolved", dedup_key=dedup_key, action=AlertAction.RESOLVE)


def create_drain_failure_alert(
    alert_manager: AlertManager,
    failed_nodes: List[str],
    pending_nodes: List[str],
    error: Optional[str]
) -> bool:
    """Alert on a drain run that failed or aborted."""
    return alert_manager.send_error_alert(
        summary=f"Node drain failed: {len(failed_nodes)} failed, {len(pending_nodes)} pending",
        component="BatchDrainOrchestrator",
        custom_details={
            "failed_nodes": failed_nodes[:10],
            "pending_nodes": pending_nodes[:10],
            "error": error,
        },
        dedup_key=DRAIN_FAILURE_DEDUP_KEY
    )
