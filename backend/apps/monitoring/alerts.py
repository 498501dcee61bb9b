"""
Slack alerting for degraded or down system health.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from django.conf import settings

from apps.monitoring.health import HealthStatus, SystemHealth

logger = logging.getLogger(__name__)

DOWN_COLOR = '#dc2626'
DEGRADED_COLOR = '#f59e0b'
ALERT_TIMEOUT = 10.0


def build_slack_message(health: SystemHealth, now: Optional[datetime] = None) -> dict:
    """Build a Slack Block Kit payload for a health alert."""
    now = now or datetime.now(timezone.utc)
    is_down = health.status == HealthStatus.DOWN
    emoji = ':red_circle:' if is_down else ':warning:'
    status = health.status.upper()

    return {
        'text': f"{emoji} System Health Alert: {status}",
        'blocks': [
            {
                'type': 'header',
                'text': {'type': 'plain_text', 'text': f"{emoji} System Health: {status}"},
            },
            {
                'type': 'section',
                'fields': [
                    {'type': 'mrkdwn', 'text': f"*Requests (1min):*\n{health.requests_1min}"},
                    {'type': 'mrkdwn', 'text': f"*Requests (5min):*\n{health.requests_5min}"},
                    {'type': 'mrkdwn', 'text': f"*Errors (5min):*\n{health.errors_5min}"},
                    {'type': 'mrkdwn', 'text': f"*Avg Latency:*\n{health.avg_latency_5min}ms"},
                ],
            },
            {
                'type': 'context',
                'elements': [{'type': 'mrkdwn', 'text': f"Timestamp: {now.isoformat()}"}],
            },
        ],
        'attachments': [
            {
                'color': DOWN_COLOR if is_down else DEGRADED_COLOR,
                'fields': [{'title': 'Status', 'value': health.status, 'short': True}],
            }
        ],
    }


def send_slack_alert(health: SystemHealth) -> bool:
    """
    Post a health alert to SLACK_WEBHOOK_URL.

    Returns:
        True if Slack accepted the message, False if skipped or failed
    """
    webhook_url = getattr(settings, 'SLACK_WEBHOOK_URL', '')
    if not webhook_url:
        logger.warning("SLACK_WEBHOOK_URL not configured, skipping alert")
        return False

    try:
        with httpx.Client(timeout=ALERT_TIMEOUT) as client:
            response = client.post(webhook_url, json=build_slack_message(health))
    except httpx.HTTPError as e:
        logger.error(f"Error sending Slack alert: {e}")
        return False

    if response.status_code >= 400:
        logger.error(f"Failed to send Slack alert: {response.status_code} {response.text[:200]}")
        return False

    logger.info("Slack alert sent successfully")
    return True
