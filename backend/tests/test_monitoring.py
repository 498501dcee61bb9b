"""
Tests for the health aggregate, probes and Slack alerting.

Model managers are mocked, so no database is needed.
"""
import json
from datetime import datetime, timezone
from io import StringIO

import httpx
import pytest
from django.core.management import call_command
from django.test import RequestFactory
from unittest.mock import MagicMock, patch

from apps.monitoring.alerts import (
    DEGRADED_COLOR,
    DOWN_COLOR,
    build_slack_message,
    send_slack_alert,
)
from apps.monitoring.health import (
    HealthStatus,
    HealthThresholds,
    SystemHealth,
    compute_system_health,
    derive_status,
    healthz,
    readyz,
)

THRESHOLDS = HealthThresholds()


def make_health(status=HealthStatus.DEGRADED, **overrides):
    values = dict(
        status=status,
        requests_1min=3,
        requests_5min=12,
        errors_5min=2,
        avg_latency_5min=840,
        error_rate=0.1429,
    )
    values.update(overrides)
    return SystemHealth(**values)


# ============================================================================
# Status derivation
# ============================================================================

class TestDeriveStatus:

    def test_no_traffic_is_idle(self):
        assert derive_status(0, 0, 0, THRESHOLDS) == HealthStatus.IDLE

    def test_healthy(self):
        assert derive_status(100, 1, 800, THRESHOLDS) == HealthStatus.HEALTHY

    def test_error_rate_degraded(self):
        # 2 / (18 + 2) = 10%
        assert derive_status(18, 2, 800, THRESHOLDS) == HealthStatus.DEGRADED

    def test_error_rate_down(self):
        assert derive_status(5, 5, 800, THRESHOLDS) == HealthStatus.DOWN

    def test_only_errors_is_down(self):
        """Requests rejected before being counted still mark the system down."""
        assert derive_status(0, 3, 0, THRESHOLDS) == HealthStatus.DOWN

    def test_latency_degraded(self):
        assert derive_status(10, 0, 5000, THRESHOLDS) == HealthStatus.DEGRADED

    def test_latency_down(self):
        assert derive_status(10, 0, 15000, THRESHOLDS) == HealthStatus.DOWN

    def test_thresholds_from_settings(self, settings):
        settings.HEALTH_DEGRADED_LATENCY_MS = 1000
        thresholds = HealthThresholds.from_settings()

        assert derive_status(10, 0, 1200, thresholds) == HealthStatus.DEGRADED


class TestComputeSystemHealth:

    def test_aggregates_last_five_minutes(self):
        with patch('apps.monitoring.health.ApiUsage') as api_usage, \
                patch('apps.monitoring.health.ErrorLog') as error_log, \
                patch('apps.monitoring.health.PerformanceMetric') as performance:
            api_usage.objects.filter.return_value.count.side_effect = [3, 12]
            error_log.objects.filter.return_value.count.return_value = 2
            performance.objects.filter.return_value.aggregate.return_value = {'avg': 840.4}

            health = compute_system_health(thresholds=THRESHOLDS)

        assert health.requests_1min == 3
        assert health.requests_5min == 12
        assert health.errors_5min == 2
        assert health.avg_latency_5min == 840
        assert health.error_rate == pytest.approx(0.1429)
        assert health.status == HealthStatus.DEGRADED
        assert health.needs_alert

    def test_no_rows(self):
        with patch('apps.monitoring.health.ApiUsage') as api_usage, \
                patch('apps.monitoring.health.ErrorLog') as error_log, \
                patch('apps.monitoring.health.PerformanceMetric') as performance:
            api_usage.objects.filter.return_value.count.return_value = 0
            error_log.objects.filter.return_value.count.return_value = 0
            performance.objects.filter.return_value.aggregate.return_value = {'avg': None}

            health = compute_system_health(thresholds=THRESHOLDS)

        assert health.status == HealthStatus.IDLE
        assert health.error_rate == 0.0
        assert not health.needs_alert


# ============================================================================
# Probes
# ============================================================================

class TestProbes:

    def test_healthz(self):
        response = healthz(RequestFactory().get('/healthz'))

        assert response.status_code == 200
        assert json.loads(response.content)['status'] == 'healthy'

    def test_readyz_all_ok(self):
        with patch('apps.monitoring.health.check_postgres', return_value=('ok', True)), \
                patch('apps.monitoring.health.check_redis', return_value=('ok', True)):
            response = readyz(RequestFactory().get('/readyz'))

        assert response.status_code == 200
        assert json.loads(response.content)['checks'] == {'postgres': 'ok', 'redis': 'ok'}

    def test_readyz_redis_down(self):
        with patch('apps.monitoring.health.check_postgres', return_value=('ok', True)), \
                patch('apps.monitoring.health.check_redis', return_value=('error: refused', False)):
            response = readyz(RequestFactory().get('/readyz'))

        assert response.status_code == 503
        assert json.loads(response.content)['status'] == 'not_ready'


# ============================================================================
# Slack alerts
# ============================================================================

class TestSlackMessage:

    def test_degraded_message(self):
        now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        message = build_slack_message(make_health(), now=now)

        assert message['text'] == ":warning: System Health Alert: DEGRADED"
        header, section, context = message['blocks']
        assert header['text']['text'] == ":warning: System Health: DEGRADED"
        assert [f['text'] for f in section['fields']] == [
            "*Requests (1min):*\n3",
            "*Requests (5min):*\n12",
            "*Errors (5min):*\n2",
            "*Avg Latency:*\n840ms",
        ]
        assert context['elements'][0]['text'] == "Timestamp: 2025-03-01T12:00:00+00:00"
        assert message['attachments'][0]['color'] == DEGRADED_COLOR

    def test_down_message(self):
        message = build_slack_message(make_health(status=HealthStatus.DOWN))

        assert message['text'].startswith(":red_circle:")
        assert message['attachments'][0]['color'] == DOWN_COLOR
        assert message['attachments'][0]['fields'][0]['value'] == 'down'


class TestSendSlackAlert:

    def test_skipped_without_webhook(self, settings):
        settings.SLACK_WEBHOOK_URL = ''

        with patch('apps.monitoring.alerts.httpx.Client') as client_cls:
            assert send_slack_alert(make_health()) is False

        client_cls.assert_not_called()

    def test_posts_to_webhook(self, settings):
        settings.SLACK_WEBHOOK_URL = 'https://hooks.slack.test/T000/B000'

        with patch('apps.monitoring.alerts.httpx.Client') as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.post.return_value = MagicMock(status_code=200)

            assert send_slack_alert(make_health()) is True

        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs['json']
        assert url == 'https://hooks.slack.test/T000/B000'
        assert payload['text'].endswith('DEGRADED')

    def test_rejected_by_slack(self, settings):
        settings.SLACK_WEBHOOK_URL = 'https://hooks.slack.test/T000/B000'

        with patch('apps.monitoring.alerts.httpx.Client') as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.post.return_value = MagicMock(status_code=404, text='no_service')

            assert send_slack_alert(make_health()) is False

    def test_network_error(self, settings):
        settings.SLACK_WEBHOOK_URL = 'https://hooks.slack.test/T000/B000'

        with patch('apps.monitoring.alerts.httpx.Client') as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.post.side_effect = httpx.ConnectError("refused")

            assert send_slack_alert(make_health()) is False


class TestCheckHealthCommand:

    def run_command(self, health, *args):
        out = StringIO()
        with patch('apps.monitoring.management.commands.check_health.compute_system_health',
                   return_value=health), \
                patch('apps.monitoring.management.commands.check_health.send_slack_alert',
                      return_value=True) as send:
            call_command('check_health', *args, stdout=out, no_color=True)
        return json.loads(out.getvalue()), send

    def test_alerts_when_degraded(self):
        report, send = self.run_command(make_health())

        assert report['success'] is True
        assert report['alert_sent'] is True
        assert report['health']['status'] == 'degraded'
        send.assert_called_once()

    def test_no_alert_flag(self):
        report, send = self.run_command(make_health(), '--no-alert')

        assert report['alert_sent'] is False
        send.assert_not_called()

    def test_healthy_does_not_alert(self):
        report, send = self.run_command(make_health(status=HealthStatus.HEALTHY))

        assert report['alert_sent'] is False
        send.assert_not_called()
