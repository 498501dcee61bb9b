"""
Django management command to check system health and alert on degradation.

Meant to run from cron every few minutes.

Usage:
    python manage.py check_health
    python manage.py check_health --no-alert
"""
import json
import time

from django.core.management.base import BaseCommand

from apps.monitoring.alerts import send_slack_alert
from apps.monitoring.health import compute_system_health


class Command(BaseCommand):
    help = 'Compute the system health aggregate and alert Slack if degraded or down'

    def add_arguments(self, parser):
        parser.add_argument(
            '--no-alert',
            action='store_true',
            help='Print the aggregate without sending an alert',
        )

    def handle(self, *args, **options):
        start = time.perf_counter()
        health = compute_system_health()

        alert_sent = False
        if health.needs_alert and not options['no_alert']:
            alert_sent = send_slack_alert(health)

        report = {
            'success': True,
            'health': health.to_dict(),
            'duration_ms': int((time.perf_counter() - start) * 1000),
            'alert_sent': alert_sent,
        }

        style = self.style.WARNING if health.needs_alert else self.style.SUCCESS
        self.stdout.write(style(json.dumps(report)))
