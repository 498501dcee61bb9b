"""
System health aggregate and probe endpoints.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
- /api/monitoring/health - Traffic, error and latency aggregate over the
  last five minutes, with a derived status
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Optional

import redis
from django.conf import settings
from django.db import connection
from django.db.models import Avg
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET

from apps.monitoring.models import ApiUsage, ErrorLog, PerformanceMetric

logger = logging.getLogger(__name__)


class HealthStatus:
    HEALTHY = 'healthy'
    DEGRADED = 'degraded'
    DOWN = 'down'
    IDLE = 'idle'


ALERT_STATUSES = (HealthStatus.DEGRADED, HealthStatus.DOWN)


@dataclass
class HealthThresholds:
    degraded_error_rate: float = 0.1
    down_error_rate: float = 0.5
    degraded_latency_ms: int = 5000
    down_latency_ms: int = 15000

    @classmethod
    def from_settings(cls) -> 'HealthThresholds':
        return cls(
            degraded_error_rate=getattr(settings, 'HEALTH_DEGRADED_ERROR_RATE', 0.1),
            down_error_rate=getattr(settings, 'HEALTH_DOWN_ERROR_RATE', 0.5),
            degraded_latency_ms=getattr(settings, 'HEALTH_DEGRADED_LATENCY_MS', 5000),
            down_latency_ms=getattr(settings, 'HEALTH_DOWN_LATENCY_MS', 15000),
        )


@dataclass
class SystemHealth:
    status: str
    requests_1min: int
    requests_5min: int
    errors_5min: int
    avg_latency_5min: int
    error_rate: float

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def needs_alert(self) -> bool:
        return self.status in ALERT_STATUSES


def derive_status(
    requests_5min: int,
    errors_5min: int,
    avg_latency_5min: float,
    thresholds: HealthThresholds,
) -> str:
    """
    Classify the last five minutes.

    Errors count against the rate even when every request failed before
    being accepted, so the rate is taken over requests plus errors.
    """
    if requests_5min == 0 and errors_5min == 0:
        return HealthStatus.IDLE

    error_rate = errors_5min / max(requests_5min + errors_5min, 1)

    if error_rate >= thresholds.down_error_rate or avg_latency_5min >= thresholds.down_latency_ms:
        return HealthStatus.DOWN
    if error_rate >= thresholds.degraded_error_rate or avg_latency_5min >= thresholds.degraded_latency_ms:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def compute_system_health(
    now: Optional[datetime] = None,
    thresholds: Optional[HealthThresholds] = None,
) -> SystemHealth:
    """Aggregate ApiUsage, ErrorLog and PerformanceMetric rows into a status."""
    now = now or timezone.now()
    thresholds = thresholds or HealthThresholds.from_settings()
    one_min_ago = now - timedelta(minutes=1)
    five_min_ago = now - timedelta(minutes=5)

    requests_1min = ApiUsage.objects.filter(created_at__gte=one_min_ago).count()
    requests_5min = ApiUsage.objects.filter(created_at__gte=five_min_ago).count()
    errors_5min = ErrorLog.objects.filter(created_at__gte=five_min_ago).count()
    avg_latency = PerformanceMetric.objects.filter(
        created_at__gte=five_min_ago
    ).aggregate(avg=Avg('latency_ms'))['avg'] or 0

    status = derive_status(requests_5min, errors_5min, avg_latency, thresholds)
    total = requests_5min + errors_5min

    return SystemHealth(
        status=status,
        requests_1min=requests_1min,
        requests_5min=requests_5min,
        errors_5min=errors_5min,
        avg_latency_5min=int(round(avg_latency)),
        error_rate=round(errors_5min / total, 4) if total else 0.0,
    )


# =============================================================================
# Probes
# =============================================================================

def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(dt_timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """
    Liveness probe endpoint.

    Returns 200 if the Django process is running.
    Does NOT check dependencies - that's for readiness.
    """
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_postgres() -> tuple:
    """Check PostgreSQL connectivity."""
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
            cursor.fetchone()
        return 'ok', True
    except Exception as e:
        logger.error(f"Postgres health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_redis() -> tuple:
    """Check Redis connectivity."""
    try:
        redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
        client = redis.from_url(redis_url, socket_timeout=3)
        client.ping()
        return 'ok', True
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f'error: {str(e)[:50]}', False


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe endpoint.

    Returns 200 only if all critical dependencies are reachable.
    """
    checks = {}
    all_ok = True

    for name, check in (('postgres', check_postgres), ('redis', check_redis)):
        status, ok = check()
        checks[name] = status
        all_ok = all_ok and ok

    return JsonResponse({
        'status': 'ready' if all_ok else 'not_ready',
        'timestamp': get_timestamp(),
        'checks': checks
    }, status=200 if all_ok else 503)


@csrf_exempt
@require_GET
def system_health(request):
    """
    GET /api/monitoring/health

    Response:
        {
            "status": "healthy|degraded|down|idle",
            "requests_1min": 3,
            "requests_5min": 12,
            "errors_5min": 0,
            "avg_latency_5min": 840,
            "error_rate": 0.0,
            "timestamp": "..."
        }
    """
    health = compute_system_health()
    return JsonResponse({**health.to_dict(), 'timestamp': get_timestamp()})
