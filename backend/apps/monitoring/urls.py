"""
Monitoring URL routing.
"""
from django.urls import path

from apps.monitoring.health import system_health

urlpatterns = [
    path('health', system_health, name='monitoring-health'),
]
