"""
URL configuration for the FinRAG backend.
"""
from django.urls import path, include

from apps.docs.views import documents
from apps.monitoring.health import healthz, readyz

urlpatterns = [
    # Health check endpoints (no auth)
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('api/documents', documents, name='documents'),
    path('api/documents/', include('apps.docs.urls')),
    path('api/rag/', include('apps.rag.urls')),
    path('api/monitoring/', include('apps.monitoring.urls')),
]
