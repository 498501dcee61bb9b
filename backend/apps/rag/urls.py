"""
RAG URL routing.
"""
from django.urls import path

from apps.rag.views import QueryView

urlpatterns = [
    path('query', QueryView.as_view(), name='rag-query'),
]
