"""
Append-only audit and metrics tables.

These rows feed query history, performance dashboards and the system
health aggregate. IP addresses are stored anonymized only.
"""
from django.db import models


class QueryRecord(models.Model):
    """One answered question (history entry)."""
    user_id = models.CharField(max_length=255, db_index=True)
    request_id = models.CharField(max_length=64)
    query = models.TextField()
    answer = models.TextField(help_text="Truncated to AUDIT_ANSWER_MAX_CHARS")
    avg_similarity = models.FloatField(default=0.0)
    documents_retrieved = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'query_history'
        ordering = ['-created_at']

    def __str__(self):
        return f"Query {self.request_id} by {self.user_id}"


class PerformanceMetric(models.Model):
    """Per-request latency breakdown."""
    endpoint = models.CharField(max_length=100)
    user_id = models.CharField(max_length=255, null=True, blank=True)
    request_id = models.CharField(max_length=64)
    latency_ms = models.PositiveIntegerField()
    embedding_latency_ms = models.PositiveIntegerField(default=0)
    db_latency_ms = models.PositiveIntegerField(default=0)
    llm_latency_ms = models.PositiveIntegerField(default=0)
    rerank_latency_ms = models.PositiveIntegerField(default=0)
    chunks_retrieved = models.PositiveIntegerField(default=0)
    avg_similarity = models.FloatField(default=0.0)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'performance_metrics'
        ordering = ['-created_at']


class ErrorLog(models.Model):
    """A failed request, labelled with its stable error code."""
    error_code = models.CharField(max_length=50, db_index=True)
    error_message = models.TextField()
    request_id = models.CharField(max_length=64)
    user_id = models.CharField(max_length=255, null=True, blank=True)
    endpoint = models.CharField(max_length=100)
    ip_address = models.CharField(max_length=64, help_text="Anonymized")
    user_agent = models.CharField(max_length=500, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'error_logs'
        ordering = ['-created_at']


class ApiUsage(models.Model):
    """One accepted API request (rate-limit and traffic accounting)."""
    user_id = models.CharField(max_length=255, db_index=True)
    endpoint = models.CharField(max_length=100)
    ip_address = models.CharField(max_length=64, help_text="Anonymized")
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'api_usage'
        ordering = ['-created_at']
