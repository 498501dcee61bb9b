# Generated migration for audit and metrics tables

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='QueryRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('user_id', models.CharField(db_index=True, max_length=255)),
                ('request_id', models.CharField(max_length=64)),
                ('query', models.TextField()),
                ('answer', models.TextField(help_text='Truncated to AUDIT_ANSWER_MAX_CHARS')),
                ('avg_similarity', models.FloatField(default=0.0)),
                ('documents_retrieved', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                'db_table': 'query_history',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='PerformanceMetric',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('endpoint', models.CharField(max_length=100)),
                ('user_id', models.CharField(blank=True, max_length=255, null=True)),
                ('request_id', models.CharField(max_length=64)),
                ('latency_ms', models.PositiveIntegerField()),
                ('embedding_latency_ms', models.PositiveIntegerField(default=0)),
                ('db_latency_ms', models.PositiveIntegerField(default=0)),
                ('llm_latency_ms', models.PositiveIntegerField(default=0)),
                ('rerank_latency_ms', models.PositiveIntegerField(default=0)),
                ('chunks_retrieved', models.PositiveIntegerField(default=0)),
                ('avg_similarity', models.FloatField(default=0.0)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                'db_table': 'performance_metrics',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ErrorLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('error_code', models.CharField(db_index=True, max_length=50)),
                ('error_message', models.TextField()),
                ('request_id', models.CharField(max_length=64)),
                ('user_id', models.CharField(blank=True, max_length=255, null=True)),
                ('endpoint', models.CharField(max_length=100)),
                ('ip_address', models.CharField(help_text='Anonymized', max_length=64)),
                ('user_agent', models.CharField(blank=True, default='', max_length=500)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                'db_table': 'error_logs',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ApiUsage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('user_id', models.CharField(db_index=True, max_length=255)),
                ('endpoint', models.CharField(max_length=100)),
                ('ip_address', models.CharField(help_text='Anonymized', max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                'db_table': 'api_usage',
                'ordering': ['-created_at'],
            },
        ),
    ]
