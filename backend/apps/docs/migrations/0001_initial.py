# Generated migration for the Document model

from django.db import migrations, models
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Document',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('owner_id', models.CharField(db_index=True, help_text='User ID (sub claim)', max_length=255)),
                ('title', models.CharField(max_length=255)),
                ('source', models.CharField(blank=True, default='', help_text='Where the content came from (URL, filename, ...)', max_length=500)),
                ('content', models.TextField(help_text='Extracted plain text; form feeds separate pages')),
                ('file_path', models.CharField(blank=True, default='', help_text='Attachment path relative to the upload root', max_length=500)),
                ('mime_type', models.CharField(default='text/plain', max_length=100)),
                ('file_size', models.PositiveIntegerField(default=0)),
                ('content_hash', models.CharField(db_index=True, help_text='SHA-256 of the content for per-owner deduplication', max_length=64)),
                ('status', models.CharField(choices=[('UPLOADED', 'Uploaded'), ('INDEXING', 'Currently indexing'), ('INDEXED', 'Successfully indexed'), ('FAILED', 'Indexing failed')], db_index=True, default='UPLOADED', max_length=20)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'documents',
                'ordering': ['-created_at'],
            },
        ),
        migrations.AddConstraint(
            model_name='document',
            constraint=models.UniqueConstraint(fields=('owner_id', 'content_hash'), name='unique_owner_content_hash'),
        ),
        migrations.AddIndex(
            model_name='document',
            index=models.Index(fields=['owner_id', 'created_at'], name='documents_owner_created_idx'),
        ),
    ]
