"""
Django management command to re-ingest documents that have no embeddings.

Usage:
    python manage.py reprocess_documents --owner <user-id>
"""
import json

from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand

from apps.indexing.pipeline import build_default_pipeline


class Command(BaseCommand):
    help = "Re-ingest an owner's documents that are missing embeddings"

    def add_arguments(self, parser):
        parser.add_argument(
            '--owner',
            required=True,
            help='Owner user ID (JWT sub claim)',
        )

    def handle(self, *args, **options):
        pipeline = build_default_pipeline()
        summary = async_to_sync(pipeline.reprocess_missing)(options['owner'])

        self.stdout.write(json.dumps(summary.to_dict(), indent=2))
        if summary.failed:
            self.stdout.write(self.style.WARNING(summary.message))
        else:
            self.stdout.write(self.style.SUCCESS(summary.message))
