"""
Migration to add an HNSW index on embeddings.embedding for fast vector search.

HNSW (Hierarchical Navigable Small World) provides:
- Fast approximate nearest neighbor search
- No need to pre-train like IVFFlat
"""
from django.db import migrations


class Migration(migrations.Migration):

    dependencies = [
        ('indexing', '0001_initial'),
    ]

    operations = [
        # Cosine distance matches the <=> operator used by vector search
        migrations.RunSQL(
            sql="""
                CREATE INDEX IF NOT EXISTS embeddings_embedding_hnsw_idx
                ON embeddings
                USING hnsw (embedding vector_cosine_ops)
                WITH (m = 16, ef_construction = 64);
            """,
            reverse_sql="DROP INDEX IF EXISTS embeddings_embedding_hnsw_idx;"
        ),
    ]
