"""
Tests for the ingestion pipeline and reprocessing.

Includes an end-to-end check: ingest a document into the in-memory store,
then answer a question over it through the orchestrator.
"""
import pytest
from django.db import DatabaseError
from unittest.mock import AsyncMock, patch

from apps.docs.models import DocumentStatus
from apps.indexing.embedder import EmbeddingError
from apps.indexing.pipeline import (
    ChunkSettings,
    IngestionError,
    IngestionPipeline,
    ReprocessSummary,
)
from apps.indexing.retry import RetryPolicy
from apps.rag.orchestrator import QueryOrchestrator, QueryRequest, QuerySettings

from fakes import (
    GOOD_TOKEN,
    USER_ID,
    FakeAuditSink,
    FakeAuthenticator,
    FakeChatModel,
    FakeDocument,
    FakeEmbedder,
    FakeRateLimiter,
    InMemoryChunkStore,
)

REPORT = (
    "Quarterly results. Revenue grew to 4.2 million dollars in the third quarter, "
    "driven by subscription sales in Europe.\n\n"
    "Operating costs fell by ten percent year over year after the office consolidation. "
    "Headcount remained flat at 120 employees."
)

NO_WAIT = RetryPolicy(max_retries=2, initial_backoff=0.0, max_backoff=0.0, jitter_percent=0.0)


@pytest.fixture(autouse=True)
def silent_publisher():
    """Progress events go nowhere."""
    with patch('apps.indexing.pipeline.publisher') as publisher:
        publisher.publish_indexing_started = AsyncMock()
        publisher.publish_indexing_completed = AsyncMock()
        publisher.publish_indexing_failed = AsyncMock()
        yield publisher


@pytest.fixture
def store():
    return InMemoryChunkStore()


def make_pipeline(store, embedder=None, chunk_size=120):
    return IngestionPipeline(
        embedder=embedder or FakeEmbedder(),
        chunk_store=store,
        chunk_settings=ChunkSettings(strategy='semantic', chunk_size=chunk_size, chunk_overlap=30, min_size=40),
    )


class BrokenStore(InMemoryChunkStore):
    """Fails to store chunks for documents with the given titles."""

    def __init__(self, broken_titles):
        super().__init__()
        self.broken_titles = set(broken_titles)

    async def replace_chunks(self, document_id, chunks, vectors):
        if self.documents[document_id].title in self.broken_titles:
            raise DatabaseError("deadlock detected")
        return await super().replace_chunks(document_id, chunks, vectors)


class MalformedReplyEmbedder(FakeEmbedder):
    async def embed(self, texts):
        raise KeyError('embedding')


class TestIngest:

    @pytest.mark.asyncio
    async def test_ingest_stores_contiguous_chunks(self, store, silent_publisher):
        """Chunks get contiguous indices and one vector each."""
        document = store.add(FakeDocument(owner_id=USER_ID, title="q3.txt", content=REPORT))
        pipeline = make_pipeline(store)

        result = await pipeline.ingest(document)

        rows = store.rows[document.id]
        assert result.chunk_count == len(rows) > 1
        assert [chunk.index for chunk, _ in rows] == list(range(len(rows)))
        assert store.statuses[document.id] == [DocumentStatus.INDEXING, DocumentStatus.INDEXED]
        silent_publisher.publish_indexing_completed.assert_awaited_once_with(
            document.id, USER_ID, result.chunk_count
        )

    @pytest.mark.asyncio
    async def test_embeddings_requested_in_batches(self, store, settings):
        document = store.add(FakeDocument(owner_id=USER_ID, title="q3.txt", content=REPORT))
        embedder = FakeEmbedder()
        pipeline = make_pipeline(store, embedder=embedder, chunk_size=60)

        settings.EMBEDDING_BATCH_SIZE = 2
        result = await pipeline.ingest(document)

        assert all(len(batch) <= 2 for batch in embedder.calls)
        assert sum(len(batch) for batch in embedder.calls) == result.chunk_count

    @pytest.mark.asyncio
    async def test_reingest_replaces_chunks(self, store):
        document = store.add(FakeDocument(owner_id=USER_ID, title="q3.txt", content=REPORT))
        pipeline = make_pipeline(store)

        first = await pipeline.ingest(document)
        second = await pipeline.ingest(document)

        assert first.chunk_count == second.chunk_count == len(store.rows[document.id])

    @pytest.mark.asyncio
    async def test_empty_content_fails(self, store, silent_publisher):
        document = store.add(FakeDocument(owner_id=USER_ID, title="blank.txt", content="   "))
        pipeline = make_pipeline(store)

        with pytest.raises(IngestionError):
            await pipeline.ingest(document)

        assert store.statuses[document.id][-1] == DocumentStatus.FAILED
        silent_publisher.publish_indexing_failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_embedding_failure_without_retry(self, store):
        document = store.add(FakeDocument(owner_id=USER_ID, title="q3.txt", content=REPORT))
        embedder = FakeEmbedder(errors=[EmbeddingError("Embedding service error: 503")])
        pipeline = make_pipeline(store, embedder=embedder)

        with pytest.raises(IngestionError, match="Embedding error"):
            await pipeline.ingest(document)

        assert document.id not in store.rows

    @pytest.mark.asyncio
    async def test_transient_embedding_failure_is_retried(self, store):
        document = store.add(FakeDocument(owner_id=USER_ID, title="q3.txt", content=REPORT))
        embedder = FakeEmbedder(errors=[EmbeddingError("Embedding service timed out")])
        pipeline = make_pipeline(store, embedder=embedder)

        result = await pipeline.ingest(document, retry_policy=NO_WAIT)

        assert result.chunk_count == len(store.rows[document.id])


    @pytest.mark.asyncio
    async def test_storage_failure_marks_document_failed(self, silent_publisher):
        store = BrokenStore({"q3.txt"})
        document = store.add(FakeDocument(owner_id=USER_ID, title="q3.txt", content=REPORT))

        with pytest.raises(IngestionError, match="deadlock detected"):
            await make_pipeline(store).ingest(document)

        assert store.statuses[document.id] == [DocumentStatus.INDEXING, DocumentStatus.FAILED]
        silent_publisher.publish_indexing_failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_embedding_reply_marks_document_failed(self, store):
        document = store.add(FakeDocument(owner_id=USER_ID, title="q3.txt", content=REPORT))

        with pytest.raises(IngestionError):
            await make_pipeline(store, embedder=MalformedReplyEmbedder()).ingest(document)

        assert store.statuses[document.id][-1] == DocumentStatus.FAILED
        assert document.id not in store.rows


class TestReprocess:

    @pytest.mark.asyncio
    async def test_only_documents_without_embeddings(self, store):
        pipeline = make_pipeline(store)
        done = store.add(FakeDocument(owner_id=USER_ID, title="done.txt", content=REPORT))
        await pipeline.ingest(done)
        pending = store.add(FakeDocument(owner_id=USER_ID, title="pending.txt", content=REPORT + " More."))
        store.add(FakeDocument(owner_id="someone-else", title="other.txt", content=REPORT))

        summary = await pipeline.reprocess_missing(USER_ID, retry_policy=NO_WAIT)

        assert summary.total == 2
        assert summary.needing_reprocessing == 1
        assert summary.processed == 1
        assert summary.results[0]['id'] == pending.id
        assert summary.results[0]['status'] == 'success'

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self, store):
        pipeline = make_pipeline(store)
        store.add(FakeDocument(owner_id=USER_ID, title="blank.txt", content=""))
        store.add(FakeDocument(owner_id=USER_ID, title="good.txt", content=REPORT))

        summary = await pipeline.reprocess_missing(USER_ID, retry_policy=NO_WAIT)

        assert summary.processed == 1
        assert summary.failed == 1
        statuses = {r['title']: r['status'] for r in summary.results}
        assert statuses == {'blank.txt': 'failed', 'good.txt': 'success'}

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_abort_batch(self):
        store = BrokenStore({"bad.txt"})
        pipeline = make_pipeline(store)
        bad = store.add(FakeDocument(owner_id=USER_ID, title="bad.txt", content=REPORT))
        good = store.add(FakeDocument(owner_id=USER_ID, title="good.txt", content=REPORT))

        summary = await pipeline.reprocess_missing(USER_ID, retry_policy=NO_WAIT)

        assert (summary.processed, summary.failed) == (1, 1)
        assert store.statuses[bad.id][-1] == DocumentStatus.FAILED
        assert store.statuses[good.id][-1] == DocumentStatus.INDEXED
        failed = next(r for r in summary.results if r['title'] == 'bad.txt')
        assert 'deadlock detected' in failed['error']

    def test_summary_message(self):
        assert ReprocessSummary(total=3, needing_reprocessing=0).message == 'No documents to reprocess'
        summary = ReprocessSummary(total=3, needing_reprocessing=2, processed=1, failed=1)
        assert summary.to_dict()['message'] == 'Reprocessed 1 of 2 documents'
        assert summary.to_dict()['needingReprocessing'] == 2


class TestIngestThenQuery:

    @pytest.mark.asyncio
    async def test_end_to_end(self, store):
        """An ingested document answers a question with an S1 citation."""
        embedder = FakeEmbedder()
        document = store.add(FakeDocument(owner_id=USER_ID, title="q3.txt", content=REPORT))
        await make_pipeline(store, embedder=embedder).ingest(document)

        sink = FakeAuditSink()
        orchestrator = QueryOrchestrator(
            authenticator=FakeAuthenticator(),
            rate_limiter=FakeRateLimiter(),
            embedder=embedder,
            vector_store=store,
            llm=FakeChatModel(answer="Revenue grew to $4.2M [S1]."),
            audit_sink=sink,
            settings=QuerySettings(),
        )

        outcome = await orchestrator.handle(QueryRequest(
            authorization=GOOD_TOKEN,
            forwarded_for="198.51.100.7",
            body={'question': 'What was revenue in the third quarter?'},
        ))

        result = outcome.result
        assert outcome.ok
        assert "[S1]" in result.answer
        assert result.sources[0].label == "S1"
        assert result.sources[0].document_id == document.id
        assert result.sources[0].similarity == pytest.approx(1.0)
        assert result.metrics.chunks_retrieved == len(store.rows[document.id])
        assert len(sink.queries) == 1

    @pytest.mark.asyncio
    async def test_quarterly_results_question(self, store):
        """A one-paragraph filing answers a results question from its single chunk."""
        embedder = FakeEmbedder()
        document = store.add(FakeDocument(
            owner_id=USER_ID,
            title="company-x.txt",
            content="Company X revenue grew 20% in Q4. Risks include supply chain delays.",
        ))
        await make_pipeline(store, embedder=embedder).ingest(document)
        llm = FakeChatModel(answer="Company X revenue grew 20% in Q4 [S1].")

        orchestrator = QueryOrchestrator(
            authenticator=FakeAuthenticator(),
            rate_limiter=FakeRateLimiter(),
            embedder=embedder,
            vector_store=store,
            llm=llm,
            audit_sink=FakeAuditSink(),
            settings=QuerySettings(),
        )

        outcome = await orchestrator.handle(QueryRequest(
            authorization=GOOD_TOKEN, body={'question': 'What were the Q4 results?'}
        ))

        result = outcome.result
        assert outcome.ok
        assert len(store.rows[document.id]) == 1
        assert result.sources
        assert result.sources[0].similarity == pytest.approx(1.0)
        assert "[S1]" in result.answer
        assert "Company X revenue grew 20% in Q4." in llm.calls[0][0].content

    @pytest.mark.asyncio
    async def test_other_owners_documents_are_invisible(self, store):
        embedder = FakeEmbedder()
        foreign = store.add(FakeDocument(owner_id="someone-else", title="secret.txt", content=REPORT))
        await make_pipeline(store, embedder=embedder).ingest(foreign)

        orchestrator = QueryOrchestrator(
            authenticator=FakeAuthenticator(),
            rate_limiter=FakeRateLimiter(),
            embedder=embedder,
            vector_store=store,
            llm=FakeChatModel(),
            audit_sink=FakeAuditSink(),
            settings=QuerySettings(),
        )

        outcome = await orchestrator.handle(QueryRequest(
            authorization=GOOD_TOKEN, body={'question': 'What was revenue?'}
        ))

        assert outcome.result.sources == []
