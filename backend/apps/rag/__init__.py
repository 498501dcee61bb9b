"""
RAG (Retrieval Augmented Generation) app.

Provides:
- The query orchestrator (auth, rate limits, validation, retrieval, answer)
- Owner-scoped vector search over pgvector
- Hybrid re-ranking and relevance filtering
- Grounded answers with [S#] citations
"""
