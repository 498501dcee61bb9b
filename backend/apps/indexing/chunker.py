"""
Deterministic text chunking for document ingestion.

Three interchangeable strategies are available:
- fixed_window: character windows with a fixed overlap (fallback)
- sentence: sentences accumulated into a buffer, word-based overlap
- semantic: paragraphs accumulated into a buffer, whole-sentence overlap (default)

Every chunk is a contiguous span of the whitespace-normalized text, so
``normalized[chunk.start_char:chunk.end_char] == chunk.text`` always holds
and the union of all spans covers the text.
"""
import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Default chunking parameters
DEFAULT_CHUNK_SIZE = 1000  # characters (approximately 250 tokens)
DEFAULT_CHUNK_OVERLAP = 200  # characters of overlap between chunks
MIN_CHUNK_SIZE = 100  # Minimum buffer size before a semantic flush

# Chunks shorter than this carry no retrievable signal
MIN_VIABLE_CHUNK = 50

# Page separator emitted by text extractors
PAGE_SEPARATOR = '\f'

_PARAGRAPH_BREAK = re.compile(r'\n\n')
_SENTENCE_END = re.compile(r'[.!?]+\s+')
_WORD = re.compile(r'\S+')

Span = Tuple[int, int]


class ChunkStrategy(str, Enum):
    """Available chunking strategies."""
    FIXED_WINDOW = "fixed_window"
    SENTENCE = "sentence"
    SEMANTIC = "semantic"


@dataclass
class TextChunk:
    """A chunk of text with its index and position."""
    index: int
    text: str
    start_char: int
    end_char: int
    page_no: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def char_count(self) -> int:
        return len(self.text)


def normalize_whitespace(text: str) -> str:
    """
    Normalize whitespace in text for consistent chunking.

    - Converts all whitespace sequences to single spaces
    - Preserves paragraph breaks (double newlines)
    - Strips leading/trailing whitespace

    Args:
        text: Raw text input

    Returns:
        Normalized text
    """
    # First, normalize line endings
    text = text.replace('\r\n', '\n').replace('\r', '\n')

    # Collapse blank-line runs into a single paragraph break
    text = re.sub(r'\n\s*\n', '\n\n', text)

    # Replace multiple spaces/tabs with single space
    text = re.sub(r'[^\S\n]+', ' ', text)

    lines = [line.strip() for line in text.split('\n')]
    text = '\n'.join(lines)

    text = re.sub(r'\n{3,}', '\n\n', text)

    return text.strip()


def _split_spans(text: str, pattern: re.Pattern, start: int, end: int) -> List[Span]:
    """
    Split text[start:end] on a separator pattern.

    The separator is excluded from both neighbours, except for sentence
    punctuation which stays with the sentence it terminates.
    """
    spans = []
    pos = start
    for match in pattern.finditer(text, start, end):
        # Keep the punctuation, drop the trailing whitespace
        piece_end = match.start() + len(match.group().rstrip())
        if piece_end > pos:
            spans.append((pos, piece_end))
        pos = match.end()
    if pos < end:
        spans.append((pos, end))
    return spans


def paragraph_spans(text: str) -> List[Span]:
    """Spans of blank-line separated paragraphs."""
    return _split_spans(text, _PARAGRAPH_BREAK, 0, len(text))


def sentence_spans(text: str, start: int = 0, end: Optional[int] = None) -> List[Span]:
    """Spans of sentences (split on ., ! or ? followed by whitespace)."""
    if end is None:
        end = len(text)
    return _split_spans(text, _SENTENCE_END, start, end)


def _make_chunks(text: str, spans: List[Span]) -> List[TextChunk]:
    return [
        TextChunk(index=i, text=text[start:end], start_char=start, end_char=end)
        for i, (start, end) in enumerate(spans)
    ]


def _merge_small_tail(spans: List[Span], min_length: int) -> List[Span]:
    """Fold a final span shorter than min_length into its predecessor."""
    if len(spans) > 1:
        start, end = spans[-1]
        if end - start < min_length:
            prev_start, _ = spans[-2]
            spans = spans[:-2] + [(prev_start, end)]
    return spans


def _accumulate(
    units: List[Span],
    max_size: int,
    flush_at: int,
    overlap_start,
) -> List[Span]:
    """
    Greedy buffer accumulation shared by the sentence and semantic strategies.

    A buffer is flushed only when it holds at least ``flush_at`` characters
    and appending the next unit would push it past ``max_size``. The next
    buffer is seeded from ``overlap_start(buffer_start, buffer_end)``,
    which returns the offset where the carried tail begins (or None).
    """
    spans: List[Span] = []
    buf_start: Optional[int] = None
    buf_end = 0
    has_new = False

    for unit_start, unit_end in units:
        if buf_start is None:
            buf_start, buf_end, has_new = unit_start, unit_end, True
            continue

        too_big = unit_end - buf_start > max_size
        if too_big and has_new and buf_end - buf_start >= flush_at:
            spans.append((buf_start, buf_end))
            seed = overlap_start(buf_start, buf_end)
            if seed is not None and unit_end - seed <= max_size:
                buf_start = seed
            else:
                buf_start = unit_start
        buf_end = unit_end
        has_new = True

    if buf_start is not None and has_new:
        spans.append((buf_start, buf_end))
    return spans


def chunk_fixed_window(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[TextChunk]:
    """
    Slide a window of ``chunk_size`` characters over the text.

    Consecutive windows share ``chunk_overlap`` characters. An overlap that
    is not smaller than the window would never advance, so it is clamped to
    ``chunk_size - 1``. The loop stops once a window reaches the end of text.

    Args:
        text: Normalized text
        chunk_size: Window size in characters
        chunk_overlap: Characters shared by consecutive windows

    Returns:
        List of TextChunk objects
    """
    if not text:
        return []

    chunk_size = max(1, chunk_size)
    if chunk_overlap >= chunk_size:
        logger.warning(
            f"Chunk overlap {chunk_overlap} >= chunk size {chunk_size}, "
            f"clamping to {chunk_size - 1}"
        )
        chunk_overlap = chunk_size - 1
    chunk_overlap = max(0, chunk_overlap)
    step = chunk_size - chunk_overlap

    spans: List[Span] = []
    start = 0
    while True:
        end = min(start + chunk_size, len(text))
        window = text[start:end]
        trimmed_start = start + (len(window) - len(window.lstrip()))
        trimmed_end = end - (len(window) - len(window.rstrip()))
        if trimmed_end > trimmed_start:
            spans.append((trimmed_start, trimmed_end))
        if end >= len(text):
            break
        start += step

    spans = _merge_small_tail(spans, MIN_VIABLE_CHUNK)
    return _make_chunks(text, spans)


def chunk_by_sentences(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[TextChunk]:
    """
    Accumulate sentences into chunks of at most ``chunk_size`` characters.

    The next chunk is seeded with roughly ``chunk_overlap // 5`` trailing
    words of the flushed one.
    """
    if not text:
        return []

    overlap_words = max(0, chunk_overlap // 5)

    def word_overlap(buf_start: int, buf_end: int) -> Optional[int]:
        if overlap_words == 0:
            return None
        words = [m.start() for m in _WORD.finditer(text, buf_start, buf_end)]
        # Never carry the whole buffer
        candidates = words[1:][-overlap_words:]
        return candidates[0] if candidates else None

    spans = _accumulate(
        sentence_spans(text),
        max_size=chunk_size,
        flush_at=MIN_VIABLE_CHUNK,
        overlap_start=word_overlap,
    )
    spans = _merge_small_tail(spans, MIN_VIABLE_CHUNK)
    return _make_chunks(text, spans)


def chunk_semantic(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_size: int = MIN_CHUNK_SIZE,
) -> List[TextChunk]:
    """
    Paragraph-aware chunking with whole-sentence overlap.

    Paragraphs are accumulated into a buffer that is flushed once it holds
    at least ``min_size`` characters and the next paragraph would exceed
    ``chunk_size``. A paragraph longer than ``chunk_size`` contributes its
    sentences individually, so no boundary ever falls inside a sentence.
    The carried overlap is the longest run of trailing sentences that fits
    in ``chunk_overlap`` characters.

    Args:
        text: Normalized text
        chunk_size: Soft maximum chunk size in characters
        chunk_overlap: Overlap budget in characters
        min_size: Minimum buffer size before a flush is allowed

    Returns:
        List of TextChunk objects
    """
    if not text:
        return []

    units: List[Span] = []
    sentence_starts: List[int] = []
    for para_start, para_end in paragraph_spans(text):
        sentences = sentence_spans(text, para_start, para_end)
        sentence_starts.extend(start for start, _ in sentences)
        if para_end - para_start > chunk_size:
            units.extend(sentences)
        else:
            units.append((para_start, para_end))

    def sentence_overlap(buf_start: int, buf_end: int) -> Optional[int]:
        for start in sentence_starts:
            if buf_start < start < buf_end and buf_end - start <= chunk_overlap:
                return start
        return None

    spans = _accumulate(
        units,
        max_size=chunk_size,
        flush_at=min_size,
        overlap_start=sentence_overlap,
    )
    spans = _merge_small_tail(spans, MIN_VIABLE_CHUNK)
    return _make_chunks(text, spans)


def chunk_text(
    text: str,
    strategy: str = ChunkStrategy.SEMANTIC,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_size: int = MIN_CHUNK_SIZE,
    normalize: bool = True,
) -> List[TextChunk]:
    """
    Split text into overlapping chunks using the requested strategy.

    Args:
        text: The text to chunk
        strategy: One of ChunkStrategy values
        chunk_size: Target size for each chunk in characters
        chunk_overlap: Number of characters to overlap between chunks
        min_size: Minimum buffer size for the semantic strategy
        normalize: Whether to normalize whitespace first

    Returns:
        List of TextChunk objects (empty for blank input)
    """
    if normalize:
        text = normalize_whitespace(text)

    if not text:
        logger.warning("Empty text provided for chunking")
        return []

    strategy = ChunkStrategy(strategy)
    if strategy == ChunkStrategy.FIXED_WINDOW:
        chunks = chunk_fixed_window(text, chunk_size, chunk_overlap)
    elif strategy == ChunkStrategy.SENTENCE:
        chunks = chunk_by_sentences(text, chunk_size, chunk_overlap)
    else:
        chunks = chunk_semantic(text, chunk_size, chunk_overlap, min_size)

    logger.info(f"Created {len(chunks)} {strategy.value} chunks from {len(text)} characters")

    return chunks


def chunk_document(
    content: str,
    strategy: str = ChunkStrategy.SEMANTIC,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_size: int = MIN_CHUNK_SIZE,
) -> List[TextChunk]:
    """
    Chunk a whole document, page by page.

    Pages are separated by form feeds. Chunk indices stay contiguous across
    pages; ``page_no`` (1-based) is only set for multi-page documents and
    offsets are relative to the normalized page text.
    """
    pages = content.split(PAGE_SEPARATOR)
    multi_page = len(pages) > 1
    strategy_value = ChunkStrategy(strategy).value

    chunks: List[TextChunk] = []
    for page_no, page in enumerate(pages, 1):
        for chunk in chunk_text(page, strategy, chunk_size, chunk_overlap, min_size):
            chunk.index = len(chunks)
            chunk.page_no = page_no if multi_page else None
            chunk.metadata = {'length': chunk.char_count, 'strategy': strategy_value}
            chunks.append(chunk)

    return chunks
