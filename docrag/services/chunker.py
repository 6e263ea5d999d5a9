# =============================================================================
# Text Chunker — Four Strategies, One Deterministic Output Shape
# =============================================================================
#
# Splits extracted text into ordered chunks for embedding. All strategies
# work in CHARACTERS (max_chunk_size, overlap, min_chunk_size) so callers can
# reason about chunk sizes without a tokenizer; the embedding provider
# truncates to the model's token limit separately.
#
# STRATEGIES:
#   sentence    Greedy sentence packing. Each new chunk is seeded with the
#               last `overlap // 10` words of the previous one.
#   paragraph   Blank-line separated paragraphs are the unit. Paragraphs
#               shorter than min_chunk_size (headings, list stubs) are merged
#               forward into the next paragraph. Oversized paragraphs are
#               packed by sentence, each continuation seeded with the last
#               one or two sentences.
#   fixed_size  Sliding character window, snapped back to whitespace when
#               that keeps at least 80% of the window.
#   semantic    Paragraphs that fit pass through untouched; oversized ones
#               fall back to the sentence strategy.
#
# POST-PROCESSING (all strategies): strip, then drop chunks shorter than
# min_chunk_size. Tiny trailing fragments are lost; min_chunk_size=0 keeps
# everything.
#
# Same input + same options → same chunks. No randomness, no rebalancing:
# ties always resolve by packing greedily left to right.
# =============================================================================

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import assert_never

from docrag.errors import ChunkingError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class ChunkStrategy(str, enum.Enum):
    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"
    FIXED_SIZE = "fixed_size"
    SEMANTIC = "semantic"


@dataclass(frozen=True)
class ChunkingOptions:
    """Character-based chunking limits. Validated on construction."""

    max_chunk_size: int = 1000
    overlap: int = 100
    min_chunk_size: int = 10

    def __post_init__(self) -> None:
        if self.max_chunk_size <= 0:
            raise ChunkingError(
                "max_chunk_size must be positive.",
                {"max_chunk_size": self.max_chunk_size},
            )
        if self.overlap < 0 or self.overlap >= self.max_chunk_size:
            raise ChunkingError(
                "overlap must be >= 0 and smaller than max_chunk_size.",
                {"overlap": self.overlap, "max_chunk_size": self.max_chunk_size},
            )
        if self.min_chunk_size < 0 or self.min_chunk_size > self.max_chunk_size:
            raise ChunkingError(
                "min_chunk_size must be between 0 and max_chunk_size.",
                {
                    "min_chunk_size": self.min_chunk_size,
                    "max_chunk_size": self.max_chunk_size,
                },
            )


@dataclass
class TextChunk:
    """A single chunk ready for embedding."""

    id: str            # "chunk_1", "chunk_2", ... (stable within one run)
    content: str
    index: int         # 0-indexed position within the document
    char_count: int
    word_count: int
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_text(
    text: str,
    strategy: ChunkStrategy = ChunkStrategy.PARAGRAPH,
    options: ChunkingOptions | None = None,
) -> list[TextChunk]:
    """
    Split text into ordered chunks.

    Args:
        text: Normalized document text (paragraphs separated by blank lines).
        strategy: Which splitting strategy to use.
        options: Size limits. Defaults to ChunkingOptions().

    Returns:
        Chunks in document order. Empty or whitespace-only text returns [].
    """
    opts = options or ChunkingOptions()
    if not text or not text.strip():
        return []

    strategy = ChunkStrategy(strategy)
    match strategy:
        case ChunkStrategy.SENTENCE:
            pieces = _chunk_by_sentence(text, opts)
        case ChunkStrategy.PARAGRAPH:
            pieces = _chunk_by_paragraph(text, opts)
        case ChunkStrategy.FIXED_SIZE:
            pieces = _chunk_by_fixed_size(text, opts)
        case ChunkStrategy.SEMANTIC:
            pieces = _chunk_by_semantic(text, opts)
        case _:
            assert_never(strategy)

    chunks: list[TextChunk] = []
    for piece in pieces:
        content = piece.strip()
        if len(content) < opts.min_chunk_size or not content:
            continue
        word_count = len(content.split())
        chunks.append(TextChunk(
            id=f"chunk_{len(chunks) + 1}",
            content=content,
            index=len(chunks),
            char_count=len(content),
            word_count=word_count,
            metadata={
                "strategy": strategy.value,
                "word_count": word_count,
                "char_count": len(content),
                "overlap": opts.overlap,
            },
        ))

    logger.info(
        "Chunked %d chars into %d chunks (strategy=%s, max=%d, overlap=%d)",
        len(text), len(chunks), strategy.value,
        opts.max_chunk_size, opts.overlap,
    )
    return chunks


# ---------------------------------------------------------------------------
# Splitting Helpers
# ---------------------------------------------------------------------------

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_PARAGRAPH_BOUNDARY = re.compile(r"\n[ \t]*\n")


def split_sentences(text: str) -> list[str]:
    """Split after '.', '!' or '?' followed by whitespace. Terminators stay."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text.strip()) if s.strip()]


def split_paragraphs(text: str) -> list[str]:
    return [p.strip() for p in _PARAGRAPH_BOUNDARY.split(text) if p.strip()]


def _tail_words(text: str, count: int) -> str:
    if count <= 0:
        return ""
    return " ".join(text.split()[-count:])


# ---------------------------------------------------------------------------
# Strategy: sentence
# ---------------------------------------------------------------------------


def _chunk_by_sentence(text: str, opts: ChunkingOptions) -> list[str]:
    overlap_words = opts.overlap // 10
    chunks: list[str] = []
    current = ""

    for sentence in split_sentences(text):
        # A single sentence longer than the limit gets windowed on its own.
        if len(sentence) > opts.max_chunk_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(_chunk_by_fixed_size(sentence, opts))
            continue

        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= opts.max_chunk_size:
            current = candidate
            continue

        chunks.append(current)
        seed = _tail_words(current, overlap_words)
        seeded = f"{seed} {sentence}" if seed else sentence
        current = seeded if len(seeded) <= opts.max_chunk_size else sentence

    if current:
        chunks.append(current)
    return chunks


# ---------------------------------------------------------------------------
# Strategy: paragraph
# ---------------------------------------------------------------------------


def _chunk_by_paragraph(text: str, opts: ChunkingOptions) -> list[str]:
    chunks: list[str] = []
    pending = ""  # short paragraphs waiting to merge forward

    for paragraph in split_paragraphs(text):
        if len(paragraph) > opts.max_chunk_size:
            if pending:
                chunks.append(pending)
                pending = ""
            chunks.extend(_pack_sentences_with_sentence_overlap(paragraph, opts))
            continue

        candidate = f"{pending}\n\n{paragraph}" if pending else paragraph
        if pending and len(candidate) > opts.max_chunk_size:
            chunks.append(pending)
            candidate = paragraph

        if len(candidate) >= opts.min_chunk_size:
            chunks.append(candidate)
            pending = ""
        else:
            pending = candidate

    if pending:
        # Trailing stub: attach to the previous chunk when it fits.
        if chunks and len(chunks[-1]) + 2 + len(pending) <= opts.max_chunk_size:
            chunks[-1] = f"{chunks[-1]}\n\n{pending}"
        else:
            chunks.append(pending)
    return chunks


def _pack_sentences_with_sentence_overlap(
    paragraph: str,
    opts: ChunkingOptions,
) -> list[str]:
    """Pack an oversized paragraph by sentence, carrying 1-2 sentences over."""
    chunks: list[str] = []
    current: list[str] = []

    for sentence in split_sentences(paragraph):
        if len(sentence) > opts.max_chunk_size:
            if current:
                chunks.append(" ".join(current))
                current = []
            chunks.extend(_chunk_by_fixed_size(sentence, opts))
            continue

        if not current or len(" ".join([*current, sentence])) <= opts.max_chunk_size:
            current.append(sentence)
            continue

        chunks.append(" ".join(current))
        # Longest tail (2, then 1 sentences) that still leaves room.
        carried: list[str] = []
        for take in (2, 1):
            tail = current[-take:] if len(current) > take else current[-1:]
            if len(" ".join([*tail, sentence])) <= opts.max_chunk_size:
                carried = list(tail)
                break
        # Carrying the whole previous chunk would repeat it verbatim.
        if len(carried) == len(current):
            carried = []
        current = [*carried, sentence]

    if current:
        chunks.append(" ".join(current))
    return chunks


# ---------------------------------------------------------------------------
# Strategy: fixed_size
# ---------------------------------------------------------------------------


def _last_whitespace(text: str, start: int, end: int) -> int:
    return max(text.rfind(ws, start, end) for ws in (" ", "\n", "\t"))


def _chunk_by_fixed_size(text: str, opts: ChunkingOptions) -> list[str]:
    chunks: list[str] = []
    length = len(text)
    start = 0
    snap_floor = int(opts.max_chunk_size * 0.8)

    while start < length:
        end = min(start + opts.max_chunk_size, length)
        if end < length:
            cut = _last_whitespace(text, start, end)
            if cut > start + snap_floor:
                end = cut
        chunks.append(text[start:end])
        if end >= length:
            break
        next_start = end - opts.overlap
        start = next_start if next_start > start else end

    return chunks


# ---------------------------------------------------------------------------
# Strategy: semantic
# ---------------------------------------------------------------------------


def _chunk_by_semantic(text: str, opts: ChunkingOptions) -> list[str]:
    chunks: list[str] = []
    for paragraph in split_paragraphs(text):
        if len(paragraph) <= opts.max_chunk_size:
            chunks.append(paragraph)
        else:
            chunks.extend(_chunk_by_sentence(paragraph, opts))
    return chunks
