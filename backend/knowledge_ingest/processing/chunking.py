"""
Text Chunker  —  offset-preserving recursive splitting
═══════════════════════════════════════════════════════

Every chunk is an exact slice of the extracted text:

    chunk.content == text[chunk.start_offset:chunk.end_offset]

so citations and re-chunking can always be mapped back to the source.

Algorithm
─────────
  1. Recursively split the text on the first separator that occurs in it
     (paragraph → line → sentence → clause → word), keeping the separator
     on the left piece, until every piece fits the budget. Pieces with no
     separator left are cut into fixed windows.
  2. Greedily merge adjacent pieces while they still fit the budget.
  3. Trim surrounding whitespace by moving the offsets, not the text.
  4. Fold chunks shorter than `min_chunk_size` into their predecessor, or
     drop them when that would overflow (a lone chunk is always kept).
  5. Extend every chunk after the first backwards by the overlap, snapped
     forward to a word boundary.

Sizes
─────
  chunk_size / chunk_overlap are in tokens, converted at ~4 chars per token
  (no tokenizer dependency). The budget in step 1–2 is
  max_chars − overlap_chars, so a chunk plus its overlap never exceeds
  max_chars. Overlap is capped at half the chunk size.

  token_count = ceil(len(content) / 4) is the same approximation; keep it
  unless downstream consumers need exact tokenizer parity.

The output is a pure function of (text, parameters): identical input
always yields identical offsets, contents and hashes.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN = 4

SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " ")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextChunk:
    index:        int
    content:      str
    start_offset: int   # inclusive
    end_offset:   int   # exclusive
    token_count:  int
    chunk_hash:   str


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class TextChunker:

    def __init__(self, chunk_size: int = 1024, chunk_overlap: int = 200, min_chunk_size: int = 1) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.max_chars = chunk_size * CHARS_PER_TOKEN
        self.overlap_chars = min(max(chunk_overlap, 0) * CHARS_PER_TOKEN, self.max_chars // 2)
        self.min_chunk_size = max(min_chunk_size, 1)
        self._budget = self.max_chars - self.overlap_chars

    def chunk(self, text: str) -> list[TextChunk]:
        if not text or not text.strip():
            return []

        pieces = self._split(text, 0, len(text), SEPARATORS)
        spans = self._trim(text, self._merge(pieces))
        spans = self._apply_min_size(spans)
        spans = self._apply_overlap(text, spans)

        chunks = [
            TextChunk(
                index=i,
                content=text[start:end],
                start_offset=start,
                end_offset=end,
                token_count=estimate_tokens(text[start:end]),
                chunk_hash=content_hash(text[start:end]),
            )
            for i, (start, end) in enumerate(spans)
        ]
        logger.debug(
            "Chunked | chars=%d chunks=%d max_chars=%d overlap_chars=%d",
            len(text), len(chunks), self.max_chars, self.overlap_chars,
        )
        return chunks

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _split(self, text: str, start: int, end: int, separators: tuple[str, ...]) -> list[tuple[int, int]]:
        if end - start <= self._budget:
            return [(start, end)]

        for i, sep in enumerate(separators):
            if text.find(sep, start, end) == -1:
                continue
            spans: list[tuple[int, int]] = []
            pos = start
            while pos < end:
                idx = text.find(sep, pos, end)
                piece_end = end if idx == -1 else idx + len(sep)
                spans.extend(self._split(text, pos, piece_end, separators[i + 1:]))
                pos = piece_end
            return spans

        # No separator left: fixed windows
        return [(s, min(s + self._budget, end)) for s in range(start, end, self._budget)]

    def _merge(self, pieces: list[tuple[int, int]]) -> list[tuple[int, int]]:
        merged: list[tuple[int, int]] = []
        cur_start, cur_end = pieces[0]
        for start, end in pieces[1:]:
            if end - cur_start <= self._budget:
                cur_end = end
            else:
                merged.append((cur_start, cur_end))
                cur_start, cur_end = start, end
        merged.append((cur_start, cur_end))
        return merged

    @staticmethod
    def _trim(text: str, spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
        trimmed: list[tuple[int, int]] = []
        for start, end in spans:
            while start < end and text[start].isspace():
                start += 1
            while end > start and text[end - 1].isspace():
                end -= 1
            if end > start:
                trimmed.append((start, end))
        return trimmed

    def _apply_min_size(self, spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
        if len(spans) <= 1:
            return spans
        kept: list[tuple[int, int]] = []
        for start, end in spans:
            if end - start >= self.min_chunk_size:
                kept.append((start, end))
            elif kept and end - kept[-1][0] <= self._budget:
                kept[-1] = (kept[-1][0], end)
            # else: too small to stand alone, too big to fold in
        if not kept:
            # Everything was below the minimum: keep the largest piece
            kept = [max(spans, key=lambda span: span[1] - span[0])]
        return kept

    def _apply_overlap(self, text: str, spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
        if self.overlap_chars == 0 or len(spans) <= 1:
            return spans

        result = [spans[0]]
        for (prev_start, _), (start, end) in zip(spans, spans[1:]):
            extend = min(self.overlap_chars, self.max_chars - (end - start))
            new_start = max(start - extend, prev_start)
            if new_start < start and new_start > 0 and not text[new_start - 1].isspace():
                # Mid-word: move forward to the next word start
                while new_start < start and not text[new_start].isspace():
                    new_start += 1
            while new_start < start and text[new_start].isspace():
                new_start += 1
            result.append((new_start, end))
        return result
