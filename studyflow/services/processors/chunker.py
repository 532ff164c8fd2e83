"""
Content Chunker

Splits normalized text into bounded, overlapping sections for embedding,
and groups paragraphs into overlapping batches for summarization.

Section chunking
----------------
Sections are measured in tokens with tiktoken (``CHUNK_TOKENIZER_ENCODING``,
cl100k_base by default): at most ``CHUNK_MAX_TOKENS`` minus a safety margin,
and hard-capped at ``CHUNK_MAX_CHARS`` characters. Inside a window the cut
prefers, in order:

1. the end of a paragraph (``\\n\\n``)
2. the end of a sentence (``. 。 ? ؟ ! ؛``)
3. a word boundary

searching back no further than half the window. Consecutive sections
share roughly ``CHUNK_OVERLAP_TOKENS`` tokens of trailing words, but every
window advances by at least 30% of its words.

Each section is an exact slice ``text[start_char:end_char]`` of the
normalized text and the slices cover it without gaps, so stitching the
non-overlapping tails back together (``join_chunks``) returns the original.

Summary batching
----------------
Large documents are summarized in batches of whole paragraphs. Each new
batch is seeded with the last few paragraphs of the previous one so a rule
or statement split across a boundary is seen whole at least once.
"""

import math
import re
import unicodedata
from bisect import bisect_left, bisect_right
from collections import Counter
from dataclasses import dataclass
from itertools import accumulate
from typing import Any, Iterable, List, Optional, Sequence

import tiktoken

from studyflow.core.config import settings


_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_HORIZONTAL_SPACE = re.compile(r"[ \t]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_WORD = re.compile(r"\S+")
# Latin, CJK and Arabic sentence terminators
_SENTENCE_END = re.compile(r"[.。?؟!؛](?=\s|$)")

MIN_ADVANCE_RATIO = 0.3


def normalize_text(text: str) -> str:
    """
    Canonical form every extractor output goes through before chunking.

    NFKC, control characters removed, CRLF → LF, runs of spaces/tabs
    collapsed, at most one blank line in a row, trimmed.
    """
    text = unicodedata.normalize("NFKC", text)
    text = _CONTROL_CHARS.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_SPACE.sub(" ", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


@dataclass(frozen=True)
class TextChunk:
    """One section: an exact slice of the normalized text."""

    index: int
    content: str
    start_char: int
    end_char: int
    word_count: int
    token_count: int

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "start_char": self.start_char,
            "end_char": self.end_char,
            "word_count": self.word_count,
            "token_count": self.token_count,
        }


@dataclass(frozen=True)
class ChunkLink:
    id: int
    prev_id: Optional[int]
    next_id: Optional[int]


class ContentChunker:
    """
    Token-aware, overlap-aware section chunker.

    Usage:
        chunker = ContentChunker()
        chunks = chunker.chunk_text(raw_text)
    """

    def __init__(
        self,
        max_tokens: Optional[int] = None,
        overlap_tokens: Optional[int] = None,
        max_chars: Optional[int] = None,
        safety_margin: Optional[float] = None,
        encoding_name: Optional[str] = None,
    ):
        """
        Initialize the chunker.

        Args:
            max_tokens: Token budget per section (default from settings)
            overlap_tokens: Tokens shared with the previous section
            max_chars: Hard character cap per section
            safety_margin: Fraction of the budget kept in reserve
            encoding_name: tiktoken encoding used to count tokens
        """
        self.max_tokens = max_tokens or settings.CHUNK_MAX_TOKENS
        self.overlap_tokens = settings.CHUNK_OVERLAP_TOKENS if overlap_tokens is None else overlap_tokens
        self.max_chars = max_chars or settings.CHUNK_MAX_CHARS
        self.safety_margin = settings.CHUNK_SAFETY_MARGIN if safety_margin is None else safety_margin

        self.max_section_tokens = max(1, int(self.max_tokens * (1 - self.safety_margin)))
        if self.overlap_tokens >= self.max_section_tokens:
            raise ValueError("overlap must be smaller than the section size")

        # cl100k_base used by GPT-4, good general purpose
        self.tokenizer = tiktoken.get_encoding(encoding_name or settings.CHUNK_TOKENIZER_ENCODING)

    def count_tokens(self, text: str) -> int:
        """
        Count tokens in text using tiktoken.

        Special-token markers inside extracted text are counted as plain text.
        """
        return len(self.tokenizer.encode_ordinary(text))

    def chunk_text(self, text: str, normalize: bool = True) -> List[TextChunk]:
        """
        Split text into sections.

        Args:
            text: Raw or normalized text
            normalize: Run ``normalize_text`` first (offsets refer to the
                       normalized text either way)

        Returns:
            Sections in reading order; empty list for blank input
        """
        if normalize:
            text = normalize_text(text)
        if not text.strip():
            return []

        spans = [(m.start(), m.end()) for m in _WORD.finditer(text)]
        word_starts = [s for s, _ in spans]
        # Running token totals per word, with the leading space the word has in context
        word_tokens = [len(t) for t in self.tokenizer.encode_ordinary_batch([" " + text[s:e] for s, e in spans])]
        totals = [0, *accumulate(word_tokens)]
        length = len(text)

        chunks: List[TextChunk] = []
        start = 0
        covered = 0

        while covered < length:
            first = bisect_left(word_starts, start)
            # Largest run of whole words starting at ``first`` inside the budget
            last = bisect_right(totals, totals[first] + self.max_section_tokens) - 1
            take = max(1, last - first)
            if first + take >= len(spans):
                target_end = length
            else:
                target_end = spans[first + take - 1][1]

            if target_end == length and length - start <= self.max_chars:
                end = length
            else:
                window_end = min(target_end, start + self.max_chars)
                end = self._find_break(text, start, covered, window_end, target_end)

            token_count = self.count_tokens(text[start:end])
            while token_count > self.max_section_tokens and end > covered + 1:
                end = self._shrink(text, covered, end)
                token_count = self.count_tokens(text[start:end])

            words_in_chunk = bisect_left(word_starts, end) - first
            chunks.append(
                TextChunk(
                    index=len(chunks),
                    content=text[start:end],
                    start_char=start,
                    end_char=end,
                    word_count=words_in_chunk,
                    token_count=token_count,
                )
            )
            covered = end

            advance = max(
                words_in_chunk - self._overlap_words(totals, first, words_in_chunk),
                math.ceil(words_in_chunk * MIN_ADVANCE_RATIO),
                1,
            )
            if end >= length or advance >= words_in_chunk:
                start = end
            else:
                start = min(word_starts[first + advance], end)

        return chunks

    def _overlap_words(self, totals: Sequence[int], first: int, words_in_chunk: int) -> int:
        """How many trailing words of the section fit in the overlap budget."""
        stop = first + words_in_chunk
        overlap = 0
        while overlap < words_in_chunk and totals[stop] - totals[stop - overlap - 1] <= self.overlap_tokens:
            overlap += 1
        return overlap

    @staticmethod
    def _shrink(text: str, covered: int, end: int) -> int:
        """Previous word boundary before ``end``, never at or before ``covered``."""
        space = max(text.rfind(" ", covered + 1, end - 1), text.rfind("\n", covered + 1, end - 1))
        if space > covered:
            return space
        return end - 1

    @staticmethod
    def _find_break(text: str, start: int, covered: int, window_end: int, target_end: int) -> int:
        """Best cut position in (covered, window_end]."""
        floor = max(start + (window_end - start) // 2, covered + 1)
        if floor >= window_end:
            return window_end

        paragraph = text.rfind("\n\n", floor, window_end)
        if paragraph != -1:
            return paragraph + 2

        sentence_end = None
        for match in _SENTENCE_END.finditer(text, floor, min(len(text), window_end + 1)):
            if match.end() <= window_end:
                sentence_end = match.end()
        if sentence_end is not None:
            return sentence_end

        if window_end == target_end:
            # Window ends on a word boundary already
            return window_end

        space = max(text.rfind(" ", floor, window_end), text.rfind("\n", floor, window_end))
        if space != -1:
            return space
        return window_end


def join_chunks(chunks: Sequence[TextChunk]) -> str:
    """Rebuild text from overlapping sections using their char offsets."""
    parts: List[str] = []
    covered = None
    for chunk in sorted(chunks, key=lambda c: (c.start_char, c.index)):
        if covered is None:
            parts.append(chunk.content)
            covered = chunk.end_char
        elif chunk.end_char > covered:
            parts.append(chunk.content[max(0, covered - chunk.start_char):])
            covered = chunk.end_char
    return "".join(parts)


def link_chunks(ids: Sequence[int]) -> List[ChunkLink]:
    """prev/next pointers for sections stored in reading order."""
    return [
        ChunkLink(
            id=chunk_id,
            prev_id=ids[i - 1] if i > 0 else None,
            next_id=ids[i + 1] if i + 1 < len(ids) else None,
        )
        for i, chunk_id in enumerate(ids)
    ]


# ================================
# Summary batching
# ================================

def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in text.split("\n\n") if p.strip()]


def _fingerprint(paragraph: str) -> str:
    return re.sub(r"\s+", " ", paragraph[:80]).strip().lower()


def filter_noise_paragraphs(
    paragraphs: Iterable[str],
    min_chars: int = 30,
    max_repeats: int = 2,
) -> List[str]:
    """
    Drop page furniture before summarizing.

    Paragraphs of ``min_chars`` characters or fewer (page numbers, stray
    headings) are dropped, as is any paragraph whose opening fingerprint has
    already been seen ``max_repeats`` times (running headers and footers).
    """
    seen: Counter[str] = Counter()
    kept: List[str] = []
    for paragraph in paragraphs:
        stripped = paragraph.strip()
        if len(stripped) <= min_chars:
            continue
        fingerprint = _fingerprint(stripped)
        seen[fingerprint] += 1
        if seen[fingerprint] > max_repeats:
            continue
        kept.append(stripped)
    return kept


def batch_paragraphs(
    paragraphs: Sequence[str],
    batch_chars: Optional[int] = None,
    min_flush_chars: Optional[int] = None,
    overlap_paragraphs: Optional[int] = None,
) -> List[str]:
    """
    Group paragraphs into overlapping batches.

    A batch is closed when the next paragraph would push it past
    ``batch_chars`` and it already holds more than ``min_flush_chars``.
    The next batch starts with the last ``overlap_paragraphs`` paragraphs of
    the closed one. A trailing batch made only of carried-over paragraphs is
    dropped.
    """
    batch_chars = batch_chars or settings.SUMMARY_BATCH_CHARS
    min_flush_chars = settings.SUMMARY_MIN_FLUSH_CHARS if min_flush_chars is None else min_flush_chars
    overlap = settings.SUMMARY_OVERLAP_PARAGRAPHS if overlap_paragraphs is None else overlap_paragraphs

    batches: List[List[str]] = []
    current: List[str] = []
    current_len = 0
    carried = 0

    for paragraph in paragraphs:
        if current and current_len + len(paragraph) > batch_chars and current_len > min_flush_chars:
            batches.append(current)
            current = list(current[-overlap:]) if overlap > 0 else []
            carried = len(current)
            current_len = sum(len(p) for p in current)
        current.append(paragraph)
        current_len += len(paragraph)

    if len(current) > carried:
        batches.append(current)

    return ["\n\n".join(batch) for batch in batches]
