"""Paragraph-aware text chunking with overlap.

Implements character-based chunking to avoid tokenizer dependencies.
Chunk offsets always cover the whole body without gaps; overlapping
ranges are intentional.
"""
import math
import re
from dataclasses import dataclass
from typing import List, Tuple

import structlog

from docgraph import config

logger = structlog.get_logger()

# One or more blank lines separate paragraphs
PARAGRAPH_SEPARATOR = re.compile(r"\n[ \t\r]*(?:\n[ \t\r]*)+")

Span = Tuple[int, int]


@dataclass(frozen=True)
class ChunkingOptions:
    """Chunking parameters, validated on construction."""

    chunk_size: int = config.CHUNK_SIZE
    overlap: int = config.CHUNK_OVERLAP
    respect_paragraph_boundaries: bool = config.RESPECT_PARAGRAPHS
    min_chunk_size: int = config.MIN_CHUNK_SIZE

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.overlap < 0:
            raise ValueError(f"Overlap must not be negative, got {self.overlap}")
        if self.overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )
        if self.min_chunk_size < 0:
            raise ValueError(
                f"Minimum chunk size must not be negative, got {self.min_chunk_size}"
            )


@dataclass
class TextChunk:
    """A chunk of text with its [start_offset, end_offset) range in the body."""

    index: int
    content: str
    start_offset: int
    end_offset: int


class MarkdownChunker:
    """Splits document bodies into overlapping, size-bounded chunks."""

    def __init__(self, options: ChunkingOptions = None):
        """Initialize the chunker.

        Args:
            options: Chunking parameters (default from config)
        """
        self.options = options or ChunkingOptions()

        logger.debug(
            "chunker_initialized",
            chunk_size=self.options.chunk_size,
            overlap=self.options.overlap,
            respect_paragraphs=self.options.respect_paragraph_boundaries,
            min_chunk_size=self.options.min_chunk_size,
        )

    def should_chunk(self, body: str) -> bool:
        """Cheap pre-check: does this body need splitting at all?"""
        if not body:
            return False
        return len(body) > self.options.chunk_size

    def estimate_chunk_count(self, body: str) -> int:
        if not body or len(body) <= self.options.chunk_size:
            return 1
        step = self.options.chunk_size - self.options.overlap
        return max(1, math.ceil(len(body) / step))

    def chunk(self, body: str) -> List[TextChunk]:
        """Split a body into chunks.

        Args:
            body: Document or section text

        Returns:
            Ordered list of TextChunk objects, indexed from 0
        """
        if not body:
            return []

        if len(body) <= self.options.chunk_size:
            return [TextChunk(index=0, content=body, start_offset=0, end_offset=len(body))]

        if self.options.respect_paragraph_boundaries:
            spans = self._paragraph_windows(body)
            strip = True
        else:
            spans = self._sliding_windows(0, len(body), snap=False, body=body)
            strip = False

        if not spans:
            # Whitespace-only body
            return [TextChunk(index=0, content=body, start_offset=0, end_offset=len(body))]

        if self.options.min_chunk_size > 0 and len(spans) > 1:
            spans = self._merge_small(body, spans, strip)

        chunks = self._build_chunks(body, spans, strip)

        logger.debug(
            "text_chunked",
            text_length=len(body),
            chunk_count=len(chunks),
            avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
        )

        return chunks

    def _paragraphs(self, body: str) -> List[Span]:
        """Spans of non-blank paragraphs, trimmed of surrounding whitespace."""
        spans = []
        start = 0
        bounds = [(m.start(), m.end()) for m in PARAGRAPH_SEPARATOR.finditer(body)]
        bounds.append((len(body), len(body)))

        for sep_start, sep_end in bounds:
            segment = body[start:sep_start]
            stripped = segment.strip()
            if stripped:
                lead = len(segment) - len(segment.lstrip())
                spans.append((start + lead, start + lead + len(stripped)))
            start = sep_end

        return spans

    def _paragraph_windows(self, body: str) -> List[Span]:
        """Accumulate paragraphs into windows no longer than chunk_size."""
        size = self.options.chunk_size
        windows: List[Span] = []
        buffer_start = None
        buffer_end = None

        for para_start, para_end in self._paragraphs(body):
            if para_end - para_start > size:
                # Oversized paragraph gets its own sliding windows
                if buffer_start is not None:
                    windows.append((buffer_start, buffer_end))
                    buffer_start = None
                start = para_start
                if windows and self.options.overlap:
                    start = self._overlap_start(body, windows[-1])
                windows.extend(self._sliding_windows(start, para_end, snap=True, body=body))
                continue

            if buffer_start is None:
                buffer_start = self._seed_start(body, windows, para_start, para_end)
                buffer_end = para_end
            elif para_end - buffer_start <= size:
                buffer_end = para_end
            else:
                windows.append((buffer_start, buffer_end))
                buffer_start = self._seed_start(body, windows, para_start, para_end)
                buffer_end = para_end

        if buffer_start is not None:
            windows.append((buffer_start, buffer_end))

        return windows

    def _seed_start(self, body: str, windows: List[Span], para_start: int, para_end: int) -> int:
        """Start of a new buffer: the previous window's overlap tail, if it fits."""
        if not windows or not self.options.overlap:
            return para_start

        start = self._overlap_start(body, windows[-1])
        if start >= para_start:
            return para_start

        earliest = para_end - self.options.chunk_size
        if start < earliest:
            start = self._snap_forward(body, earliest, para_start)
        return start

    def _overlap_start(self, body: str, window: Span) -> int:
        """Offset where the overlap tail of a window begins.

        The tail holds at most ``overlap`` characters (the whole window when
        shorter) and begins at a word start where one exists.
        """
        window_start, window_end = window
        if window_end - window_start <= self.options.overlap:
            return window_start
        cut = window_end - self.options.overlap
        return self._snap_forward(body, cut, window_end)

    def _snap_forward(self, body: str, cut: int, limit: int) -> int:
        """Move a cut inside a word to the start of the next word before ``limit``."""
        if cut <= 0 or body[cut - 1].isspace() or body[cut].isspace():
            return cut
        for i in range(cut, limit):
            if body[i].isspace():
                j = i
                while j < limit and body[j].isspace():
                    j += 1
                if j < limit:
                    return j
                break
        return cut

    def _sliding_windows(self, start: int, end: int, snap: bool, body: str) -> List[Span]:
        """Fixed-size windows over [start, end).

        The window advances by chunk_size - overlap (at least one character).
        With ``snap`` the next window begins at a word start where possible.
        """
        size = self.options.chunk_size
        step = max(1, size - self.options.overlap)
        windows: List[Span] = []
        pos = start

        while True:
            window_end = min(pos + size, end)
            windows.append((pos, window_end))
            if window_end >= end:
                break
            next_pos = pos + step
            if snap and self.options.overlap:
                next_pos = self._snap_forward(body, next_pos, window_end)
            if next_pos <= pos:
                next_pos = pos + 1
            pos = next_pos

        return windows

    def _merge_small(self, body: str, spans: List[Span], strip: bool) -> List[Span]:
        """Merge windows with too little content into the following window."""
        merged: List[Span] = []
        pending = None

        for i, span in enumerate(spans):
            if pending is not None:
                span = (pending[0], max(pending[1], span[1]))
                pending = None

            content = body[span[0]:span[1]]
            if strip:
                content = content.strip()

            if len(content) < self.options.min_chunk_size and i < len(spans) - 1:
                pending = span
                continue
            merged.append(span)

        return merged

    def _build_chunks(self, body: str, spans: List[Span], strip: bool) -> List[TextChunk]:
        """Create chunks, stretching offsets over gaps so coverage is complete."""
        chunks = []
        for index, (start, end) in enumerate(spans):
            content = body[start:end]
            if strip:
                content = content.strip()

            range_start = 0 if index == 0 else start
            if index + 1 < len(spans):
                range_end = max(end, spans[index + 1][0])
            else:
                range_end = len(body)

            chunks.append(
                TextChunk(
                    index=index,
                    content=content,
                    start_offset=range_start,
                    end_offset=range_end,
                )
            )
        return chunks
