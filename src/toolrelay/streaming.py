"""Text chunking for the event stream.

The model returns its final answer in one piece. :class:`TextChunker`
re-slices it into deltas at word and sentence boundaries so a client
sees it arrive progressively.
"""

from __future__ import annotations

import re

MIN_CHUNK_SIZE = 20

# Words, whitespace runs, and single punctuation marks. A punctuation
# mark keeps the whitespace that follows it.
_TOKEN_RE = re.compile(r"[.,!?;:]\s*|\s+|[^\s.,!?;:]+")
_SENTENCE_END_RE = re.compile(r"[.!?]\s*\Z")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text)


class TextChunker:
    """Accumulates tokens and releases them as deltas.

    A buffer is released once it holds at least ``min_size``
    characters or ends a sentence (``.``, ``!`` or ``?`` plus any
    trailing whitespace). :meth:`finalize` releases whatever is left.
    """

    def __init__(self, min_size: int = MIN_CHUNK_SIZE) -> None:
        self.min_size = min_size
        self._buffer = ""

    def feed(self, token: str) -> str | None:
        self._buffer += token
        if len(self._buffer) >= self.min_size or _SENTENCE_END_RE.search(self._buffer):
            chunk, self._buffer = self._buffer, ""
            return chunk
        return None

    def finalize(self) -> str | None:
        chunk, self._buffer = self._buffer, ""
        return chunk or None


def chunk_text(text: str, min_size: int = MIN_CHUNK_SIZE) -> list[str]:
    """Split *text* into the deltas a client receives, in order."""
    chunker = TextChunker(min_size)
    chunks = []
    for token in tokenize(text):
        chunk = chunker.feed(token)
        if chunk is not None:
            chunks.append(chunk)
    tail = chunker.finalize()
    if tail is not None:
        chunks.append(tail)
    return chunks
