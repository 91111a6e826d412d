"""Boilerplate stripping and offset-tracked, overlapping chunking."""

import re
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from .errors import ConfigError
from .models import Chunk, Document

BoilerplatePolicy = Callable[[str], bool]

# Unit boundaries: paragraph breaks, sentence ends, line breaks
_BOUNDARY_RE = re.compile(r"\n\s*\n|(?<=[.!?])\s+|\n")

_DEFAULT_PATTERNS = (
    r"^\s*page \d+( of \d+)?\s*$",
    r"^\s*-\s*\d+\s*-\s*$",
    r"^\s*(copyright|©|\(c\)).*$",
    r"^.*all rights reserved\.?\s*$",
    r"^\s*(skip to (main )?content|back to top|table of contents)\s*$",
    r"^\s*(\w[\w ]{0,20}\s*\|\s*){2,}\w[\w ]{0,20}\s*$",  # Home | About | Contact
    r"^\s*(cookie|privacy) (policy|settings|preferences)\s*$",
)


class BoilerplateFilter:
    """Line-level boilerplate policy driven by regular expressions.

    Callable as ``policy(line) -> bool``; any callable with that signature
    can be passed to the chunker instead.
    """

    def __init__(self, patterns: Sequence[str] = _DEFAULT_PATTERNS, extra: Sequence[str] = ()):
        self._patterns = [re.compile(p, re.IGNORECASE) for p in (*patterns, *extra)]

    def __call__(self, line: str) -> bool:
        return self.is_boilerplate(line)

    def is_boilerplate(self, line: str) -> bool:
        content = line.strip()
        if not content:
            return False
        return any(p.match(content) for p in self._patterns)


def never_boilerplate(line: str) -> bool:
    return False


def strip_boilerplate(text: str, is_boilerplate: BoilerplatePolicy) -> str:
    """Drop boilerplate lines, keeping every other character verbatim."""
    return "".join(
        line for line in text.splitlines(keepends=True) if not is_boilerplate(line)
    )


def _unit_ends(text: str, chunk_size: int) -> List[int]:
    """End offsets of splitting units, each unit at most chunk_size long."""
    ends: List[int] = []
    start = 0
    boundaries = [m.end() for m in _BOUNDARY_RE.finditer(text)]
    boundaries.append(len(text))
    for boundary in boundaries:
        if boundary <= start:
            continue
        # Hard cuts only when a single unit exceeds chunk_size
        while boundary - start > chunk_size:
            start += chunk_size
            ends.append(start)
        ends.append(boundary)
        start = boundary
    return ends


def _snap_to_word(text: str, position: int, limit: int) -> int:
    """First word start at or after position, capped at limit."""
    j = position
    while j < limit and not (text[j - 1].isspace() and not text[j].isspace()):
        j += 1
    return j


def _spans(text: str, chunk_size: int, overlap: int) -> Iterator[Tuple[int, int]]:
    ends = _unit_ends(text, chunk_size)
    if not ends:
        return
    start = 0
    prev_end = 0
    i = 0  # index of the first unit end beyond prev_end
    while prev_end < len(text):
        while i < len(ends) and ends[i] <= prev_end:
            i += 1
        end = _pack(ends, i, start, chunk_size)
        if end <= prev_end:
            # The overlap left no room for a new unit; restart without overlap
            start = prev_end
            end = _pack(ends, i, start, chunk_size)
        yield start, end
        prev_end = end
        if end >= len(text):
            return
        candidate = end - overlap
        if overlap == 0 or candidate <= start:
            start = end
        else:
            start = _snap_to_word(text, max(candidate, 1), end)


def _pack(ends: List[int], i: int, start: int, chunk_size: int) -> int:
    end = start
    while i < len(ends) and ends[i] - start <= chunk_size:
        end = ends[i]
        i += 1
    return end


class ChunkSequence:
    """Lazy, restartable sequence of chunks for one document.

    Iterating twice yields identical chunks; nothing is computed until
    iteration starts.
    """

    def __init__(
        self,
        document: Document,
        chunk_size: int,
        overlap: int,
        is_boilerplate: BoilerplatePolicy,
    ):
        self.document = document
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.is_boilerplate = is_boilerplate
        self._clean_text: Optional[str] = None

    @property
    def clean_text(self) -> str:
        if self._clean_text is None:
            self._clean_text = strip_boilerplate(self.document.text, self.is_boilerplate)
        return self._clean_text

    def __iter__(self) -> Iterator[Chunk]:
        text = self.clean_text
        if not text.strip():
            return
        for ordinal, (start, end) in enumerate(_spans(text, self.chunk_size, self.overlap)):
            piece = text[start:end]
            yield Chunk(
                chunk_id=Chunk.make_id(self.document.doc_id, start, end, piece),
                doc_id=self.document.doc_id,
                text=piece,
                start=start,
                end=end,
                ordinal=ordinal,
            )


def validate_chunking(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ConfigError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ConfigError(
            f"overlap must be in [0, chunk_size), got overlap={overlap}, chunk_size={chunk_size}"
        )


def chunk_document(
    document: Document,
    chunk_size: int,
    overlap: int,
    *,
    is_boilerplate: Optional[BoilerplatePolicy] = None,
) -> ChunkSequence:
    """
    Split a document into overlapping, offset-tracked chunks.

    Args:
        document: Source document
        chunk_size: Maximum characters per chunk
        overlap: Maximum characters shared by consecutive chunks
        is_boilerplate: Line policy; defaults to ``BoilerplateFilter()``

    Returns:
        A restartable ``ChunkSequence``

    Raises:
        ConfigError: If overlap >= chunk_size or sizes are invalid
    """
    validate_chunking(chunk_size, overlap)
    policy = is_boilerplate if is_boilerplate is not None else BoilerplateFilter()
    return ChunkSequence(document, chunk_size, overlap, policy)


def reconstruct(chunks: Sequence[Chunk]) -> str:
    """Join chunk texts, dropping the part each chunk shares with the previous one."""
    out: List[str] = []
    covered = 0
    for chunk in chunks:
        out.append(chunk.text[covered - chunk.start:] if covered > chunk.start else chunk.text)
        covered = chunk.end
    return "".join(out)


def chunk_text(
    text: str,
    *,
    max_chars: int = 2000,
    overlap_chars: int = 200,
) -> List[str]:
    """Split raw text into overlapping chunk strings (no boilerplate stripping)."""
    document = Document(text=text)
    return [c.text for c in chunk_document(document, max_chars, overlap_chars, is_boilerplate=never_boilerplate)]
