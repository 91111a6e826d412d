"""Text helpers shared by the lexical index, embedder, reranker and verifier."""

import re
from typing import List, Set, Tuple

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)*")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+|\n+")

STOPWORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because
    been before being below between both but by can could did do does doing
    down during each few for from further had has have having he her here
    hers herself him himself his how i if in into is it its itself just me
    more most my myself no nor not now of off on once only or other our ours
    ourselves out over own same she should so some such than that the their
    theirs them themselves then there these they this those through to too
    under until up very was we were what when where which while who whom why
    will with would you your yours yourself yourselves
    """.split()
)


def tokenize(text: str, *, keep_stopwords: bool = False) -> List[str]:
    """Lowercase word tokens, stopwords removed unless asked otherwise."""
    tokens = _TOKEN_RE.findall(text.lower())
    if keep_stopwords:
        return tokens
    return [t for t in tokens if t not in STOPWORDS]


def content_terms(text: str) -> Set[str]:
    return set(tokenize(text))


def extract_numbers(text: str) -> Set[str]:
    """Numeric literals in text, with thousands separators removed."""
    return {n.replace(",", "") for n in _NUMBER_RE.findall(text)}


def split_sentences(text: str) -> List[str]:
    """Split text into stripped, non-empty sentences."""
    return [s.strip() for s in _SENTENCE_RE.split(text) if s and s.strip()]


def split_sentences_with_separators(text: str) -> List[Tuple[str, str]]:
    """Split text into (sentence, trailing separator) pairs.

    Joining ``sentence + separator`` over the result gives back ``text``
    (minus leading whitespace), which lets callers drop sentences while
    keeping the original line structure.
    """
    pieces: List[Tuple[str, str]] = []
    position = 0
    stripped = text.lstrip()
    for match in _SENTENCE_RE.finditer(stripped):
        sentence = stripped[position:match.start()]
        if sentence.strip():
            pieces.append((sentence, match.group(0)))
        position = match.end()
    tail = stripped[position:]
    if tail.strip():
        pieces.append((tail, ""))
    return pieces


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())
