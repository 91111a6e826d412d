"""Grounded prompt assembly from a query and retrieved chunks."""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from .errors import ValidationError
from .models import UNSUPPORTED_ANSWER, RetrievalResult, ScoredChunk

logger = logging.getLogger(__name__)

INSTRUCTION = (
    "Answer the question using only the following sources. "
    "Cite every statement with the label of the source it comes from, "
    "written as [DocTitle#chunk-ordinal]. "
    "If the sources disagree, report each version and cite both. "
    f"If the sources do not support an answer, reply exactly: {UNSUPPORTED_ANSWER}"
)

NO_SOURCES_INSTRUCTION = (
    "No sources are available for this question. "
    f"Reply exactly: {UNSUPPORTED_ANSWER}"
)

SOURCE_TEMPLATE = "Source {n} [{label}]:\n{text}\n---"
QUESTION_TEMPLATE = "Question: {query}\nAnswer:"

SUFFIX_LENGTH = 8

# Matches a citation label anywhere in generated text; the optional suffix
# is the lowercase hex digest produced by _doc_suffix
LABEL_RE = re.compile(r"\[([^\[\]]+#\d+(?:@[0-9a-f]{%d,64})?)\]" % SUFFIX_LENGTH)


def _clean_title(title: str) -> str:
    return " ".join(title.replace("[", "(").replace("]", ")").replace("#", " ").split()) or "untitled"


def _doc_suffix(doc_id: str) -> str:
    return hashlib.sha256(doc_id.encode()).hexdigest()


def build_labels(items: Sequence[ScoredChunk]) -> Dict[str, str]:
    """Map chunk id to its citation label, ``Title#ordinal``.

    Chunks from different documents that would share a label get a hex
    digest of their document id appended, e.g. ``Title#0@3fa2b1c9``. The
    digest is lengthened until the colliding labels differ, so caller
    supplied ids of any shape stay distinct and parseable.
    """
    base = {item.chunk_id: f"{_clean_title(item.document.title)}#{item.chunk.ordinal}" for item in items}
    groups: Dict[str, Dict[str, str]] = {}
    for item in items:
        groups.setdefault(base[item.chunk_id], {})[item.chunk_id] = item.chunk.doc_id

    labels = {}
    for label, members in groups.items():
        if len(members) == 1:
            labels.update(dict.fromkeys(members, label))
            continue
        digests = {cid: _doc_suffix(doc_id) for cid, doc_id in members.items()}
        length = SUFFIX_LENGTH
        while length < 64 and len({d[:length] for d in digests.values()}) < len(digests):
            length += 4
        for cid, digest in digests.items():
            labels[cid] = f"{label}@{digest[:length]}"
    return labels


@dataclass
class Prompt:
    text: str
    chunk_ids: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    answerable: bool = True

    def __str__(self) -> str:
        return self.text


class PromptAssembler:
    """Builds the deterministic grounded prompt, bounded by ``max_chars``."""

    def __init__(self, max_chars: int = 12000):
        self.max_chars = max_chars

    def _render(self, query: str, items: List[ScoredChunk], labels: Dict[str, str]) -> str:
        if not items:
            return "\n\n".join([NO_SOURCES_INSTRUCTION, QUESTION_TEMPLATE.format(query=query)])
        blocks = [
            SOURCE_TEMPLATE.format(n=n, label=labels[item.chunk_id], text=item.chunk.text)
            for n, item in enumerate(items, start=1)
        ]
        return "\n\n".join(
            [INSTRUCTION, "Sources:\n" + "\n".join(blocks), QUESTION_TEMPLATE.format(query=query)]
        )

    def assemble(self, query: str, retrieval: RetrievalResult) -> Prompt:
        """
        Build the prompt for a query.

        Args:
            query: The user question
            retrieval: Ranked chunks for the query

        Returns:
            Prompt; ``answerable`` is False when no source fits, in which
            case the generator must not be called

        Raises:
            ValidationError: If the query alone exceeds the length limit
        """
        query = query.strip()
        items = list(retrieval.items)
        labels = build_labels(items)

        text = self._render(query, items, labels)
        dropped = 0
        while items and len(text) > self.max_chars:
            # Lowest score goes first; among equals the later-ranked one
            victim = min(range(len(items)), key=lambda i: (items[i].score, -i))
            items.pop(victim)
            dropped += 1
            text = self._render(query, items, labels)
        if dropped:
            logger.debug("Dropped %d chunk(s) to fit prompt limit of %d chars", dropped, self.max_chars)

        if len(text) > self.max_chars:
            raise ValidationError(
                f"Query too long: prompt needs {len(text)} chars, limit is {self.max_chars}",
                stage="assemble",
                query=query,
            )

        return Prompt(
            text=text,
            chunk_ids=[item.chunk_id for item in items],
            labels={item.chunk_id: labels[item.chunk_id] for item in items},
            answerable=bool(items),
        )


def parse_sources(prompt_text: str) -> List[Dict[str, str]]:
    """Recover ``{label, text}`` source blocks from a rendered prompt."""
    pattern = re.compile(r"^Source \d+ \[(?P<label>[^\]]+)\]:\n(?P<text>.*?)\n---$", re.MULTILINE | re.DOTALL)
    return [{"label": m.group("label"), "text": m.group("text")} for m in pattern.finditer(prompt_text)]


def parse_question(prompt_text: str) -> str:
    match = re.search(r"^Question: (.*)$", prompt_text, re.MULTILINE)
    return match.group(1).strip() if match else ""
