"""Grounding verification of generated answers against retrieved chunks."""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import UNSUPPORTED_ANSWER, Citation, RetrievalResult, ScoredChunk
from .prompt import LABEL_RE, build_labels
from .text import (
    content_terms,
    extract_numbers,
    normalize_whitespace,
    split_sentences,
    split_sentences_with_separators,
)

logger = logging.getLogger(__name__)

_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([.,;:!?])")
_DONT_KNOW_PREFIXES = ("i don't know", "i do not know", "i don’t know")


@dataclass
class Claim:
    """One answer sentence and the outcome of checking it."""
    text: str
    sentence: str
    separator: str = ""
    chunk_ids: List[str] = field(default_factory=list)
    supported: bool = False
    support_chunk_id: Optional[str] = None
    score: float = 0.0


@dataclass
class VerificationResult:
    final_answer: str
    citations: List[Citation]
    confidence: float
    supported: bool
    supported_fraction: float = 0.0
    # Share of the sentences in final_answer that are supported; the
    # discrepancy note is added by the verifier and is not counted
    faithfulness: float = 1.0
    claims: List[Claim] = field(default_factory=list)
    discrepancies: List[str] = field(default_factory=list)


def _context_terms(text: str) -> Set[str]:
    return {t for t in content_terms(text) if not t.isdigit()}


def _jaccard(a: Set[str], b: Set[str]) -> float:
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def _is_dont_know(text: str) -> bool:
    lowered = normalize_whitespace(text).lower()
    return lowered == UNSUPPORTED_ANSWER.lower() or lowered.startswith(_DONT_KNOW_PREFIXES)


class GroundingVerifier:
    """
    Checks each answer sentence against the chunks it cites.

    A claim is supported when enough of its content terms occur in one
    cited chunk (or any used chunk, if the claim cites none) and every
    number it states appears in that chunk. Below ``min_supported_fraction``
    the whole answer is replaced by the unsupported sentinel.
    """

    def __init__(
        self,
        support_threshold: float = 0.6,
        min_supported_fraction: float = 0.5,
        confidence_floor: float = 0.0,
        suppress_unsupported: bool = True,
        conflict_threshold: float = 0.5,
    ):
        self.support_threshold = support_threshold
        self.min_supported_fraction = min_supported_fraction
        self.confidence_floor = confidence_floor
        self.suppress_unsupported = suppress_unsupported
        self.conflict_threshold = conflict_threshold

    def unsupported(self, retrieval: RetrievalResult, claims=None, fraction: float = 0.0) -> VerificationResult:
        confidence = 0.0 if retrieval.is_empty else self.confidence_floor
        return VerificationResult(
            final_answer=UNSUPPORTED_ANSWER,
            citations=[],
            confidence=confidence,
            supported=False,
            supported_fraction=fraction,
            claims=claims or [],
        )

    def _strip_unknown_labels(self, answer: str, known: Dict[str, str]) -> str:
        stripped: List[str] = []

        def replace(match):
            if match.group(1) in known:
                return match.group(0)
            stripped.append(match.group(1))
            return ""

        cleaned = LABEL_RE.sub(replace, answer)
        if stripped:
            logger.warning("Stripped citation(s) to chunks that were not retrieved: %s", stripped)
            cleaned = "\n".join(
                _SPACE_BEFORE_PUNCT_RE.sub(r"\1", normalize_whitespace(line)) for line in cleaned.splitlines()
            )
        return cleaned.strip()

    def _split_claims(self, answer: str, known: Dict[str, str]) -> List[Claim]:
        claims: List[Claim] = []
        for sentence, separator in split_sentences_with_separators(answer):
            chunk_ids = [known[m.group(1)] for m in LABEL_RE.finditer(sentence)]
            text = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", normalize_whitespace(LABEL_RE.sub(" ", sentence)))
            if not content_terms(text):
                # Label-only or punctuation-only fragment belongs to the previous sentence
                if claims:
                    claims[-1].sentence += claims[-1].separator + sentence
                    claims[-1].separator = separator
                    claims[-1].chunk_ids.extend(cid for cid in chunk_ids if cid not in claims[-1].chunk_ids)
                continue
            claims.append(
                Claim(
                    text=text,
                    sentence=sentence,
                    separator=separator,
                    chunk_ids=list(dict.fromkeys(chunk_ids)),
                )
            )
        return claims

    def _check(self, claim: Claim, items: Dict[str, ScoredChunk]) -> None:
        terms = content_terms(claim.text)
        numbers = extract_numbers(claim.text)
        candidates = claim.chunk_ids or list(items)
        best: Tuple[float, Optional[str]] = (0.0, None)
        for chunk_id in candidates:
            chunk_text = items[chunk_id].chunk.text
            if not numbers <= extract_numbers(chunk_text):
                continue
            score = len(terms & content_terms(chunk_text)) / len(terms)
            if score > best[0]:
                best = (score, chunk_id)
        claim.score, claim.support_chunk_id = best
        claim.supported = best[1] is not None and best[0] >= self.support_threshold

    def _conflicts(
        self,
        claims: List[Claim],
        items: Dict[str, ScoredChunk],
    ) -> List[Tuple[str, str, str, str]]:
        """Pairs (chunk_a, statement_a, chunk_b, statement_b) that state different numbers."""
        found: List[Tuple[str, str, str, str]] = []
        seen: Set[frozenset] = set()

        def record(cid_a: str, text_a: str, cid_b: str, text_b: str) -> None:
            key = frozenset((cid_a, cid_b))
            if key not in seen:
                seen.add(key)
                found.append((cid_a, text_a, cid_b, text_b))

        supported = [c for c in claims if c.supported and extract_numbers(c.text)]
        for claim in supported:
            doc_id = items[claim.support_chunk_id].chunk.doc_id
            context = _context_terms(claim.text)
            numbers = extract_numbers(claim.text)
            # Other supported claims from a different document
            for other in supported:
                if other is claim or items[other.support_chunk_id].chunk.doc_id == doc_id:
                    continue
                if (
                    _jaccard(context, _context_terms(other.text)) >= self.conflict_threshold
                    and numbers.isdisjoint(extract_numbers(other.text))
                ):
                    record(claim.support_chunk_id, claim.text, other.support_chunk_id, other.text)
            # Retrieved sentences the answer did not mention
            for chunk_id, item in items.items():
                if item.chunk.doc_id == doc_id:
                    continue
                for sentence in split_sentences(item.chunk.text):
                    other_numbers = extract_numbers(sentence)
                    if (
                        other_numbers
                        and numbers.isdisjoint(other_numbers)
                        and _jaccard(context, _context_terms(sentence)) >= self.conflict_threshold
                    ):
                        record(claim.support_chunk_id, claim.text, chunk_id, sentence)
                        break
        return found

    def verify(
        self,
        answer_text: str,
        retrieval: RetrievalResult,
        allowed_chunk_ids: Optional[Iterable[str]] = None,
    ) -> VerificationResult:
        """
        Verify an answer against the chunks it was generated from.

        Args:
            answer_text: Raw generator output
            retrieval: The retrieval the prompt was built from
            allowed_chunk_ids: Chunks actually placed in the prompt (all by default)

        Returns:
            VerificationResult with the final answer, citations and confidence
        """
        if retrieval.is_empty or not answer_text or not answer_text.strip():
            return self.unsupported(retrieval)

        allowed = set(allowed_chunk_ids) if allowed_chunk_ids is not None else set(retrieval.chunk_ids)
        items = {item.chunk_id: item for item in retrieval if item.chunk_id in allowed}
        if not items:
            return self.unsupported(retrieval)

        all_labels = build_labels(retrieval.items)
        labels = {cid: label for cid, label in all_labels.items() if cid in items}
        known = {label: cid for cid, label in labels.items()}

        answer = self._strip_unknown_labels(answer_text, known)
        if not answer or _is_dont_know(answer):
            logger.info("Generator declined to answer: %r", retrieval.query)
            return self.unsupported(retrieval)

        claims = self._split_claims(answer, known)
        if not claims:
            return self.unsupported(retrieval)
        for claim in claims:
            self._check(claim, items)

        supported_count = sum(1 for c in claims if c.supported)
        fraction = supported_count / len(claims)
        if supported_count == 0 or fraction < self.min_supported_fraction:
            logger.info(
                "Answer unsupported (%.2f of %d claims supported) for %r",
                fraction,
                len(claims),
                retrieval.query,
            )
            return self.unsupported(retrieval, claims, fraction)

        kept = [c for c in claims if c.supported or not self.suppress_unsupported]
        if len(kept) < len(claims):
            logger.info("Suppressed %d unsupported sentence(s)", len(claims) - len(kept))

        cited: List[str] = []
        for claim in kept:
            for chunk_id in claim.chunk_ids or ([claim.support_chunk_id] if claim.supported else []):
                if chunk_id not in cited:
                    cited.append(chunk_id)

        parts = []
        for claim in kept:
            sentence = claim.sentence.strip()
            if not claim.chunk_ids and claim.supported:
                sentence = f"{sentence.rstrip('.!?')} [{labels[claim.support_chunk_id]}]."
            parts.append(sentence)
        final_answer = " ".join(parts)

        discrepancies = []
        for cid_a, text_a, cid_b, text_b in self._conflicts(kept, items):
            discrepancies.append(
                f'[{labels[cid_a]}] states "{text_a.rstrip(".")}" while '
                f'[{labels[cid_b]}] states "{normalize_whitespace(text_b).rstrip(".")}"'
            )
            for chunk_id in (cid_a, cid_b):
                if chunk_id not in cited:
                    cited.append(chunk_id)
        if discrepancies:
            logger.info("Sources disagree for %r: %d conflict(s)", retrieval.query, len(discrepancies))
            final_answer += "\n\nNote: the sources disagree. " + "; ".join(discrepancies) + "."

        citations = [
            Citation(
                chunk_id=chunk_id,
                doc_id=items[chunk_id].chunk.doc_id,
                title=items[chunk_id].document.title,
                source=items[chunk_id].document.source,
                offset=items[chunk_id].chunk.start,
                ordinal=items[chunk_id].chunk.ordinal,
                score=items[chunk_id].score,
            )
            for chunk_id in cited
        ]
        top_relevance = max(item.relevance for item in items.values())
        confidence = max(0.0, min(1.0, top_relevance * fraction))

        return VerificationResult(
            final_answer=final_answer,
            citations=citations,
            confidence=confidence,
            supported=True,
            supported_fraction=fraction,
            faithfulness=sum(1 for c in kept if c.supported) / len(kept),
            claims=claims,
            discrepancies=discrepancies,
        )
