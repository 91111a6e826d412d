"""Tests for the grounding verifier."""

from __future__ import annotations

import pytest

from anchor.models import UNSUPPORTED_ANSWER, Chunk, Document, RetrievalResult, ScoredChunk
from anchor.verifier import GroundingVerifier

HISTORY = Document(
    text="Acme Corporation was founded in 1990 in Springfield. It sold anvils and rocket skates.",
    title="Acme History",
)
ALMANAC = Document(text="Acme Corporation was founded in 1995 in Springfield.", title="Acme Almanac")
WEATHER = Document(text="Springfield summers are hot and humid.", title="Springfield Weather")


def _item(doc: Document, relevance: float) -> ScoredChunk:
    chunk = Chunk(
        chunk_id=Chunk.make_id(doc.doc_id, 0, len(doc.text), doc.text),
        doc_id=doc.doc_id,
        text=doc.text,
        start=0,
        end=len(doc.text),
        ordinal=0,
    )
    return ScoredChunk(chunk=chunk, document=doc, score=relevance, relevance=relevance)


def _retrieval(*items: ScoredChunk) -> RetrievalResult:
    return RetrievalResult(query="When was Acme founded?", mode="hybrid", index_version=1, items=list(items))


class TestVerify:
    """Tests for GroundingVerifier.verify."""

    def test_supported_answer(self) -> None:
        """A cited, grounded sentence passes with its citation."""
        history = _item(HISTORY, 0.8)
        result = GroundingVerifier().verify(
            "Acme Corporation was founded in 1990 in Springfield [Acme History#0].",
            _retrieval(history),
        )
        assert result.supported
        assert result.final_answer == "Acme Corporation was founded in 1990 in Springfield [Acme History#0]."
        assert [c.chunk_id for c in result.citations] == [history.chunk_id]
        assert result.supported_fraction == 1.0
        assert result.confidence == pytest.approx(0.8)

    def test_wrong_number_is_unsupported(self) -> None:
        """A number absent from the cited chunk fails the claim."""
        result = GroundingVerifier().verify(
            "Acme Corporation was founded in 1985 [Acme History#0].",
            _retrieval(_item(HISTORY, 0.8)),
        )
        assert not result.supported
        assert result.final_answer == UNSUPPORTED_ANSWER
        assert result.citations == []

    def test_unrelated_answer_is_unsupported(self) -> None:
        """An answer that shares nothing with the sources is rejected."""
        result = GroundingVerifier().verify(
            "The moon is made of green cheese.", _retrieval(_item(HISTORY, 0.8))
        )
        assert result.final_answer == UNSUPPORTED_ANSWER
        assert result.confidence == 0.0

    def test_confidence_floor_for_unsupported_with_sources(self) -> None:
        """An unsupported answer over non-empty retrieval gets the floor."""
        verifier = GroundingVerifier(confidence_floor=0.05)
        result = verifier.verify("The moon is made of cheese.", _retrieval(_item(HISTORY, 0.8)))
        assert result.confidence == 0.05

    def test_empty_retrieval(self) -> None:
        """No sources means the sentinel with zero confidence."""
        result = GroundingVerifier(confidence_floor=0.05).verify("Anything.", _retrieval())
        assert result.final_answer == UNSUPPORTED_ANSWER
        assert result.confidence == 0.0

    def test_dont_know_passthrough(self) -> None:
        """A generator abstention becomes the sentinel."""
        result = GroundingVerifier().verify(
            "I don't know based on these sources.", _retrieval(_item(HISTORY, 0.8))
        )
        assert result.final_answer == UNSUPPORTED_ANSWER
        assert not result.supported

    def test_unknown_labels_stripped(self) -> None:
        """Citations to chunks outside the retrieval are removed."""
        result = GroundingVerifier().verify(
            "Acme Corporation was founded in 1990 [Acme History#0] [Made Up#4].",
            _retrieval(_item(HISTORY, 0.8)),
        )
        assert result.supported
        assert "Made Up#4" not in result.final_answer
        assert len(result.citations) == 1

    def test_uncited_supported_sentence_gets_label(self) -> None:
        """A grounded sentence without a label is attributed to its support."""
        result = GroundingVerifier().verify(
            "Acme sold anvils and rocket skates.", _retrieval(_item(HISTORY, 0.6))
        )
        assert result.supported
        assert result.final_answer == "Acme sold anvils and rocket skates [Acme History#0]."

    def test_unsupported_sentence_suppressed(self) -> None:
        """Unsupported sentences are dropped when the majority is supported."""
        answer = (
            "Acme Corporation was founded in 1990 [Acme History#0]. "
            "It sold anvils and rocket skates [Acme History#0]. "
            "Its mascot is a purple giraffe."
        )
        result = GroundingVerifier().verify(answer, _retrieval(_item(HISTORY, 0.9)))
        assert result.supported
        assert "giraffe" not in result.final_answer
        assert result.supported_fraction == pytest.approx(2 / 3)
        assert result.confidence == pytest.approx(0.9 * 2 / 3)

    def test_unsupported_kept_when_not_suppressing(self) -> None:
        """With suppression off, unsupported sentences stay in the answer."""
        answer = (
            "Acme Corporation was founded in 1990 [Acme History#0]. "
            "It sold anvils and rocket skates [Acme History#0]. "
            "Its mascot is a purple giraffe."
        )
        result = GroundingVerifier(suppress_unsupported=False).verify(answer, _retrieval(_item(HISTORY, 0.9)))
        assert "giraffe" in result.final_answer

    def test_below_min_fraction(self) -> None:
        """Too few supported sentences turns the whole answer into the sentinel."""
        answer = (
            "Acme Corporation was founded in 1990 [Acme History#0]. "
            "Its mascot is a purple giraffe. "
            "The giraffe wears a hat."
        )
        result = GroundingVerifier().verify(answer, _retrieval(_item(HISTORY, 0.9)))
        assert result.final_answer == UNSUPPORTED_ANSWER
        assert result.supported_fraction == pytest.approx(1 / 3)

    def test_conflicting_sources(self) -> None:
        """Different numbers for the same fact are reported with both citations."""
        history = _item(HISTORY, 0.7)
        almanac = _item(ALMANAC, 0.7)
        answer = (
            "Acme Corporation was founded in 1990 in Springfield [Acme History#0]. "
            "Acme Corporation was founded in 1995 in Springfield [Acme Almanac#0]."
        )
        result = GroundingVerifier().verify(answer, _retrieval(history, almanac))
        assert result.supported
        assert "the sources disagree" in result.final_answer
        assert "1990" in result.final_answer and "1995" in result.final_answer
        assert {c.chunk_id for c in result.citations} == {history.chunk_id, almanac.chunk_id}
        assert len(result.discrepancies) == 1
        assert result.faithfulness == 1.0

    def test_conflict_with_unmentioned_source(self) -> None:
        """A retrieved chunk contradicting the answer is surfaced and cited."""
        history = _item(HISTORY, 0.7)
        almanac = _item(ALMANAC, 0.6)
        result = GroundingVerifier().verify(
            "Acme Corporation was founded in 1990 in Springfield [Acme History#0].",
            _retrieval(history, almanac),
        )
        assert "the sources disagree" in result.final_answer
        assert [c.chunk_id for c in result.citations] == [history.chunk_id, almanac.chunk_id]

    def test_no_conflict_for_unrelated_numbers(self) -> None:
        """Numbers about different subjects are not a conflict."""
        weather = Document(text="Springfield had 31 degrees in July.", title="Weather")
        result = GroundingVerifier().verify(
            "Acme Corporation was founded in 1990 in Springfield [Acme History#0].",
            _retrieval(_item(HISTORY, 0.7), _item(weather, 0.3)),
        )
        assert result.discrepancies == []

    def test_allowed_chunk_ids_limit_support(self) -> None:
        """Chunks left out of the prompt cannot support a claim."""
        history = _item(HISTORY, 0.8)
        weather = _item(WEATHER, 0.5)
        result = GroundingVerifier().verify(
            "Acme Corporation was founded in 1990 [Acme History#0].",
            _retrieval(history, weather),
            allowed_chunk_ids=[weather.chunk_id],
        )
        assert result.final_answer == UNSUPPORTED_ANSWER
