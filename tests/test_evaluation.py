"""Tests for the evaluation harness."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from anchor import Anchor, AnchorConfig
from anchor.embeddings import HashingEmbedding
from anchor.errors import ServiceUnavailable, ValidationError
from anchor.evaluation import EvalCase, evaluate, load_cases, precision_recall_at_k

from conftest import ACME_ALMANAC, ACME_HISTORY, GLOBEX_PRODUCTS, SPRINGFIELD_WEATHER


class TestPrecisionRecall:
    """Tests for precision_recall_at_k."""

    def test_perfect_hit(self) -> None:
        """One expected source retrieved first."""
        assert precision_recall_at_k([["a.md", "A"]], ["a.md"], 1) == (1.0, 1.0)

    def test_precision_divides_by_k(self) -> None:
        """Unused slots count against precision."""
        precision, recall = precision_recall_at_k([["a.md"], ["b.md"]], ["a.md"], 4)
        assert precision == 0.25
        assert recall == 1.0

    def test_partial_recall(self) -> None:
        """Missing expected sources lower recall."""
        precision, recall = precision_recall_at_k([["a.md"]], ["a.md", "c.md"], 1)
        assert precision == 1.0
        assert recall == 0.5

    def test_matches_title(self) -> None:
        """Expected names can be titles as well as sources."""
        assert precision_recall_at_k([["a.md", "Acme History"]], ["Acme History"], 1) == (1.0, 1.0)

    def test_no_expected_sources(self) -> None:
        """Recall is 1.0 when nothing is expected."""
        assert precision_recall_at_k([], [], 3) == (0.0, 1.0)


class TestLoadCases:
    """Tests for load_cases."""

    def test_reads_jsonl(self, tmp_path: Path) -> None:
        """Each non-blank line is one case."""
        path = tmp_path / "cases.jsonl"
        path.write_text(
            json.dumps({"query": "When was Acme founded?", "expected_sources": ["Acme History"],
                        "reference_answer": "1990"})
            + "\n\n"
            + json.dumps({"query": "Capital of Mongolia?"})
            + "\n"
        )
        cases = load_cases(path)
        assert cases == [
            EvalCase("When was Acme founded?", ["Acme History"], "1990"),
            EvalCase("Capital of Mongolia?", [], None),
        ]

    def test_invalid_line(self, tmp_path: Path) -> None:
        """Bad JSON or a missing query raises ValidationError."""
        bad_json = tmp_path / "bad.jsonl"
        bad_json.write_text("{not json}\n")
        with pytest.raises(ValidationError):
            load_cases(bad_json)
        no_query = tmp_path / "no_query.jsonl"
        no_query.write_text('{"expected_sources": []}\n')
        with pytest.raises(ValidationError):
            load_cases(no_query)


class TestEvaluate:
    """Tests for evaluate against an offline engine."""

    def test_scores(self, engine: Anchor) -> None:
        """Supported and unsupported cases are both scored."""
        cases = [
            EvalCase("When was Acme founded?", ["Acme History"], "Founded in 1990"),
            EvalCase("What is the capital of Mongolia?", [], None),
        ]
        report = evaluate(engine, cases, k=1)
        first, second = report.cases
        assert first.precision == 1.0
        assert first.recall == 1.0
        assert first.faithfulness == 1.0
        assert first.answer_recall == 1.0
        assert first.retrieved == ["docs/acme-history.md"]
        assert second.answer.startswith("I don't know")
        assert second.faithfulness == 1.0
        assert second.recall == 1.0
        summary = report.to_dict()
        assert summary["precision@1"] == 0.5
        assert summary["recall@1"] == 1.0
        assert summary["errors"] == 0

    def test_conflict_answer_is_faithful(self, offline_config: AnchorConfig, embedder: HashingEmbedding) -> None:
        """The discrepancy note on a conflicting answer does not lower faithfulness."""
        anchor = Anchor(offline_config, embedder=embedder)
        anchor.ingest([ACME_HISTORY, ACME_ALMANAC, GLOBEX_PRODUCTS, SPRINGFIELD_WEATHER])
        try:
            report = evaluate(anchor, [EvalCase("When was Acme founded?", ["Acme History", "Acme Almanac"])], k=5)
        finally:
            anchor.close()
        result = report.cases[0]
        assert "disagree" in result.answer.lower()
        assert result.faithfulness == 1.0

    def test_errors_recorded(self) -> None:
        """Service failures are recorded per case, not raised."""
        engine = MagicMock()
        engine.search.side_effect = ServiceUnavailable("down", stage="embed", attempts=3)
        report = evaluate(engine, [EvalCase("q", ["a"])], k=3)
        assert report.errors == 1
        assert report.cases[0].error == "down"
        assert report.to_dict()["recall@3"] == 0.0
