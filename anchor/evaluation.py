"""Offline evaluation: Precision@k, Recall@k and faithfulness over a set of questions."""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import AnchorError, ValidationError
from .text import content_terms

logger = logging.getLogger(__name__)


@dataclass
class EvalCase:
    query: str
    expected_sources: List[str] = field(default_factory=list)
    reference_answer: Optional[str] = None


@dataclass
class CaseResult:
    query: str
    retrieved: List[str]
    answer: str
    precision: float
    recall: float
    faithfulness: float
    answer_recall: Optional[float] = None
    error: Optional[str] = None


@dataclass
class EvalReport:
    k: int
    mode: Optional[str]
    cases: List[CaseResult] = field(default_factory=list)

    def _mean(self, name: str) -> float:
        values = [getattr(c, name) for c in self.cases if c.error is None and getattr(c, name) is not None]
        return sum(values) / len(values) if values else 0.0

    @property
    def precision(self) -> float:
        return self._mean("precision")

    @property
    def recall(self) -> float:
        return self._mean("recall")

    @property
    def faithfulness(self) -> float:
        return self._mean("faithfulness")

    @property
    def errors(self) -> int:
        return sum(1 for c in self.cases if c.error is not None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "k": self.k,
            "mode": self.mode,
            f"precision@{self.k}": self.precision,
            f"recall@{self.k}": self.recall,
            "faithfulness": self.faithfulness,
            "answer_recall": self._mean("answer_recall"),
            "errors": self.errors,
            "cases": [asdict(c) for c in self.cases],
        }


def load_cases(path: Union[str, Path]) -> List[EvalCase]:
    """Read cases from a JSONL file, one ``{"query", "expected_sources", "reference_answer"}`` per line."""
    cases = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"{path}:{line_no}: invalid JSON: {exc}") from exc
            if not data.get("query"):
                raise ValidationError(f"{path}:{line_no}: missing 'query'")
            cases.append(
                EvalCase(
                    query=data["query"],
                    expected_sources=list(data.get("expected_sources", [])),
                    reference_answer=data.get("reference_answer"),
                )
            )
    return cases


def _matches(expected: str, names: Iterable[str]) -> bool:
    return expected in set(names)


def precision_recall_at_k(retrieved: List[List[str]], expected: List[str], k: int):
    """
    Document-level Precision@k and Recall@k.

    Args:
        retrieved: Per retrieved document, the names it answers to (source, title, id)
        expected: Expected source names
        k: Cut-off

    Returns:
        (precision, recall); precision divides by k, recall by the number
        of expected sources (1.0 when none are expected)
    """
    top = retrieved[:k]
    relevant = sum(1 for names in top if any(_matches(e, names) for e in expected))
    found = sum(1 for e in expected if any(_matches(e, names) for names in top))
    precision = relevant / k if k else 0.0
    recall = found / len(expected) if expected else 1.0
    return precision, recall


def evaluate(engine, cases: Iterable[EvalCase], k: int = 5, mode: Optional[str] = None) -> EvalReport:
    """
    Run every case through search and ask and score the results.

    Faithfulness is the share of the final answer's sentences that the
    verifier found supported while answering; the discrepancy note it
    appends is not scored, and an abstention counts as fully faithful.
    """
    report = EvalReport(k=k, mode=mode)
    for case in cases:
        try:
            retrieval = engine.search(case.query, k=k, mode=mode)
            record = engine.ask(case.query, k=k, mode=mode)
        except AnchorError as exc:
            logger.warning("Evaluation case %r failed: %s", case.query, exc)
            report.cases.append(
                CaseResult(case.query, [], "", 0.0, 0.0, 0.0, error=str(exc))
            )
            continue

        # One entry per document, in rank order
        docs: Dict[str, List[str]] = {}
        for item in retrieval:
            doc = item.document
            docs.setdefault(doc.doc_id, [n for n in (doc.source, doc.title, doc.doc_id) if n])
        retrieved = list(docs.values())
        precision, recall = precision_recall_at_k(retrieved, case.expected_sources, k)

        answer_recall = None
        if case.reference_answer:
            reference = content_terms(case.reference_answer)
            if reference:
                answer_recall = len(reference & content_terms(record.answer)) / len(reference)

        report.cases.append(
            CaseResult(
                query=case.query,
                retrieved=[names[0] for names in retrieved],
                answer=record.answer,
                precision=precision,
                recall=recall,
                faithfulness=record.faithfulness,
                answer_recall=answer_recall,
            )
        )
    return report
