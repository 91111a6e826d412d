#!/usr/bin/env python3
"""
Example 1: Grounded answers with Anchor (offline)

This example demonstrates:
- Ingesting documents and reading the ingestion report
- Semantic, lexical and hybrid retrieval
- Cited answers, the "I don't know" sentinel and conflicting sources
- Answer caching and invalidation on re-ingest

Runs without API keys: hashing embeddings and the extractive generator.

Requirements:
    pip install anchor-rag
"""

import json
from pathlib import Path

from anchor import Anchor, AnchorConfig, Document


def show(record):
    print(f"   Answer: {record.answer}")
    for c in record.citations:
        print(f"     - [{c.title}#{c.ordinal}] {c.source} (offset {c.offset})")
    print(f"   Confidence: {record.confidence:.2f}")


def main():
    print("=" * 60)
    print("Example 1: Grounded answers")
    print("=" * 60)

    db_path = "example_grounded.db"
    config = AnchorConfig(
        db_path=db_path,
        embedding_provider="hashing",
        generator_provider="extractive",
        chunk_size=400,
        chunk_overlap=50,
    )
    engine = Anchor(config)

    print("\n📥 Ingesting documents...")
    report = engine.ingest(
        [
            Document(
                text=(
                    "Acme Corporation was founded in 1990 in Springfield. "
                    "The company first sold anvils and rocket skates."
                ),
                title="Acme History",
                source="kb/acme-history.md",
            ),
            Document(
                text="Globex sells industrial widgets and hydraulic presses.",
                title="Globex Products",
                source="kb/globex.md",
            ),
            Document(text="   ", source="kb/empty.md"),
        ]
    )
    print(f"   {json.dumps(report.to_dict())}")

    for mode in ("semantic", "lexical", "hybrid"):
        print(f"\n🔍 {mode.title()} search: 'hydraulic presses'")
        for item in engine.search("hydraulic presses", k=2, mode=mode):
            print(f"   {item.rank}. [{item.score:.3f}] {item.document.title}#{item.chunk.ordinal}")

    print("\n💬 Supported question")
    show(engine.ask("When was Acme founded?"))

    print("\n💬 Unsupported question")
    show(engine.ask("What is the capital of Mongolia?"))

    print("\n📥 Adding a conflicting source...")
    engine.ingest(
        [
            Document(
                text="Acme Corporation was founded in 1995 in Springfield.",
                title="Acme Almanac",
                source="kb/almanac.md",
            )
        ]
    )
    print("\n💬 Same question, two sources disagree")
    show(engine.ask("When was Acme founded?"))

    print("\n📊 Engine Statistics:")
    print(json.dumps(engine.get_stats(), indent=2))

    engine.close()
    Path(db_path).unlink(missing_ok=True)
    print("\n✅ Example complete!")


if __name__ == "__main__":
    main()
