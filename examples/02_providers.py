#!/usr/bin/env python3
"""
Example 2: Embedding providers, generators and rerankers

This example demonstrates:
- Local embeddings with sentence-transformers (free, no API key)
- Jina AI and OpenAI embeddings when their keys are set
- OpenAI answer generation with the LLM reranker
- Handling service failures surfaced as AnchorError

Requirements:
    pip install "anchor-rag[huggingface]"

    # Optional API keys:
    export OPENAI_API_KEY=sk-...      # For OpenAI
    export JINA_API_KEY=jina_...      # For Jina AI
"""

import os

from anchor import (
    Anchor,
    AnchorConfig,
    AnchorError,
    Document,
    HuggingFaceEmbedding,
    create_embedding_provider,
)

DOCS = [
    Document(
        text=(
            "HNSW builds a layered proximity graph. Search starts at the top layer "
            "and greedily descends to the closest neighbours."
        ),
        title="HNSW Overview",
        source="kb/hnsw.md",
    ),
    Document(
        text="BM25 ranks documents by term frequency with length normalisation.",
        title="BM25 Notes",
        source="kb/bm25.md",
    ),
]


def run(engine: Anchor, query: str) -> None:
    embedder = HuggingFaceEmbedding(model="all-MiniLM-L6-v2")
    print(f"   Model: {embedder.model}, dimension: {embedder.dimension}")
    print(f"   {record.answer}")
    for c in record.citations:
        print(f"     - {c.title}#{c.ordinal} [{c.score:.3f}]")


def example_huggingface():
    """Local sentence-transformers embeddings with the extractive generator."""
    print("\n" + "=" * 60)
    print("🤗 HuggingFace Embeddings (Local, Free)")
    print("=" * 60)

    # Known models report their dimension without loading the weights
    embedder = HuggingFaceEmbedding(model="all-MiniLM-L6-v2")
    print(f"   Model: {embedder.model}, dimension: {embedder.dimension}")

    config = AnchorConfig(embedding_provider="huggingface", generator_provider="extractive")
    with Anchor(config, embedder=embedder) as engine:
        run(engine, "How does HNSW search work?")


def example_jina():
    """Jina AI embeddings."""
    print("\n" + "=" * 60)
    print("🧭 Jina AI Embeddings")
    print("=" * 60)

    if not os.environ.get("JINA_API_KEY"):
        print("   Skipped: set JINA_API_KEY")
        return

    embedder = create_embedding_provider("jina", task="retrieval.passage")
    config = AnchorConfig(embedding_provider="jina", generator_provider="extractive")
    with Anchor(config, embedder=embedder) as engine:
        run(engine, "How does BM25 rank documents?")


def example_openai():
    """OpenAI embeddings, generation and LLM reranking."""
    print("\n" + "=" * 60)
    print("🤖 OpenAI Embeddings + Generation + LLM Reranker")
    print("=" * 60)

    if not os.environ.get("OPENAI_API_KEY"):
        print("   Skipped: set OPENAI_API_KEY")
        return

    config = AnchorConfig(reranker="llm", timeout=20.0, max_attempts=3)
    with Anchor(config) as engine:
        run(engine, "How does HNSW search work?")
        run(engine, "Who won the 1998 World Cup?")


def main():
    example_huggingface()
    example_jina()
    example_openai()
    print("\n✅ Example complete!")


if __name__ == "__main__":
    main()
