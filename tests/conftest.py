"""Shared fixtures: an offline engine and a small document collection."""

from __future__ import annotations

from typing import List

import pytest

from anchor import Anchor, AnchorConfig, Document
from anchor.embeddings import HashingEmbedding
from anchor.retry import RetryPolicy

ACME_HISTORY = Document(
    text=(
        "Acme Corporation was founded in 1990 in Springfield. "
        "The company first sold anvils and rocket skates to desert customers."
    ),
    title="Acme History",
    source="docs/acme-history.md",
)

GLOBEX_PRODUCTS = Document(
    text=(
        "Globex sells industrial widgets and hydraulic presses. "
        "Its catalog lists over 300 products."
    ),
    title="Globex Products",
    source="docs/globex-products.md",
)

SPRINGFIELD_WEATHER = Document(
    text="Springfield summers are hot and humid. Winter storms arrive in January.",
    title="Springfield Weather",
    source="docs/springfield-weather.md",
)

ACME_ALMANAC = Document(
    text="Acme Corporation was founded in 1995 in Springfield.",
    title="Acme Almanac",
    source="docs/acme-almanac.md",
)


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_initial=0.0, backoff_max=0.0, timeout=5.0)


@pytest.fixture
def offline_config() -> AnchorConfig:
    return AnchorConfig(
        embedding_provider="hashing",
        generator_provider="extractive",
        chunk_size=400,
        chunk_overlap=50,
        backoff_initial=0.0,
        backoff_max=0.0,
    )


@pytest.fixture
def embedder(fast_policy: RetryPolicy) -> HashingEmbedding:
    return HashingEmbedding(dimension=384, use_cache=False, retry_policy=fast_policy)


@pytest.fixture
def corpus() -> List[Document]:
    return [ACME_HISTORY, GLOBEX_PRODUCTS, SPRINGFIELD_WEATHER]


@pytest.fixture
def engine(offline_config: AnchorConfig, embedder: HashingEmbedding, corpus: List[Document]) -> Anchor:
    anchor = Anchor(offline_config, embedder=embedder)
    anchor.ingest(corpus)
    yield anchor
    anchor.close()
