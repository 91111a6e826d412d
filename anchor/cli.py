"""CLI for the Anchor engine."""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from . import __version__

# Set USER_AGENT to suppress langchain warning
if not os.environ.get("USER_AGENT"):
    os.environ["USER_AGENT"] = f"anchor-rag/{__version__}"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="[%(levelname)s] %(name)s: %(message)s")


def _config(args: argparse.Namespace):
    from .config import AnchorConfig

    config = AnchorConfig.from_env()
    if args.db:
        config.db_path = args.db
    if args.embedding_provider:
        config.embedding_provider = args.embedding_provider
    if args.generator:
        config.generator_provider = args.generator
    if args.offline:
        config.embedding_provider = "hashing"
        config.generator_provider = "extractive"
    if config.db_path is None:
        config.db_path = "anchor.db"
    return config


def _engine(args: argparse.Namespace):
    from .anchor import Anchor

    return Anchor(_config(args))


def _print_record(record, as_json: bool) -> None:
    if as_json:
        print(json.dumps(record.to_response(), indent=2, ensure_ascii=False))
        return
    print(record.answer)
    if record.citations:
        print("\nSources:")
        for i, c in enumerate(record.citations, 1):
            print(f"  {i}. {c.title} (chunk {c.ordinal}, offset {c.offset}) [{c.score:.3f}] {c.source}")
    print(f"\nConfidence: {record.confidence:.2f}")


def ingest(args: argparse.Namespace) -> None:
    """Load files, directories or URLs and ingest them."""
    from .loaders import load_sources

    docs = load_sources(args.paths)
    if not docs:
        print("No documents found.", file=sys.stderr)
        sys.exit(1)
    with _engine(args) as engine:
        report = engine.ingest(docs)
    print(json.dumps(report.to_dict(), indent=2))


def ask(args: argparse.Namespace) -> None:
    """Answer a question from the indexed documents."""
    with _engine(args) as engine:
        record = engine.ask(args.query, k=args.k, mode=args.mode)
    _print_record(record, args.json)


def search(args: argparse.Namespace) -> None:
    """Show the top chunks for a query."""
    with _engine(args) as engine:
        result = engine.search(args.query, k=args.k, mode=args.mode)
    if not result.items:
        print("No results.")
    for item in result:
        print(f"{item.rank}. [{item.score:.3f}] {item.document.title}#{item.chunk.ordinal}: {item.chunk.text[:100]}...")


def stats(args: argparse.Namespace) -> None:
    """Show engine statistics."""
    with _engine(args) as engine:
        info = engine.get_stats()
    print(json.dumps(info, indent=2))


def evaluate_cmd(args: argparse.Namespace) -> None:
    """Score retrieval and faithfulness on a JSONL file of cases."""
    from .evaluation import evaluate, load_cases

    cases = load_cases(args.cases)
    with _engine(args) as engine:
        report = evaluate(engine, cases, k=args.k, mode=args.mode)
    summary = report.to_dict()
    if not args.per_case:
        summary.pop("cases")
    print(json.dumps(summary, indent=2, ensure_ascii=False))


def serve(args: argparse.Namespace) -> None:
    """Start the REST API server."""
    try:
        import uvicorn

        from .api import create_app
    except ImportError:
        print("Error: API dependencies not installed.", file=sys.stderr)
        print('  Run: pip install "anchor-rag[api]"', file=sys.stderr)
        sys.exit(1)

    config = _config(args)
    app = create_app(config)

    print(f"Starting Anchor API server on http://{args.host}:{args.port}")
    print(f"  Database: {config.db_path}")
    print(f"  Docs: http://{args.host}:{args.port}/docs\n")

    uvicorn.run(app, host=args.host, port=args.port)


DEMO_DOCS = [
    {
        "title": "Acme History",
        "source": "demo://acme-history",
        "text": (
            "Acme Corporation was founded in 1990 in Springfield. "
            "It started as a maker of anvils and rocket skates.\n\n"
            "Today Acme employs 2,500 people across four continents."
        ),
    },
    {
        "title": "Acme Press Kit",
        "source": "demo://acme-press-kit",
        "text": (
            "Acme Corporation was founded in 1995 in Springfield. "
            "The press kit lists its headquarters on Main Street."
        ),
    },
    {
        "title": "Springfield Weather",
        "source": "demo://weather",
        "text": "Springfield summers are humid, with July highs near 31 degrees.",
    },
]


def demo(args: argparse.Namespace) -> None:
    """Run an offline demo with sample documents."""
    from .anchor import Anchor
    from .config import AnchorConfig
    from .models import Document

    print("=== Anchor Demo (offline: hashing embeddings, extractive answers) ===\n")

    engine = Anchor(
        AnchorConfig(embedding_provider="hashing", generator_provider="extractive", db_path=args.db)
    )
    report = engine.ingest([Document(**d) for d in DEMO_DOCS])
    print(f"Ingestion report: {json.dumps(report.to_dict())}\n")

    for query in ("When was Acme founded?", "What is the capital of Mongolia?"):
        print(f"Q: {query}")
        _print_record(engine.ask(query), as_json=False)
        print()

    print("=== Stats ===")
    print(json.dumps(engine.get_stats(), indent=2))
    engine.close()
    print("\nDemo complete!")


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="anchor",
        description="Anchor - grounded question answering with citations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  anchor demo                         Run offline demo with sample documents
  anchor ingest ./docs                Ingest a directory of .txt/.md/.pdf files
  anchor ask "When was Acme founded?"
  anchor serve                        Start REST API server

Environment variables:
  OPENAI_API_KEY    Required for OpenAI embeddings and generation
  HF_TOKEN          Optional for HuggingFace models
  JINA_API_KEY      Required for Jina AI embeddings
  ANCHOR_*          Any config field, e.g. ANCHOR_CHUNK_SIZE=800
""",
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--db", type=str, help="Database path (default: anchor.db)")
    parser.add_argument(
        "--embedding-provider",
        type=str,
        choices=["openai", "huggingface", "jina", "hashing"],
        help="Embedding backend",
    )
    parser.add_argument(
        "--generator", type=str, choices=["openai", "extractive"], help="Answer generator backend"
    )
    parser.add_argument(
        "--offline", action="store_true", help="Use hashing embeddings and extractive answers"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest files, directories or URLs")
    ingest_parser.add_argument("paths", nargs="+", help="Paths or URLs")
    ingest_parser.set_defaults(func=ingest)

    for name, func, help_text in (
        ("ask", ask, "Answer a question with citations"),
        ("search", search, "Search for relevant chunks"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("query", type=str)
        sub.add_argument("-k", type=int, default=None, help="Number of chunks to retrieve")
        sub.add_argument("--mode", choices=["semantic", "lexical", "hybrid"], default=None)
        if name == "ask":
            sub.add_argument("--json", action="store_true", help="Print the JSON response")
        sub.set_defaults(func=func)

    stats_parser = subparsers.add_parser("stats", help="Show engine statistics")
    stats_parser.set_defaults(func=stats)

    eval_parser = subparsers.add_parser("eval", help="Evaluate on a JSONL file of cases")
    eval_parser.add_argument("cases", type=str, help="JSONL with query, expected_sources, reference_answer")
    eval_parser.add_argument("-k", type=int, default=5)
    eval_parser.add_argument("--mode", choices=["semantic", "lexical", "hybrid"], default=None)
    eval_parser.add_argument("--per-case", action="store_true", help="Include per-case results")
    eval_parser.set_defaults(func=evaluate_cmd)

    serve_parser = subparsers.add_parser("serve", help="Start REST API server")
    serve_parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="Host to bind (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind (default: 8000)"
    )
    serve_parser.set_defaults(func=serve)

    demo_parser = subparsers.add_parser("demo", help="Run offline demo with sample documents")
    demo_parser.set_defaults(func=demo)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    _setup_logging(args.verbose)

    from .errors import AnchorError

    try:
        args.func(args)
    except AnchorError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
