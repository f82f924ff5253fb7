"""CLI for the Mnemo engine."""

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import MnemoConfig
from .errors import MnemoError


logger = logging.getLogger("mnemo")


PROVIDER_OPTIONS = (
    "embedding_provider",
    "embedding_model",
    "embedding_base_url",
    "generation_provider",
    "generation_model",
    "generation_base_url",
)


def _overrides(args: argparse.Namespace) -> dict:
    return {name: getattr(args, name) for name in PROVIDER_OPTIONS if getattr(args, name, None)}


def _engine(args: argparse.Namespace):
    from .engine import create_mnemo

    return create_mnemo(db_path=args.db, snapshot_path=args.snapshot, **_overrides(args))


def index(args: argparse.Namespace) -> None:
    """Index markdown files and directories."""
    from .loaders import load_markdown_units

    mnemo = _engine(args)
    try:
        units = load_markdown_units(args.paths)
        for stats in mnemo.index(units, mode=args.mode, batch_size=args.batch_size):
            print(
                f"added={stats.num_added} skipped={stats.num_skipped} deleted={stats.num_deleted}",
                flush=True,
            )
    finally:
        mnemo.close()


def search(args: argparse.Namespace) -> None:
    """Print the most similar units for a query."""
    mnemo = _engine(args)
    try:
        for i, result in enumerate(mnemo.search(args.query, k=args.k), 1):
            unit = result.unit
            print(f"{i}. [{result.score:.3f}] {unit.source_path} #{unit.sequence_order}: {unit.text[:100]}")
    finally:
        mnemo.close()


def ask(args: argparse.Namespace) -> None:
    """Answer a query, printing progress and the streamed answer."""
    mnemo = _engine(args)
    mode = "conversation" if args.no_retrieval else "rag"
    answer = ""
    try:
        for event in mnemo.run(args.query, mode=mode):
            if event.status == "generating":
                answer = str(event.content)
            else:
                print(f"[{event.status}] {event.content if event.content is not None else ''}",
                      file=sys.stderr)
        print(answer)
    except KeyboardInterrupt:
        print(answer)
        print("[stopped]", file=sys.stderr)
    finally:
        mnemo.close()


def snapshot(args: argparse.Namespace) -> None:
    """Export or import the corpus snapshot."""
    mnemo = _engine(args)
    try:
        if args.action == "export":
            Path(args.file).write_bytes(mnemo.get_data())
            print(f"Exported snapshot to {args.file}")
        else:
            mnemo.load(Path(args.file).read_bytes())
            print(f"Imported snapshot from {args.file}")
    finally:
        mnemo.close()


def reconcile(args: argparse.Namespace) -> None:
    """Repair entries present in only one store."""
    mnemo = _engine(args)
    try:
        print(json.dumps(mnemo.reconcile(), indent=2))
    finally:
        mnemo.close()


def stats(args: argparse.Namespace) -> None:
    """Show engine statistics."""
    mnemo = _engine(args)
    try:
        print(json.dumps(mnemo.get_stats(), indent=2))
    finally:
        mnemo.close()


def serve(args: argparse.Namespace) -> None:
    """Start the REST API server."""
    import uvicorn

    from .api import create_app

    app = create_app(db_path=args.db, snapshot_path=args.snapshot, **_overrides(args))
    print(f"Starting Mnemo API server on http://{args.host}:{args.port}")
    print(f"  Database: {args.db}")
    print(f"  Snapshot: {args.snapshot}")
    print(f"  Docs: http://{args.host}:{args.port}/docs\n")
    uvicorn.run(app, host=args.host, port=args.port)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="mnemo",
        description="Mnemo - incremental knowledge index with streamed RAG answers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mnemo index ./notes --mode by_file     Index a notes directory
  mnemo search "hnsw parameters"         Similarity search
  mnemo ask "What did I decide on X?"    Streamed answer
  mnemo snapshot export corpus.bin       Export the corpus
  mnemo serve                            Start REST API server

Environment variables:
  OPENAI_API_KEY    Required for OpenAI embeddings/generation
  JINA_API_KEY      Required for Jina AI embeddings
  MNEMO_<FIELD>     Any MnemoConfig field, e.g. MNEMO_SIMILARITY_THRESHOLD
""",
    )
    parser.add_argument("--version", action="version", version="%(prog)s 1.0.0")
    parser.add_argument("--db", type=str, default="mnemo.db", help="Ledger database path")
    parser.add_argument("--snapshot", type=str, default="mnemo.snapshot", help="Snapshot path")
    parser.add_argument("--embedding-provider", type=str, help="openai, huggingface or jina")
    parser.add_argument("--embedding-model", type=str, help="Embedding model name")
    parser.add_argument("--embedding-base-url", type=str, help="OpenAI-compatible embedding server URL")
    parser.add_argument("--generation-provider", type=str, help="openai or custom_openai")
    parser.add_argument("--generation-model", type=str, help="Generation model name")
    parser.add_argument("--generation-base-url", type=str, help="OpenAI-compatible server URL (Ollama, vLLM)")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (default: MNEMO_LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    index_parser = subparsers.add_parser("index", help="Index markdown files/directories")
    index_parser.add_argument("paths", nargs="+")
    index_parser.add_argument("--mode", choices=["full", "by_file"], default=None)
    index_parser.add_argument("--batch-size", type=int, default=None)
    index_parser.set_defaults(func=index)

    search_parser = subparsers.add_parser("search", help="Similarity search")
    search_parser.add_argument("query")
    search_parser.add_argument("-k", type=int, default=None)
    search_parser.set_defaults(func=search)

    ask_parser = subparsers.add_parser("ask", help="Answer a query from the knowledge index")
    ask_parser.add_argument("query")
    ask_parser.add_argument("--no-retrieval", action="store_true",
                            help="Answer from the chat history only, skipping the knowledge index")
    ask_parser.set_defaults(func=ask)

    snapshot_parser = subparsers.add_parser("snapshot", help="Export/import the corpus")
    snapshot_parser.add_argument("action", choices=["export", "import"])
    snapshot_parser.add_argument("file")
    snapshot_parser.set_defaults(func=snapshot)

    reconcile_parser = subparsers.add_parser("reconcile", help="Repair store/ledger drift")
    reconcile_parser.set_defaults(func=reconcile)

    stats_parser = subparsers.add_parser("stats", help="Show engine statistics")
    stats_parser.set_defaults(func=stats)

    serve_parser = subparsers.add_parser("serve", help="Start REST API server")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=serve)

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, (args.log_level or MnemoConfig.from_env().log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        args.func(args)
    except MnemoError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
