"""
mnemos.__main__ -- CLI entry point.

Usage:
    mnemos init [--data-dir DIR]
    mnemos stats [--data-dir DIR]
    mnemos search QUERY [--limit N] [--data-dir DIR]
    mnemos remember TEXT [--type TYPE] [--tags a,b] [--data-dir DIR]
    mnemos forget ID [--data-dir DIR]
    mnemos feedback ID positive|negative [--data-dir DIR]
    mnemos sweep [--data-dir DIR]
    mnemos reindex [--data-dir DIR]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

DEFAULT_DATA_DIR = "./mnemos_data"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mnemos",
        description="mnemos -- semantic memory engine for agent conversations",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--embedding-backend",
        default=None,
        choices=["sentence-transformers", "ollama", "none"],
        help="Override the configured embedding backend",
    )

    sub = parser.add_subparsers(dest="command")

    # -- init --------------------------------------------------------------
    init_p = sub.add_parser("init", help="Initialize a new mnemos data directory")
    init_p.add_argument(
        "--data-dir",
        default=DEFAULT_DATA_DIR,
        help=f"Data directory to create (default: {DEFAULT_DATA_DIR})",
    )

    # -- stats -------------------------------------------------------------
    stats_p = sub.add_parser("stats", help="Show memory statistics")
    stats_p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Data directory")

    # -- search ------------------------------------------------------------
    search_p = sub.add_parser("search", help="Retrieve memories for a query")
    search_p.add_argument("query", help="Search query")
    search_p.add_argument("--limit", type=int, default=5, help="Max results")
    search_p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Data directory")

    # -- remember ----------------------------------------------------------
    remember_p = sub.add_parser("remember", help="Store an explicit memory")
    remember_p.add_argument("text", help="What to remember")
    remember_p.add_argument(
        "--type",
        default="semantic",
        choices=["episodic", "semantic", "procedural"],
        help="Memory type (default: semantic)",
    )
    remember_p.add_argument("--tags", default="", help="Comma-separated tags")
    remember_p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Data directory")

    # -- forget ------------------------------------------------------------
    forget_p = sub.add_parser("forget", help="Delete a memory and its edges")
    forget_p.add_argument("id", help="Memory id")
    forget_p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Data directory")

    # -- feedback ----------------------------------------------------------
    feedback_p = sub.add_parser("feedback", help="Reinforce or penalize a memory")
    feedback_p.add_argument("id", help="Memory id")
    feedback_p.add_argument("outcome", choices=["positive", "negative"])
    feedback_p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Data directory")

    # -- sweep -------------------------------------------------------------
    sweep_p = sub.add_parser("sweep", help="Run one decay/prune/abstraction sweep")
    sweep_p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Data directory")

    # -- reindex -----------------------------------------------------------
    reindex_p = sub.add_parser("reindex", help="Rebuild the vector index")
    reindex_p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Data directory")

    args = parser.parse_args(argv)

    # -- Logging -----------------------------------------------------------
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    if args.command is None:
        parser.print_help()
        return 0

    # -- Dispatch ----------------------------------------------------------
    if args.command == "init":
        _cmd_init(args)
        return 0

    from mnemos.core.errors import MnemosError

    handlers = {
        "stats": _cmd_stats,
        "search": _cmd_search,
        "remember": _cmd_remember,
        "forget": _cmd_forget,
        "feedback": _cmd_feedback,
        "sweep": _cmd_sweep,
        "reindex": _cmd_reindex,
    }
    try:
        result = asyncio.run(_with_engine(args, handlers[args.command]))
    except MnemosError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


async def _with_engine(args: argparse.Namespace, handler) -> Any:
    from mnemos.core.config import Config
    from mnemos.system import MemoryEngine

    overrides: Dict[str, Any] = {}
    if args.embedding_backend:
        overrides["embedding_backend"] = args.embedding_backend
    config = Config.from_data_dir(args.data_dir, **overrides)

    async with MemoryEngine(config=config) as engine:
        return await handler(engine, args)


# ---------------------------------------------------------------------------
# Command implementations
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> None:
    """Create a data directory with a commented default config."""
    from mnemos.core.config import Config

    data_dir = Path(args.data_dir).resolve()
    config = Config.from_data_dir(data_dir)
    config.ensure_directories()

    config_path = config.config_path
    if not config_path.exists():
        config_path.write_text(
            "# mnemos configuration\n" + config.to_yaml(),
            encoding="utf-8",
        )

    print(f"Initialized mnemos at: {data_dir}")
    print(f"  memories:    {config.memories_dir}")
    print(f"  mnemos.yaml: {config_path}")


async def _cmd_stats(engine, args: argparse.Namespace) -> Dict[str, Any]:
    return await engine.stats()


async def _cmd_search(engine, args: argparse.Namespace) -> Any:
    hits = await engine.retrieve(args.query, k=args.limit)
    return [hit.to_dict() for hit in hits]


async def _cmd_remember(engine, args: argparse.Namespace) -> Dict[str, Any]:
    tags = [t.strip() for t in args.tags.split(",") if t.strip()]
    memory = await engine.remember(args.text, type=args.type, tags=tags)
    await engine.flush()
    return {"id": memory.id, "title": memory.title, "confidence": memory.confidence.current}


async def _cmd_forget(engine, args: argparse.Namespace) -> Dict[str, Any]:
    await engine.forget(args.id)
    return {"forgotten": args.id}


async def _cmd_feedback(engine, args: argparse.Namespace) -> Dict[str, Any]:
    result = await engine.feedback(args.id, args.outcome)
    return result.to_dict()


async def _cmd_sweep(engine, args: argparse.Namespace) -> Dict[str, Any]:
    report = await engine.sweep()
    return report.to_dict()


async def _cmd_reindex(engine, args: argparse.Namespace) -> Dict[str, Any]:
    return {"vectors": await engine.reindex()}


if __name__ == "__main__":
    sys.exit(main())
