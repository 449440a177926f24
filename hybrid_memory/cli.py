"""
`hybrid-memory` command-line interface.

Commands
--------
hybrid-memory store "<content>" [-t code] [-f path] [-p project] [--title T]
hybrid-memory query "<query>" [-l 5] [--type auto|semantic|structural|hybrid]
hybrid-memory query "<query>" --type structural --entity file:src/a.js --depth 2
hybrid-memory add-file <file> [--title T]
hybrid-memory import-project <path> [-e .js,.py]
hybrid-memory stats
hybrid-memory export <output.json>
hybrid-memory import <input.json>
hybrid-memory interactive                 -- read queries until `exit`
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
import time
from typing import Optional

from tqdm import tqdm

from .config import Config
from .memory_system import HybridMemorySystem, create_memory_system

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 200
_EXIT_WORDS = {"exit", "quit"}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _json_default(obj):
    if dataclasses.is_dataclass(obj):
        return dataclasses.asdict(obj)
    return str(obj)


def _preview(text: str, limit: int = _PREVIEW_CHARS) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


def _print_relationships(relationships) -> None:
    if not relationships:
        return
    print("  Relationships:")
    for rel in relationships:
        src = rel.from_name or rel.from_id
        dst = rel.to_name or rel.to_id
        print(f"    - {rel.type}: {src} -> {dst}")


def _print_envelope(envelope: dict) -> None:
    """Pretty-print a query envelope."""
    kind = envelope["type"]
    results = envelope["results"]
    print(f"\nQuery type: {kind}")
    print(f"Query:      {envelope['query']}")
    print("-" * 60)

    if kind == "semantic":
        documents = results["documents"]
        if not documents:
            print("  (no matching memories)")
        for idx, doc in enumerate(documents):
            score = results["scores"][idx]
            print(f"\n[{idx + 1}] similarity {score * 100:.1f}%  ({results['ids'][idx]})")
            print(f"  {_preview(doc)}")
            metadata = results["metadatas"][idx]
            if metadata:
                print(f"  metadata: {json.dumps(metadata, ensure_ascii=False, default=str)}")

    elif kind == "structural":
        if not results:
            print("  (no matching entities)")
        for idx, item in enumerate(results):
            if isinstance(item, dict):
                entity = item["entity"]
                print(f"\n[{idx + 1}] {entity.type}: {entity.name}")
                print(f"  id: {entity.entity_id}")
                _print_relationships(item["relationships"])
            else:
                # Traversal results are bare relationships
                src = item.from_name or item.from_id
                dst = item.to_name or item.to_id
                print(f"[{idx + 1}] {item.type}: {src} -> {dst}")

    else:
        if not results:
            print("  (no matching memories)")
        for idx, item in enumerate(results):
            print(f"\n[{idx + 1}] {item['source']} | score {item['score'] * 100:.1f}%")
            print(f"  {_preview(str(item['content']))}")
            _print_relationships(item.get("relationships"))


def _run(args: argparse.Namespace, handler) -> None:
    """Open the memory system, run *handler*, and turn failures into exit status 1."""
    config: Config = args.config_obj

    async def _main():
        async with create_memory_system(config) as memory:
            await handler(memory, args)

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except Exception as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

async def _cmd_store(memory: HybridMemorySystem, args: argparse.Namespace) -> None:
    metadata = {
        "type": args.type,
        "file_path": args.file,
        "project": args.project,
        "title": args.title,
    }
    metadata = {k: v for k, v in metadata.items() if v is not None}
    memory_id = await memory.store(args.content, metadata)
    print(f"Stored memory: {memory_id}")


async def _cmd_query(memory: HybridMemorySystem, args: argparse.Namespace) -> None:
    t0 = time.perf_counter()
    envelope = await memory.query(
        args.query,
        intent=args.type,
        entity_id=args.entity,
        relationship_type=args.relationship,
        depth=args.depth,
        limit=args.limit,
    )
    elapsed_ms = (time.perf_counter() - t0) * 1000
    if args.json:
        print(json.dumps(envelope, indent=2, ensure_ascii=False, default=_json_default))
        return
    _print_envelope(envelope)
    print(f"\n  Query time: {elapsed_ms:.1f}ms")


async def _cmd_add_file(memory: HybridMemorySystem, args: argparse.Namespace) -> None:
    memory_id = await memory.add_file(args.file, title=args.title)
    print(f"Added file to memory: {memory_id}")


async def _cmd_import_project(memory: HybridMemorySystem, args: argparse.Namespace) -> None:
    project_path = os.path.abspath(args.path or args.config_obj.DEFAULT_PROJECT_PATH)
    print(f"Importing project: {project_path}")

    pbar = tqdm(total=None, unit="file", desc="Storing")

    def _progress(current: int, total: int, filename: str) -> None:
        if pbar.total != total:
            pbar.total = total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(filename), refresh=False)
        pbar.update(1)

    try:
        summary = await memory.import_project(
            project_path, extensions=args.extensions, progress_callback=_progress,
        )
    finally:
        pbar.close()

    print(
        f"\nImport complete:\n"
        f"  Project: {summary['project']}\n"
        f"  Files:   {summary['files']}\n"
        f"  Stored:  {summary['stored']}\n"
        f"  Failed:  {summary['failed']}"
    )


async def _cmd_stats(memory: HybridMemorySystem, args: argparse.Namespace) -> None:
    stats = await memory.get_stats()
    if args.json:
        print(json.dumps(stats, indent=2))
        return
    graph = stats["graph"]
    print("\nHybrid Memory Statistics")
    print("=" * 40)
    print(f"  {'Entities':<20} {graph['entity_count']}")
    print(f"  {'Relationships':<20} {graph['relationship_count']}")
    print(f"  {'Vector documents':<20} {stats['vector']['documents']}")
    if graph["by_entity_type"]:
        print("\n  Entity types:")
        for etype, count in graph["by_entity_type"].items():
            print(f"    {etype:<18} {count}")
    if graph["by_relationship_type"]:
        print("\n  Relationship types:")
        for rtype, count in graph["by_relationship_type"].items():
            print(f"    {rtype:<18} {count}")
    print()


async def _cmd_export(memory: HybridMemorySystem, args: argparse.Namespace) -> None:
    data = await memory.export_to(args.output)
    print(f"Exported to {args.output}")
    print(f"  Entities: {len(data['entities'])}, relationships: {len(data['relationships'])}")


async def _cmd_import(memory: HybridMemorySystem, args: argparse.Namespace) -> None:
    result = await memory.import_from(args.input)
    imported = result["imported"]
    print("Import complete")
    print(f"  Entities: {imported['entities']}, relationships: {imported['relationships']}")


async def _cmd_interactive(memory: HybridMemorySystem, args: argparse.Namespace) -> None:
    print("Interactive query mode (type `exit` to leave)\n")
    while True:
        try:
            line = await asyncio.to_thread(input, "query> ")
        except EOFError:
            print()
            break
        query = line.strip()
        if not query:
            continue
        if query.lower() in _EXIT_WORDS:
            print("Leaving interactive mode.")
            break
        try:
            envelope = await memory.query(query, limit=args.limit)
        except Exception as exc:
            logger.debug("Interactive query failed", exc_info=True)
            print(f"Query error: {exc}", file=sys.stderr)
            continue
        _print_envelope(envelope)
        print()


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build and return the `hybrid-memory` argument parser."""
    parser = argparse.ArgumentParser(
        prog="hybrid-memory",
        description="Hybrid memory: vector search combined with a code knowledge graph",
    )
    parser.add_argument("--config", default=None, help="Path to a .hybrid_memory.yaml file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # --- store ---
    store_p = subparsers.add_parser("store", help="Store a new memory")
    store_p.add_argument("content", help="Memory text")
    store_p.add_argument("-t", "--type", default="note", help="Memory type: code, doc or note (default: note)")
    store_p.add_argument("-f", "--file", default=None, help="Associated file path")
    store_p.add_argument("-p", "--project", default=None, help="Project name")
    store_p.add_argument("--title", default=None, help="Memory title")
    store_p.set_defaults(func=_cmd_store)

    # --- query ---
    query_p = subparsers.add_parser("query", help="Query memories")
    query_p.add_argument("query", help="Natural-language query")
    query_p.add_argument("-l", "--limit", type=int, default=5, help="Number of semantic results (default: 5)")
    query_p.add_argument(
        "--type", default="auto",
        choices=["auto", "semantic", "structural", "hybrid"],
        help="Force a query type (default: auto)",
    )
    query_p.add_argument("--entity", default=None, help="Entity id to traverse from (structural)")
    query_p.add_argument("--relationship", default=None, help="Relationship type to follow")
    query_p.add_argument("--depth", type=int, default=2, help="Traversal depth (default: 2)")
    query_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")
    query_p.set_defaults(func=_cmd_query)

    # --- add-file ---
    addfile_p = subparsers.add_parser("add-file", help="Store a file as a code memory")
    addfile_p.add_argument("file", help="File to add")
    addfile_p.add_argument("--title", default=None, help="Memory title (default: file name)")
    addfile_p.set_defaults(func=_cmd_add_file)

    # --- import-project ---
    project_p = subparsers.add_parser("import-project", help="Import a project's source files")
    project_p.add_argument(
        "path", nargs="?", default=None,
        help="Project directory (default: DEFAULT_PROJECT_PATH, else the current directory)",
    )
    project_p.add_argument(
        "-e", "--extensions", default=".js,.ts,.jsx,.tsx,.py",
        help="Comma-separated file extensions (default: .js,.ts,.jsx,.tsx,.py)",
    )
    project_p.set_defaults(func=_cmd_import_project)

    # --- stats ---
    stats_p = subparsers.add_parser("stats", help="Show memory statistics")
    stats_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")
    stats_p.set_defaults(func=_cmd_stats)

    # --- export ---
    export_p = subparsers.add_parser("export", help="Export the graph to a JSON file")
    export_p.add_argument("output", help="Output file")
    export_p.set_defaults(func=_cmd_export)

    # --- import ---
    import_p = subparsers.add_parser("import", help="Import a graph export file")
    import_p.add_argument("input", help="Export file to load")
    import_p.set_defaults(func=_cmd_import)

    # --- interactive ---
    inter_p = subparsers.add_parser("interactive", aliases=["i"], help="Interactive query loop")
    inter_p.add_argument("-l", "--limit", type=int, default=5, help="Number of semantic results (default: 5)")
    inter_p.set_defaults(func=_cmd_interactive)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for `hybrid-memory`.

    Parameters
    ----------
    argv:
        Argument list without the program name.  Defaults to sys.argv if None.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = Config.load(args.config)
    # Configure logging if not already configured
    if not logging.root.handlers:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else config.LOG_LEVEL,
            format="%(levelname)s  %(name)s  %(message)s",
        )
    args.config_obj = config

    _run(args, args.func)


if __name__ == "__main__":
    main()
