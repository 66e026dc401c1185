#!/usr/bin/env python
"""Index a markdown documentation tree into the knowledge graph.

Usage:
    python scripts/reindex.py --repository docs              # Incremental reindex
    python scripts/reindex.py --repository docs --rebuild    # Full rebuild from scratch
    python scripts/reindex.py --repository docs --verbose    # Show detailed progress
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docgraph import config
from docgraph.container import build_services
from docgraph.log import configure_logging
import structlog

logger = structlog.get_logger()

STORE_FILES = ("graph.sqlite", "vectors.index", "metadata.json")


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "#" * filled + "." * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict, data_dir: Path):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        if stats["skipped"]:
            print("  Repository unchanged, nothing to do")
        else:
            print("  Indexing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  Content version:      {stats['content_version']}")
        print(f"  Files processed:      {stats['files_processed']}")
        print(f"  Files unchanged:      {stats['files_unchanged']}")
        print(f"  Files failed:         {stats['files_failed']}")
        print(f"  Documents removed:    {stats['documents_deleted']}")
        print(f"  Chunks created:       {stats['chunks_created']}")
        print(f"  Chunks failed:        {stats['chunks_failed']}")
        print(f"  Embeddings generated: {stats['embeddings_generated']}")
        print(f"  Time elapsed:         {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if stats["files_failed"] > 0 or stats["chunks_failed"] > 0:
            print("Warning: some documents were not fully indexed; sync state was not recorded.")
            print("   Check logs for details.\n")

        if stats["files_processed"] > 0:
            print(f"Index ready at: {data_dir}/vectors.index")
            print(f"Graph at: {data_dir}/graph.sqlite\n")


def clear_stores(data_dir: Path) -> None:
    """Remove the graph database and vector index files."""
    for name in STORE_FILES:
        path = data_dir / name
        if path.exists():
            path.unlink()
            logger.info("store_file_removed", path=str(path))


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Index markdown documentation into the knowledge graph",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py --repository docs              # Incremental reindex
  python scripts/reindex.py --repository docs --rebuild    # Full rebuild from scratch
  python scripts/reindex.py --repository docs --version $(git rev-parse HEAD)
        """,
    )

    parser.add_argument(
        "--docs-dir",
        type=Path,
        default=None,
        help=f"Documentation root (default: {config.DOCS_DIR})",
    )

    parser.add_argument(
        "--repository",
        required=True,
        help="Repository name recorded on every document",
    )

    parser.add_argument(
        "--version",
        default=None,
        help="Content version, e.g. a commit hash (default: digest of all files)",
    )

    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-index even when the recorded version matches",
    )

    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild from scratch (clears the graph and vector index)",
    )

    parser.add_argument(
        "--no-concepts",
        action="store_true",
        help="Skip LLM concept extraction",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()
    configure_logging(level="DEBUG" if args.verbose else None)

    docs_dir = args.docs_dir or config.DOCS_DIR
    data_dir = config.DATA_DIR
    progress = ProgressReporter(verbose=args.verbose)

    try:
        print("\nConfiguration:")
        print(f"   Docs directory:   {docs_dir}")
        print(f"   Repository:       {args.repository}")
        print(f"   Data directory:   {data_dir}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
        print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")

        if args.rebuild:
            print("\nRebuild mode: Will clear the existing graph and index!")
            print("   Press Ctrl+C within 3 seconds to cancel...")
            await asyncio.sleep(3)
            clear_stores(data_dir)

        action = "Rebuilding" if args.rebuild else "Indexing"
        progress.start(f"{action} {args.repository}")

        services = build_services(
            data_dir=data_dir,
            extract_concepts=False if args.no_concepts else None,
        )

        stats = await services.indexer.index_directory(
            docs_dir,
            args.repository,
            version=args.version,
            force=args.force or args.rebuild,
            progress_callback=progress.update,
        )
        services.save()

        progress.finish(stats, data_dir)

        if stats["files_failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nIndexing cancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\nError: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
