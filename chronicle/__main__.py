"""Command line entry point for Chronicle.

Usage:
    python -m chronicle --index                 # Index all transcripts and exit
    python -m chronicle --watch                 # Index, then follow new messages
    python -m chronicle --embed                 # Backfill missing embeddings
    python -m chronicle --search "sqlite wal"   # Hybrid search
    python -m chronicle --similar 42            # Messages similar to message 42
    python -m chronicle --stats                 # Conversation statistics
    python -m chronicle --status                # Index and embedding status
    python -m chronicle --rebuild               # Rebuild the full-text index
"""

import argparse
import logging
import logging.handlers
import sys
import time
from pathlib import Path

from .app import Chronicle
from .config import Config, ConfigError
from .models import MessageRole, SearchFilters, SearchMode
from .validation import ValidationError
from .watcher import WatcherError


def _setup_logging(log_dir: Path, debug: bool = False):
    """Configure logging to both stderr and file with rotation."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "chronicle.log"
    level = logging.DEBUG if debug else logging.INFO

    logger = logging.getLogger("chronicle")
    logger.setLevel(level)

    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=10*1024*1024, backupCount=3
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


def main(argv=None):
    parser = argparse.ArgumentParser(description="Search Claude Code conversation history")
    parser.add_argument("--index", action="store_true",
                        help="Index all transcripts and exit")
    parser.add_argument("--watch", action="store_true",
                        help="Index, then keep indexing new messages until interrupted")
    parser.add_argument("--embed", action="store_true",
                        help="Generate missing embeddings")
    parser.add_argument("--search", type=str, default=None, metavar="QUERY",
                        help="Search messages (empty string with filters lists recent matches)")
    parser.add_argument("--mode", choices=[m.value for m in SearchMode],
                        default=SearchMode.HYBRID.value)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--project", type=str, default=None, help="Filter by project path")
    parser.add_argument("--role", choices=[r.value for r in MessageRole], default=None)
    parser.add_argument("--language", type=str, default=None)
    parser.add_argument("--similar", type=int, default=None, metavar="MESSAGE_ID",
                        help="Find messages similar to a message id")
    parser.add_argument("--stats", action="store_true",
                        help="Show conversation statistics")
    parser.add_argument("--status", action="store_true",
                        help="Show embedding coverage and provider status")
    parser.add_argument("--rebuild", action="store_true",
                        help="Rebuild the full-text index and exit")
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config file")
    args = parser.parse_args(argv)

    try:
        config = (Config(Path(args.config)) if args.config else Config()).validate()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    _setup_logging(Path(config["log_dir"]).expanduser(), config["debug"])
    logger = logging.getLogger("chronicle")
    logger.info(f"Starting Chronicle with config from {config.config_path}")

    with Chronicle(config) as chronicle:
        try:
            if args.rebuild:
                chronicle.db.rebuild_search_index()
                print("Full-text index rebuilt.")
                return 0
            if args.index or args.watch:
                _index(chronicle)
            if args.embed:
                _embed(chronicle)
            if args.search is not None:
                _search(chronicle, args)
            if args.similar is not None:
                _similar(chronicle, args)
            if args.stats:
                _stats(chronicle)
            if args.status:
                _status(chronicle)
            if args.watch:
                _watch(chronicle)
        except (ValidationError, WatcherError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    return 0


def _index(chronicle: Chronicle):
    result = chronicle.index_all()
    print(f"Indexed {result.indexed} messages "
          f"({result.skipped} already indexed, {result.failed} failed)")


def _embed(chronicle: Chronicle):
    if not chronicle.embeddings_available():
        print(f"Embedding model '{chronicle.embeddings.model}' is not available. "
              f"Is Ollama running? Run: ollama pull {chronicle.embeddings.model}",
              file=sys.stderr)
        return

    def progress(current, total):
        if current == total or current % 50 == 0:
            print(f"  {current}/{total}", file=sys.stderr)

    count = chronicle.generate_missing_embeddings(progress)
    print(f"Generated {count} embeddings.")


def _print_results(results):
    for r in results:
        m = r.message
        print(f"[{r.score:.4f}] #{m.id} {m.timestamp:%Y-%m-%d %H:%M} "
              f"{m.role.value} {m.project_path}")
        print(f"    {r.snippet.replace(chr(10), ' ')}")
    if not results:
        print("No results.")


def _search(chronicle: Chronicle, args):
    filters = SearchFilters(
        project_path=args.project,
        role=MessageRole(args.role) if args.role else None,
        language=args.language,
    )
    results = chronicle.search(args.search, filters, SearchMode(args.mode), args.limit)
    _print_results(results)


def _similar(chronicle: Chronicle, args):
    _print_results(chronicle.find_similar(args.similar, args.limit or 10))


def _stats(chronicle: Chronicle):
    s = chronicle.statistics()
    print(f"Messages: {s.total_messages}")
    for role, count in sorted(s.messages_by_role.items()):
        print(f"  {role}: {count}")
    for model, count in sorted(s.messages_by_model.items()):
        print(f"  {model}: {count}")
    if s.oldest_message:
        print(f"Range: {s.oldest_message:%Y-%m-%d} to {s.newest_message:%Y-%m-%d}")
    print(f"Tokens: {s.total_tokens:,} (~${s.estimated_total_cost:.2f})")


def _status(chronicle: Chronicle):
    stats = chronicle.embedding_stats()
    available = chronicle.embeddings_available()
    print(f"Embedding model: {stats.model} ({'available' if available else 'unavailable'})")
    print(f"Embedded: {stats.messages_with_embeddings}/{stats.total_messages} "
          f"({stats.percentage_complete:.1f}%)")
    print(f"Watching: {'yes' if chronicle.is_watching else 'no'}")


def _watch(chronicle: Chronicle):
    """Follow transcripts in the foreground until interrupted."""
    chronicle.start_watching()
    print(f"Watching {chronicle.indexer.projects_dir} (Ctrl-C to stop)...", file=sys.stderr)
    try:
        while chronicle.is_watching:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        chronicle.stop_watching()


if __name__ == "__main__":
    sys.exit(main())
