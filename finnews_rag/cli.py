"""
Command-Line Interface for the Financial News RAG Pipeline

Provides CLI commands for:
- Feed ingestion with deduplication (ingest), optionally indexing vectors
  through the change-feed path (stream)
- Bulk vector backfill and index verification
- Streamed question answering with focus and depth modes
- Cached topic listings and article details
- Cache maintenance, TTL purge and system statistics
"""

import sys
import argparse
import logging
from pathlib import Path

from .main_pipeline import NewsRAGSystem
from .query.modes import SEARCH_MODES, MODE_ALIASES, FOCUS_MODES


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def _ingest_source(system: NewsRAGSystem, source: str):
    path = Path(source)
    if not path.exists():
        print(f"✗ Error: Path not found: {source}")
        sys.exit(1)

    if path.is_dir():
        return system.ingest_directory(str(path))
    return system.ingest_file(str(path))


def _print_write_summary(summary):
    print(f"\n{'='*60}")
    print("Ingestion Summary:")
    print(f"  Inserted: {summary['inserted']}")
    print(f"  Skipped (duplicate): {summary['skipped_duplicate']}")
    print(f"  Errors: {summary['errors']}")
    if summary['invalidated_categories']:
        print(f"  Invalidated topics: {', '.join(summary['invalidated_categories'])}")
    if 'vectors' in summary:
        vectors = summary['vectors']
        print(f"  Vectors: {vectors['success']} indexed, {vectors['skipped']} skipped, {vectors['error']} failed")
    print(f"{'='*60}")

    failed = [r for r in summary['results'] if r['status'] == 'error']
    if failed:
        print("\nFailed items:")
        for result in failed:
            print(f"  - {result.get('title') or result.get('url_hash') or '?'}: {result.get('reason', 'Unknown error')}")


def cmd_ingest(args):
    """Handle the ingest command."""
    system = NewsRAGSystem(auto_sync=False)

    print(f"Ingesting feed items from: {args.source}")
    summary = _ingest_source(system, args.source)
    system.save()

    _print_write_summary(summary)
    if summary['inserted']:
        print("\nRun 'backfill' to index the new articles.")


def cmd_stream(args):
    """Handle the stream command."""
    system = NewsRAGSystem(auto_sync=True)

    print(f"Ingesting and indexing feed items from: {args.source}")
    summary = _ingest_source(system, args.source)
    system.save()

    _print_write_summary(summary)


def cmd_backfill(args):
    """Handle the backfill command."""
    system = NewsRAGSystem()

    mode = "DRY RUN" if args.dry_run else "LIVE"
    scope = args.category or "all categories"
    print(f"Backfilling vectors ({mode}) for {scope}")
    if args.start_key:
        print(f"  Resuming after: {args.start_key}")

    stats = system.backfill(
        category=args.category,
        dry_run=args.dry_run,
        start_key=args.start_key
    )
    if not args.dry_run:
        system.save()

    result = stats.to_dict()
    print(f"\n{'='*60}")
    print("Backfill Summary:")
    print(f"  Articles: {result['total']}")
    print(f"  Scanned: {result['scanned']}")
    print(f"  Succeeded: {result['success']}")
    print(f"  Skipped: {result['skipped']}")
    print(f"  Failed: {result['errors']}")
    print(f"  Duration: {result['duration']} ({result['throughput']}/s)")
    print(f"{'='*60}")

    if stats.errors:
        print("\nErrors:")
        for error in stats.errors[:20]:
            print(f"  - {error['url_hash']}: {error['error']}")

    if result['flush_failures']:
        if result['last_key']:
            print(f"\nRetry unwritten batches with: --start-key {result['last_key']}")
        else:
            print("\nRetry unwritten batches by re-running without --start-key")
    elif not result['completed'] and result['last_key']:
        print(f"\nResume with: --start-key {result['last_key']}")

    if result['errors']:
        sys.exit(1)


def cmd_verify(args):
    """Handle the verify command."""
    system = NewsRAGSystem()

    report = system.verify()

    print("="*60)
    print("Index Verification")
    print("="*60)
    print(f"Articles: {report['primary_count']}")
    print(f"Vectors: {report['vector_count']}")
    print(f"Missing vectors: {report['missing_vectors']}")
    print(f"Stale vectors: {report['stale_vectors']}")
    for key in report['missing_sample']:
        print(f"  missing: {key}")
    for key in report['stale_sample']:
        print(f"  stale: {key}")
    print("="*60)

    if report['in_sync']:
        print("✓ Store and index are in sync")
    else:
        print("✗ Store and index differ (run 'backfill' to add missing vectors)")
        sys.exit(1)


def cmd_ask(args):
    """Handle the ask command."""
    system = NewsRAGSystem()

    print(f"Question: {args.question}")
    print(f"Focus: {args.focus}  Mode: {args.mode}")
    print()

    sources = []
    for event in system.stream_answer(args.question, focus=args.focus, mode=args.mode):
        if event['type'] == 'sources':
            sources = event['data']
            print("Answer:")
        elif event['type'] == 'response':
            print(event['data'], end='', flush=True)
    print("\n")

    if not args.no_sources and sources:
        print("Sources:")
        for i, source in enumerate(sources, 1):
            print(f"  [{i}] {source['metadata'].get('title', '')}")
            print(f"      {source['metadata'].get('url', '')}")
        print()


def cmd_articles(args):
    """Handle the articles command."""
    system = NewsRAGSystem()

    articles = system.list_articles(args.topic, limit=args.limit)

    if not articles:
        print("No articles found.")
        return

    print(f"Found {len(articles)} articles for topic '{args.topic}':\n")
    for i, article in enumerate(articles, 1):
        print(f"[{i}] {article['title']}")
        print(f"    {article['pub_date']}  {article['category']}")
        print(f"    URL: {article['url']}")
        print()


def cmd_article(args):
    """Handle the article command."""
    system = NewsRAGSystem()

    article = system.get_article(args.url)
    if article is None:
        print(f"✗ Article not found: {args.url}")
        sys.exit(1)

    print("="*60)
    print(article['title'])
    print("="*60)
    print(f"Published: {article['pub_date']}")
    print(f"Author: {article['author']}")
    print(f"Category: {article['category']}")
    print(f"URL: {article['url']}")
    if article.get('thumbnail'):
        print(f"Thumbnail: {article['thumbnail']}")
    print()
    print(article['content'] or '')


def cmd_cache(args):
    """Handle the cache command."""
    system = NewsRAGSystem()
    cache = system.cache

    if args.action == 'stats':
        stats = cache.stats()
        print("="*60)
        print("Cache Statistics")
        print("="*60)
        print(f"Hits: {stats['hits']}")
        print(f"Misses: {stats['misses']}")
        for name, backend_stats in stats.items():
            if name not in ('hits', 'misses'):
                print(f"{name}: {backend_stats}")
        print("="*60)

    elif args.action == 'invalidate':
        if not args.target:
            print("✗ Error: a cache key is required")
            sys.exit(1)
        cache.invalidate(args.target)
        print(f"✓ Invalidated key: {args.target}")

    elif args.action == 'invalidate-pattern':
        if not args.target:
            print("✗ Error: a key pattern is required")
            sys.exit(1)
        cache.invalidate_pattern(args.target)
        print(f"✓ Invalidated pattern: {args.target}")

    elif args.action == 'invalidate-topic':
        if not args.target:
            print("✗ Error: a topic is required")
            sys.exit(1)
        keys = cache.invalidate_topic(args.target)
        print(f"✓ Invalidated: {', '.join(keys)}")


def cmd_purge_expired(args):
    """Handle the purge-expired command."""
    system = NewsRAGSystem(auto_sync=False)

    result = system.purge_expired()
    system.save()

    print(f"✓ Purged {result['purged']} expired articles")
    if result['purged']:
        print("  Their vectors remain until re-indexed; see 'verify'.")


def cmd_stats(args):
    """Handle the stats command."""
    system = NewsRAGSystem()

    stats = system.get_stats()

    print("="*60)
    print("System Statistics")
    print("="*60)
    print(f"Total Articles: {stats['total_articles']}")
    print(f"Total Vectors: {stats['total_vectors']}")
    print()

    print("Categories:")
    for category, count in sorted(stats['categories'].items()):
        print(f"  {category}: {count}")
    print()

    print("Vector Store:")
    vs_stats = stats['vector_store_stats']
    print(f"  Dimension: {vs_stats.get('dimension', 'N/A')}")
    print(f"  Index Type: {vs_stats.get('index_type', 'N/A')}")
    print(f"  Live Vectors: {vs_stats.get('total_vectors', 0)}")
    print(f"  Tombstones: {vs_stats.get('tombstoned_rows', 0)}")
    print()

    print("Cache:")
    cache_stats = stats['cache_stats']
    print(f"  Hits: {cache_stats.get('hits', 0)}")
    print(f"  Misses: {cache_stats.get('misses', 0)}")
    backends = [name for name in cache_stats if name not in ('hits', 'misses')]
    print(f"  Backends: {', '.join(backends)}")
    print("="*60)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description='Financial News RAG Pipeline - Feed ingestion, vector indexing and question answering',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Write feed items (a JSON file or a directory of items/*.json objects)
  python -m finnews_rag.cli ingest data/feeds

  # Write and index through the change feed
  python -m finnews_rag.cli stream data/feeds

  # Rebuild vectors for one category
  python -m finnews_rag.cli backfill --category market

  # Ask a question
  python -m finnews_rag.cli ask "How did bank stocks react to the rate cut?" --mode quality

  # Browse recent articles
  python -m finnews_rag.cli articles --topic finance --limit 10
        """
    )

    # Global arguments
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    # Subcommands
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Ingest command
    ingest_parser = subparsers.add_parser(
        'ingest',
        help='Write feed items to the article store with deduplication'
    )
    ingest_parser.add_argument(
        'source',
        help='JSON file of feed items, or a directory of feed objects'
    )
    ingest_parser.set_defaults(func=cmd_ingest)

    # Stream command
    stream_parser = subparsers.add_parser(
        'stream',
        help='Write feed items and index them through the change feed'
    )
    stream_parser.add_argument(
        'source',
        help='JSON file of feed items, or a directory of feed objects'
    )
    stream_parser.set_defaults(func=cmd_stream)

    # Backfill command
    backfill_parser = subparsers.add_parser(
        'backfill',
        help='Embed and index every stored article'
    )
    backfill_parser.add_argument(
        '--category',
        help='Only backfill one category'
    )
    backfill_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Scan and count without embedding or writing'
    )
    backfill_parser.add_argument(
        '--start-key',
        help='Resume after this article key'
    )
    backfill_parser.set_defaults(func=cmd_backfill)

    # Verify command
    verify_parser = subparsers.add_parser(
        'verify',
        help='Compare the article store with the vector index'
    )
    verify_parser.set_defaults(func=cmd_verify)

    # Ask command
    ask_parser = subparsers.add_parser(
        'ask',
        help='Ask a question and stream an answer'
    )
    ask_parser.add_argument(
        'question',
        help='Question to ask'
    )
    ask_parser.add_argument(
        '--focus',
        choices=list(FOCUS_MODES.keys()),
        default='all',
        help='Restrict the search to one category (default: all)'
    )
    ask_parser.add_argument(
        '--mode',
        choices=list(SEARCH_MODES.keys()) + list(MODE_ALIASES.keys()),
        default='balanced',
        help='Search depth (default: balanced)'
    )
    ask_parser.add_argument(
        '--no-sources',
        action='store_true',
        help='Disable source listing'
    )
    ask_parser.set_defaults(func=cmd_ask)

    # Articles command
    articles_parser = subparsers.add_parser(
        'articles',
        help='List recent articles for a topic'
    )
    articles_parser.add_argument(
        '--topic',
        default='all',
        help='Topic to list (default: all)'
    )
    articles_parser.add_argument(
        '--limit',
        type=int,
        default=50,
        help='Maximum articles per topic (default: 50)'
    )
    articles_parser.set_defaults(func=cmd_articles)

    # Article command
    article_parser = subparsers.add_parser(
        'article',
        help='Show one article by URL'
    )
    article_parser.add_argument(
        'url',
        help='Article URL'
    )
    article_parser.set_defaults(func=cmd_article)

    # Cache command
    cache_parser = subparsers.add_parser(
        'cache',
        help='Inspect or invalidate the response cache'
    )
    cache_parser.add_argument(
        'action',
        choices=['stats', 'invalidate', 'invalidate-pattern', 'invalidate-topic'],
        help='Cache action'
    )
    cache_parser.add_argument(
        'target',
        nargs='?',
        help='Key, glob pattern or topic for invalidation'
    )
    cache_parser.set_defaults(func=cmd_cache)

    # Purge command
    purge_parser = subparsers.add_parser(
        'purge-expired',
        help='Delete articles past their TTL'
    )
    purge_parser.set_defaults(func=cmd_purge_expired)

    # Stats command
    stats_parser = subparsers.add_parser(
        'stats',
        help='Display system statistics'
    )
    stats_parser.set_defaults(func=cmd_stats)

    # Parse arguments
    args = parser.parse_args()

    # Setup logging
    setup_logging(args.verbose)

    # Execute command
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\n✗ Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
