#!/usr/bin/env python3
"""
Generate embeddings - keeps stored vectors in sync with the corpus

Usage:
    python -m docs_search.generate_embeddings [options]

Options:
    --corpus {nodes,templates,all}   Corpus to process (default: all)
    --force                          Regenerate every embedding, stale or not
    --dry-run                        Only report pending entities and estimated cost
    --batch-size N                   Entities per API call / save transaction
    --migrate                        Add missing embedding columns first
    --db PATH                        Database file (default from config)

Examples:
    # Embed new and changed entities
    python -m docs_search.generate_embeddings

    # See what would be embedded and what it would cost
    python -m docs_search.generate_embeddings --dry-run

    # Rebuild all template embeddings
    python -m docs_search.generate_embeddings --corpus templates --force
"""

import argparse
import sys

from .config import config
from .embeddings.openai_client import OpenAIEmbeddingClient
from .errors import DocsSearchError
from .indexing.database import DocumentDatabase
from .indexing.embedding_indexer import EmbeddingIndexer
from .indexing.vector_store import VectorStore
from .utils.logger import setup_logger

logger = setup_logger(__name__)


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Generate embeddings for nodes and templates",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--corpus",
        choices=["nodes", "templates", "all"],
        default="all",
        help="Corpus to process (default: all)",
    )

    parser.add_argument(
        "--force",
        action="store_true",
        help="Regenerate every embedding, stale or not",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report pending entities and estimated cost",
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        default=config.embedding_batch_size,
        help=f"Entities per API call (default: {config.embedding_batch_size})",
    )

    parser.add_argument(
        "--migrate",
        action="store_true",
        help="Add missing embedding columns before generating",
    )

    parser.add_argument(
        "--db",
        default=None,
        help=f"Database file (default: {config.database_path})",
    )

    return parser.parse_args(argv)


def main(argv=None):
    """Main embedding generation workflow"""
    args = parse_args(argv)
    corpus = None if args.corpus == "all" else args.corpus

    logger.info("=" * 70)
    logger.info("Embedding Generation")
    logger.info("=" * 70)
    logger.info(f"Database: {args.db or config.database_path}")
    logger.info(f"Corpus: {args.corpus}")
    logger.info(f"Embedding model: {config.embedding_model} ({config.embedding_dimensions} dims)")
    logger.info(f"Batch size: {args.batch_size}")
    logger.info(f"Force: {args.force}")
    logger.info(f"Dry run: {args.dry_run}")
    logger.info("=" * 70)

    database = None
    client = None
    try:
        config.validate_settings()
        database = DocumentDatabase(args.db)

        if args.migrate:
            added = database.migrate_embedding_columns()
            logger.info(f"Migration added {len(added)} columns")

        client = OpenAIEmbeddingClient()
        if not args.dry_run and not client.is_available():
            logger.error("OPENAI_API_KEY is not set")
            return 1

        indexer = EmbeddingIndexer(VectorStore(database, default_model=client.model), client)
        results = indexer.generate(
            corpus=corpus,
            force=args.force,
            dry_run=args.dry_run,
            batch_size=args.batch_size,
        )

        logger.info("")
        logger.info("=" * 70)
        logger.info("Embedding Statistics")
        logger.info("=" * 70)
        failed = 0
        for name, stats in results.items():
            logger.info(f"[{name}]")
            logger.info(f"  Total entities:     {stats.total}")
            logger.info(f"  Up to date:         {stats.skipped}")
            logger.info(f"  Pending:            {stats.pending}")
            logger.info(f"  Estimated cost:     ${stats.estimated_cost:.4f}")
            if not args.dry_run:
                logger.info(f"  Generated:          {stats.generated}")
                logger.info(f"  Failed:             {stats.failed}")
                logger.info(f"  Tokens:             {stats.total_tokens}")
                logger.info(f"  Cost:               ${stats.total_cost:.6f}")
                logger.info(f"  Time:               {stats.processing_time:.1f}s")
            failed += stats.failed
        logger.info("=" * 70)

        if failed:
            logger.warning(f"{failed} entities could not be embedded; rerun to retry them")
            return 1

        logger.info("[OK] Embedding generation completed successfully!")
        return 0

    except KeyboardInterrupt:
        logger.warning("Embedding generation interrupted by user")
        return 1

    except (DocsSearchError, ValueError) as e:
        logger.error(f"Error during embedding generation: {e}")
        return 1

    finally:
        if client is not None:
            client.close()
        if database is not None:
            database.close()


if __name__ == "__main__":
    sys.exit(main())
