"""
Scripts - Seed Registry.

============================================================
RESPONSIBILITY
============================================================
Initializes the database and loads the default registry.

- Creates database schema
- Inserts default registry entries not yet present
- Reports what was added / skipped

============================================================
USAGE
============================================================
python -m scripts.seed_registry

Options:
  --database-url URL   Override DATABASE_URL
  --dry-run            List entries without writing

============================================================
"""

import argparse
import logging
import sys

from aso_bible.defaults import default_registry_entries
from aso_bible.repository import SqlRegistryStore
from core.exceptions import AsoBibleError
from database.engine import (
    configure_engine,
    create_database_engine,
    initialize_database,
    transaction_scope,
)


logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Seed the ASO Bible registry")
    parser.add_argument("--database-url", help="SQLAlchemy database URL")
    parser.add_argument("--dry-run", action="store_true", help="List entries without writing")
    return parser.parse_args(argv)


def seed_registry(dry_run: bool = False) -> int:
    """
    Insert default entries that are missing.

    Returns:
        Number of entries inserted
    """
    entries = default_registry_entries()

    if dry_run:
        for entry in entries:
            logger.info(f"[dry-run] {entry.entity_type.value:18} {entry.id} weight={entry.base_weight}")
        return 0

    inserted = 0
    with transaction_scope() as session:
        registry = SqlRegistryStore(session)
        for entry in entries:
            if registry.has_entry(entry.id):
                logger.info(f"Skipping existing entry {entry.id}")
                continue
            registry.register(entry)
            inserted += 1

    logger.info(f"Seeded {inserted} of {len(entries)} default entries")
    return inserted


def main(argv=None):
    """Seed registry entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    args = parse_args(argv)

    try:
        if args.database_url:
            configure_engine(create_database_engine(args.database_url))
        if not args.dry_run:
            initialize_database()
        seed_registry(dry_run=args.dry_run)
    except AsoBibleError as e:
        logger.error(e.to_log_format())
        sys.exit(1)


if __name__ == "__main__":
    main()
