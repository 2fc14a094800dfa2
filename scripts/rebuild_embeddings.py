#!/usr/bin/env python3
"""
Embedding Rebuild Utility
Re-embeds every CRM record a user owns from the canonical SQLite store and
drops indexed documents whose records no longer exist.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from crm_assistant.core.config import embeddings_enabled, get_embed_provider_name
from crm_assistant.core.db import init_db
from crm_assistant.vector.pipeline import EmbeddingPipeline


def main(argv=None):
    """Rebuild document embeddings for one or more users."""
    parser = argparse.ArgumentParser(description="Rebuild CRM document embeddings")
    parser.add_argument("--user", action="append", required=True, dest="users",
                        help="owner user id to rebuild (repeatable)")
    args = parser.parse_args(argv)

    if not embeddings_enabled():
        print("ERROR: Embeddings disabled. Set EMBED_PROVIDER=ollama or EMBED_PROVIDER=hash")
        return 1

    init_db()

    pipeline = EmbeddingPipeline()
    if pipeline.provider is None or not pipeline.provider.is_available():
        print(f"ERROR: Embedding provider '{get_embed_provider_name()}' not available")
        return 1

    failed = False
    for user_id in args.users:
        print(f"Rebuilding embeddings for {user_id}...")
        counts = pipeline.sync_all(user_id)
        indexed = sum(v for k, v in counts.items() if k not in ("errors", "removed"))
        print(f"✓ Indexed {indexed} records ({counts['errors']} errors, {counts['removed']} stale documents removed)")
        for source_type, count in counts.items():
            if source_type not in ("errors", "removed"):
                print(f"  {source_type}: {count}")
        failed = failed or counts["errors"] > 0

    print("Embedding rebuild complete!")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
