"""Script de rejeu des enveloppes en dead-letter.

Re-soumet les dead-letters (toutes sources ou une seule) au Router avec leur clé
d'origine et sort avec un code non nul si certaines retombent en dead-letter.

Usage:
    python -m scripts.replay_dead_letters --source crm --max-items 50
    python -m scripts.replay_dead_letters --dry-run
"""

from __future__ import annotations

import argparse
import sys

from contentpipe.core.container import Container
from contentpipe.core.logging import setup_logging
from contentpipe.domain.envelope import EnvelopeStatus


def main(argv: list[str] | None = None, container: Container | None = None) -> int:
    """Replay dead letters and exit non-zero if failures remain."""
    parser = argparse.ArgumentParser(description="Replay dead-lettered envelopes")
    parser.add_argument("--source", default=None)
    parser.add_argument("--max-items", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    owned = container is None
    if container is None:
        container = Container()
        setup_logging(container.settings.LOG_LEVEL, json_logs=container.settings.LOG_JSON)
    try:
        records = container.envelopes.list_by_status(
            EnvelopeStatus.DEAD_LETTERED, source=args.source, limit=args.max_items
        )
        if args.dry_run:
            for record in records:
                outcome = record.outcome
                print(f"{record.envelope.ref} attempts={outcome.attempts} error={outcome.error}")
            print(f"candidates={len(records)}")
            return 0

        replayed = failed = 0
        for record in records:
            ref = record.envelope.ref
            container.pipeline.replay(ref.source, ref.idempotency_key)
            after = container.envelopes.require(ref)
            if after.status is EnvelopeStatus.DEAD_LETTERED:
                failed += 1
            else:
                replayed += 1
        print(f"replayed={replayed} failed={failed}")
        return 1 if failed else 0
    finally:
        if owned:
            container.close()


if __name__ == "__main__":
    sys.exit(main())
