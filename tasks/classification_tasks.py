"""
Celery tasks for ingesting export rows and applying categorization rules.
The task bodies are thin wrappers around plain helpers that take a store,
so the pipeline runs the same with or without a broker.
"""
import os
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from celery_app import celery_app
from spendlens.database import SessionLocal
from spendlens.schemas import RawTransactionRow
from spendlens.services.ingest_normalizer import normalize_rows
from spendlens.services.rule_engine import ApplyResult, apply_batch
from spendlens.storage import SqlTransactionStore, StorageError, TransactionStore

logger = logging.getLogger(__name__)


RULE_BATCH_SIZE = int(os.getenv("RULE_BATCH_SIZE", "500"))


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value)


def run_classification(
    store: TransactionStore,
    transaction_ids: Optional[List[str]] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    batch_size: int = RULE_BATCH_SIZE,
) -> Dict[str, int]:
    """
    Apply the current rules to stored transactions.

    The configuration snapshot is loaded once, so every batch in the run
    sees the same rules even if they are edited meanwhile.

    Returns:
        Dict with processed, updated and errors counts
    """
    snapshot = store.load_config_snapshot()
    transactions = store.fetch_transactions(
        date_from=date_from,
        date_to=date_to,
        ids=transaction_ids,
    )

    total = ApplyResult()
    for start in range(0, len(transactions), batch_size):
        batch = transactions[start:start + batch_size]
        result = apply_batch(batch, snapshot, store)
        total.processed += result.processed
        total.updated += result.updated
        total.errors += result.errors

    logger.info(
        f"[CLASSIFY_TASK] {total.processed} processed, {total.updated} updated, "
        f"{total.errors} errors"
    )
    return total.to_dict()


def run_ingest(store: TransactionStore, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Normalize raw export rows, store them, then classify what was inserted.

    Returns:
        Dict with inserted count and the classification summary
    """
    raw_rows = [RawTransactionRow.model_validate(row) for row in rows]
    records = normalize_rows(raw_rows)
    inserted = store.insert_transactions(records)

    classification = run_classification(store, transaction_ids=[r.id for r in records])
    return {
        "inserted": inserted,
        "transfers": sum(1 for r in records if r.is_transfer),
        **classification,
    }


@celery_app.task(bind=True, max_retries=3)
def classify_transactions(
    self,
    transaction_ids: Optional[List[str]] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
):
    """
    Apply categorization rules in the background.

    Args:
        transaction_ids: Restrict to these transactions (default all)
        date_from: ISO date, inclusive
        date_to: ISO date, inclusive
    """
    logger.info(f"[CLASSIFY_TASK] Starting classification (ids={len(transaction_ids or [])})")

    db = SessionLocal()
    try:
        return run_classification(
            SqlTransactionStore(db),
            transaction_ids=transaction_ids,
            date_from=_parse_date(date_from),
            date_to=_parse_date(date_to),
        )
    except StorageError as e:
        logger.error(f"[CLASSIFY_TASK] Storage failure, retrying: {e}")
        raise self.retry(exc=e, countdown=30)
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def ingest_rows(self, rows: List[Dict[str, Any]]):
    """
    Normalize, store and classify parsed export rows.

    Args:
        rows: Raw row dicts (date, amount, description, optional section hint)
    """
    logger.info(f"[CLASSIFY_TASK] Ingesting {len(rows)} rows")

    db = SessionLocal()
    try:
        return run_ingest(SqlTransactionStore(db), rows)
    except StorageError as e:
        logger.error(f"[CLASSIFY_TASK] Storage failure during ingest, retrying: {e}")
        raise self.retry(exc=e, countdown=30)
    finally:
        db.close()
