"""
SQLAlchemy-backed transaction store.

Each classification write is its own commit, so a failure on one
transaction never rolls back the others in a batch.
"""
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from spendlens import models
from spendlens.schemas import (
    Category,
    ConfigSnapshot,
    Merchant,
    Rule,
    Tag,
    TransactionRecord,
    TransactionSplit,
)
from spendlens.services.catalog_validator import build_config_snapshot, validate_splits
from spendlens.storage.base import StorageError, TransactionStore

logger = logging.getLogger(__name__)


# Columns that map one-to-one onto TransactionRecord fields
SCALAR_FIELDS = (
    "category_id",
    "merchant_id",
    "notes",
    "is_recurring",
    "is_transfer",
    "flow_type",
    "is_excluded",
    "amount",
)


def _to_record(txn: models.Transaction) -> TransactionRecord:
    return TransactionRecord(
        id=txn.id,
        date=txn.tx_date,
        amount=txn.amount,
        description=txn.description or "",
        merchant_raw=txn.merchant_raw,
        flow_type=txn.flow_type or "unknown",
        status=txn.status or "booked",
        is_excluded=bool(txn.is_excluded),
        is_transfer=bool(txn.is_transfer),
        category_id=txn.category_id,
        merchant_id=txn.merchant_id,
        tags={link.tag_id for link in txn.tag_links},
        section_label=txn.section_label,
        notes=txn.notes,
        is_recurring=bool(txn.is_recurring),
        splits=[TransactionSplit.model_validate(split) for split in txn.splits],
    )


class SqlTransactionStore(TransactionStore):
    """Transaction store over a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def fetch_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        ids: Optional[Iterable[str]] = None,
        include_excluded: bool = True,
    ) -> List[TransactionRecord]:
        query = self.db.query(models.Transaction).options(
            selectinload(models.Transaction.tag_links),
            selectinload(models.Transaction.splits),
        )

        if date_from is not None:
            query = query.filter(models.Transaction.tx_date >= date_from)
        if date_to is not None:
            query = query.filter(models.Transaction.tx_date <= date_to)
        if ids is not None:
            id_list = list(ids)
            if not id_list:
                return []
            query = query.filter(models.Transaction.id.in_(id_list))
        if not include_excluded:
            query = query.filter(models.Transaction.is_excluded == False)  # noqa: E712

        rows = query.order_by(models.Transaction.tx_date.asc(), models.Transaction.id.asc()).all()
        return [_to_record(row) for row in rows]

    def load_config_snapshot(self) -> ConfigSnapshot:
        rules = []
        for row in self.db.query(models.CategorizationRule).all():
            try:
                rules.append(Rule.model_validate(row))
            except ValidationError as e:
                logger.warning(f"[STORAGE] Skipping malformed rule {row.id}: {e}")

        categories = [Category.model_validate(c) for c in self.db.query(models.Category).all()]
        merchants = [
            Merchant(id=m.id, canonical_name=m.canonical_name, patterns=list(m.patterns or []))
            for m in self.db.query(models.Merchant).all()
        ]
        tags = [Tag.model_validate(t) for t in self.db.query(models.Tag).all()]

        return build_config_snapshot(rules, categories, merchants, tags)

    def save_classification(self, transaction_id: str, changes: Dict[str, Any]) -> bool:
        try:
            txn = self.db.query(models.Transaction).filter(
                models.Transaction.id == transaction_id
            ).first()
            if not txn:
                raise StorageError(f"Transaction {transaction_id} not found")

            changed = False
            for name in SCALAR_FIELDS:
                if name in changes and getattr(txn, name) != changes[name]:
                    setattr(txn, name, changes[name])
                    changed = True

            if "tags" in changes:
                current = {link.tag_id for link in txn.tag_links}
                wanted = set(changes["tags"])
                if current != wanted:
                    txn.tag_links = [
                        link for link in txn.tag_links if link.tag_id in wanted
                    ] + [
                        models.TransactionTag(transaction_id=txn.id, tag_id=tag_id)
                        for tag_id in sorted(wanted - current)
                    ]
                    changed = True

            if not changed:
                return False

            self.db.commit()
            return True
        except StorageError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[STORAGE] Write failed for transaction {transaction_id}: {e}")
            raise StorageError(str(e)) from e

    def insert_transactions(self, records: Iterable[TransactionRecord]) -> int:
        count = 0
        try:
            for record in records:
                txn = models.Transaction(
                    id=record.id,
                    tx_date=record.date,
                    amount=record.amount,
                    description=record.description,
                    merchant_raw=record.merchant_raw,
                    flow_type=record.flow_type,
                    status=record.status,
                    is_excluded=record.is_excluded,
                    is_transfer=record.is_transfer,
                    category_id=record.category_id,
                    merchant_id=record.merchant_id,
                    section_label=record.section_label,
                    notes=record.notes,
                    is_recurring=record.is_recurring,
                )
                txn.tag_links = [
                    models.TransactionTag(transaction_id=record.id, tag_id=tag_id)
                    for tag_id in sorted(record.tags)
                ]
                txn.splits = [
                    models.TransactionSplit(
                        id=split.id,
                        transaction_id=record.id,
                        category_id=split.category_id,
                        amount=split.amount,
                        description=split.description,
                    )
                    for split in record.splits
                ]
                self.db.add(txn)
                count += 1

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[STORAGE] Insert of {count} transactions failed: {e}")
            raise StorageError(str(e)) from e

        logger.info(f"[STORAGE] Inserted {count} transactions")
        return count

    def replace_splits(self, transaction_id: str, splits: List[TransactionSplit]) -> TransactionRecord:
        """
        Replace a transaction's splits after checking they partition its amount.

        Raises:
            CatalogValidationError: If the splits fail admission
            StorageError: If the transaction is missing or the write fails
        """
        txn = self.db.query(models.Transaction).filter(
            models.Transaction.id == transaction_id
        ).first()
        if not txn:
            raise StorageError(f"Transaction {transaction_id} not found")

        categories = {
            c.id: Category.model_validate(c) for c in self.db.query(models.Category).all()
        }
        validate_splits(_to_record(txn), splits, categories)

        try:
            txn.splits = [
                models.TransactionSplit(
                    id=split.id,
                    transaction_id=txn.id,
                    category_id=split.category_id,
                    amount=split.amount,
                    description=split.description,
                )
                for split in splits
            ]
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[STORAGE] Split write failed for transaction {transaction_id}: {e}")
            raise StorageError(str(e)) from e

        self.db.refresh(txn)
        return _to_record(txn)
