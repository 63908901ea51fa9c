"""
Transaction verification.

Keeps a SHA-256 hash of each ledger entry's critical fields in a store
separate from the ledger and re-derives it on demand, flagging any entry
whose current hash no longer matches. Mismatches are reported, never
repaired.
"""

import hashlib
import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from .errors import VerificationStorageError
from ..storage.models import (
    LedgerEntry,
    TransactionType,
    VerificationRecord,
    VerificationStatus,
)
from ..storage.repository import LedgerRepository, VerificationRepository, utcnow

logger = structlog.get_logger(__name__)

HASHED_FIELDS = (
    "entry_id",
    "sequence",
    "transaction_type",
    "actor_id",
    "content_id",
    "session_id",
    "amount",
    "user_balance_pre",
    "user_balance_post",
    "user_aggregate_pre",
    "user_aggregate_post",
    "content_aggregate_pre",
    "content_aggregate_post",
    "global_aggregate_pre",
    "global_aggregate_post",
    "reference_id",
    "reference_type",
    "created_at",
)


def canonical_payload(entry: LedgerEntry) -> Dict[str, Any]:
    payload = {name: getattr(entry, name) for name in HASHED_FIELDS}
    payload["transaction_type"] = entry.transaction_type.value
    payload["created_at"] = entry.created_at.isoformat()
    return payload


def _digest(payload: Dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_entry_hash(entry: LedgerEntry) -> str:
    """SHA-256 hex digest of the entry's critical fields as canonical JSON.

    Display fields and metadata are left out; only what determines money
    movement is covered.
    """
    return _digest(canonical_payload(entry))


def compute_row_hash(row: sqlite3.Row) -> str:
    """Same digest as compute_entry_hash, taken from the stored column values.

    Needs no decoding, so a row whose timestamp or type was edited into
    garbage still hashes (and mismatches) instead of raising.
    """
    return _digest({name: row[name] for name in HASHED_FIELDS})


class VerificationOutcome(Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    MISSING_RECORD = "missing_record"
    MISSING_ENTRY = "missing_entry"


@dataclass(frozen=True)
class VerificationResult:
    entry_id: str
    outcome: VerificationOutcome
    original_hash: Optional[str] = None
    current_hash: Optional[str] = None
    record: Optional[VerificationRecord] = None

    @property
    def matched(self) -> bool:
        return self.outcome == VerificationOutcome.VERIFIED

    @property
    def is_anomaly(self) -> bool:
        return self.outcome in (VerificationOutcome.MISMATCH, VerificationOutcome.MISSING_ENTRY)


@dataclass
class BatchReport:
    """Counts from one or more verification pages.

    ``last_sequence`` is the resume cursor for the next page.
    """
    checked: int = 0
    verified: int = 0
    mismatches: int = 0
    missing_records: int = 0
    missing_entries: int = 0
    errors: int = 0
    anomalies: List[VerificationResult] = field(default_factory=list)
    last_sequence: int = 0
    exhausted: bool = False

    @property
    def has_anomalies(self) -> bool:
        return bool(self.anomalies)

    def add(self, result: VerificationResult) -> None:
        self.checked += 1
        if result.outcome == VerificationOutcome.VERIFIED:
            self.verified += 1
        elif result.outcome == VerificationOutcome.MISMATCH:
            self.mismatches += 1
        elif result.outcome == VerificationOutcome.MISSING_RECORD:
            self.missing_records += 1
        else:
            self.missing_entries += 1
            self.mismatches += 1
        if result.is_anomaly:
            self.anomalies.append(result)

    def merge(self, other: "BatchReport") -> None:
        self.checked += other.checked
        self.verified += other.verified
        self.mismatches += other.mismatches
        self.missing_records += other.missing_records
        self.missing_entries += other.missing_entries
        self.errors += other.errors
        self.anomalies.extend(other.anomalies)
        self.last_sequence = max(self.last_sequence, other.last_sequence)
        self.exhausted = other.exhausted


@dataclass(frozen=True)
class VerificationStats:
    total: int
    by_status: Dict[str, int]
    total_mismatch_count: int
    by_type: Dict[str, Dict[str, int]]


class VerificationService:
    """Stores and checks ledger entry hashes."""

    def __init__(
        self,
        ledger_repository: LedgerRepository,
        verification_repository: VerificationRepository,
        batch_size: int = 500,
    ):
        self.ledger = ledger_repository
        self.records = verification_repository
        self.batch_size = batch_size

    def store_verification_hash(self, entry: LedgerEntry) -> VerificationRecord:
        """Record the hash of a freshly written entry.

        Write-once: if the entry already has a record, that record is
        returned untouched.

        Raises:
            VerificationStorageError: If the verification store can't be written
        """
        record = VerificationRecord(
            record_id=uuid4().hex,
            entry_id=entry.entry_id,
            entry_sequence=entry.sequence,
            transaction_type=entry.transaction_type,
            original_hash=compute_entry_hash(entry),
            status=VerificationStatus.UNVERIFIED,
            created_at=utcnow(),
        )
        try:
            if self.records.insert_record(record):
                return record
            existing = self.records.get_record(entry.entry_id)
        except sqlite3.Error as e:
            raise VerificationStorageError(
                f"Could not store verification hash for {entry.entry_id}: {e}"
            ) from e
        return existing

    def verify_one(self, entry_id: str) -> VerificationResult:
        """Re-derive one entry's hash and compare it with the stored one.

        Args:
            entry_id: Ledger entry to check

        Returns:
            VerificationResult; missing_record when no hash was ever stored,
            missing_entry when the hash exists but the entry is gone
        """
        return self._verify(entry_id, self.ledger.get_entry_row(entry_id))

    def verify_batch(
        self,
        transaction_type: Optional[TransactionType] = None,
        page_size: Optional[int] = None,
        after_sequence: int = 0,
    ) -> BatchReport:
        """Verify one keyset page of entries after ``after_sequence``.

        Pass the returned ``last_sequence`` back in to continue.
        """
        page_size = page_size or self.batch_size
        rows = self.ledger.get_entry_rows_page(after_sequence, page_size, transaction_type)

        report = BatchReport(last_sequence=after_sequence)
        for row in rows:
            try:
                report.add(self._verify(row["entry_id"], row))
            except sqlite3.Error as e:
                report.errors += 1
                logger.error("verification_error", entry_id=row["entry_id"], error=str(e))
            report.last_sequence = row["sequence"]
        report.exhausted = len(rows) < page_size
        return report

    def verify_all(
        self,
        transaction_type: Optional[TransactionType] = None,
        page_size: Optional[int] = None,
    ) -> BatchReport:
        """Verify every entry, then every hash whose entry has disappeared."""
        page_size = page_size or self.batch_size
        report = BatchReport()

        after = 0
        while True:
            page = self.verify_batch(transaction_type, page_size, after)
            report.merge(page)
            after = page.last_sequence
            if page.exhausted:
                break

        after = 0
        while True:
            refs = self.records.entry_refs_after(after, page_size, transaction_type)
            if not refs:
                break
            present = self.ledger.existing_entry_ids([entry_id for _, entry_id in refs])
            for _, entry_id in refs:
                if entry_id not in present:
                    report.add(self._verify(entry_id, None))
            after = refs[-1][0]

        logger.info(
            "verification_sweep_complete",
            checked=report.checked,
            verified=report.verified,
            mismatches=report.mismatches,
            missing_records=report.missing_records,
            errors=report.errors,
        )
        return report

    def get_verification_stats(self) -> VerificationStats:
        return VerificationStats(
            total=self.records.count(),
            by_status=self.records.counts_by_status(),
            total_mismatch_count=self.records.total_mismatch_count(),
            by_type=self.records.counts_by_type(),
        )

    def get_anomalies(self, limit: int = 100) -> List[VerificationRecord]:
        """Records currently in mismatch, most often mismatched first."""
        return self.records.mismatches(limit)

    def _verify(self, entry_id: str, row: Optional[sqlite3.Row]) -> VerificationResult:
        record = self.records.get_record(entry_id)
        now = utcnow()

        if record is None:
            logger.warning("verification_record_missing", entry_id=entry_id)
            return VerificationResult(
                entry_id=entry_id,
                outcome=VerificationOutcome.MISSING_RECORD,
                current_hash=compute_row_hash(row) if row is not None else None,
            )

        if row is None:
            updated = self.records.record_observation(entry_id, None, False, now)
            logger.error("ledger_entry_missing", entry_id=entry_id, original_hash=record.original_hash)
            return VerificationResult(
                entry_id=entry_id,
                outcome=VerificationOutcome.MISSING_ENTRY,
                original_hash=record.original_hash,
                record=updated,
            )

        current = compute_row_hash(row)
        matched = current == record.original_hash
        updated = self.records.record_observation(entry_id, current, matched, now)
        if not matched:
            logger.error(
                "verification_mismatch",
                entry_id=entry_id,
                transaction_type=row["transaction_type"],
                original_hash=record.original_hash,
                current_hash=current,
                mismatch_count=updated.mismatch_count if updated else None,
            )
        return VerificationResult(
            entry_id=entry_id,
            outcome=VerificationOutcome.VERIFIED if matched else VerificationOutcome.MISMATCH,
            original_hash=record.original_hash,
            current_hash=current,
            record=updated,
        )
