"""
Reconciliation job.

Walks the whole ledger and reports anything that disagrees with itself:
hash mismatches, rows that no longer decode, entries whose snapshots
break their type's sign rule, cached aggregates and escrow balances that
have drifted from the rows they summarize, balances that no longer match
the post snapshot of the latest entry that moved them, and refunds whose
aggregates had to be clamped.

Findings are for an operator; nothing is corrected here.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from .errors import LedgerInvariantError
from .ledger import check_snapshot_invariants
from .verification import BatchReport, VerificationOutcome, VerificationService
from ..storage.models import TransactionType
from ..storage.repository import LedgerRepository, row_to_entry

logger = structlog.get_logger(__name__)

KIND_HASH_MISMATCH = "hash_mismatch"
KIND_MISSING_ENTRY = "missing_entry"
KIND_SNAPSHOT_INVARIANT = "snapshot_invariant"
KIND_CONTENT_AGGREGATE = "content_aggregate_drift"
KIND_USER_AGGREGATE = "user_aggregate_drift"
KIND_ESCROW_BALANCE = "escrow_balance_drift"
KIND_REFUND_CLAMPED = "refund_clamped"
KIND_UNDECODABLE = "undecodable_entry"
KIND_SPENDABLE_SNAPSHOT = "spendable_snapshot_drift"
KIND_BONUS_SNAPSHOT = "bonus_snapshot_drift"
KIND_CONTENT_SNAPSHOT = "content_snapshot_drift"


@dataclass(frozen=True)
class DriftFinding:
    kind: str
    subject_id: str
    stored: Optional[int] = None
    derived: Optional[int] = None
    detail: str = ""


@dataclass
class ReconciliationReport:
    verification: BatchReport
    entries_checked: int = 0
    findings: List[DriftFinding] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.findings

    def counts_by_kind(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for finding in self.findings:
            counts[finding.kind] = counts.get(finding.kind, 0) + 1
        return counts


def reconcile(
    repository: LedgerRepository,
    verification: VerificationService,
    page_size: int = 500,
) -> ReconciliationReport:
    """Run the full reconciliation sweep.

    Args:
        repository: Ledger store
        verification: Verification service over the same ledger
        page_size: Entries per page for both sweeps

    Returns:
        ReconciliationReport listing every finding
    """
    report = ReconciliationReport(verification=verification.verify_all(page_size=page_size))

    for result in report.verification.anomalies:
        kind = KIND_MISSING_ENTRY if result.outcome == VerificationOutcome.MISSING_ENTRY else KIND_HASH_MISMATCH
        report.findings.append(DriftFinding(
            kind=kind,
            subject_id=result.entry_id,
            detail=f"original={result.original_hash} current={result.current_hash}",
        ))

    for row in repository.iter_entry_rows(page_size):
        report.entries_checked += 1
        try:
            entry = row_to_entry(row)
        except (ValueError, TypeError) as e:
            report.findings.append(DriftFinding(kind=KIND_UNDECODABLE, subject_id=row["entry_id"], detail=str(e)))
            continue
        try:
            check_snapshot_invariants(entry)
        except (LedgerInvariantError, TypeError) as e:
            report.findings.append(DriftFinding(kind=KIND_SNAPSHOT_INVARIANT, subject_id=entry.entry_id, detail=str(e)))
        if entry.transaction_type == TransactionType.REFUND and entry.metadata.get("clamped"):
            clamped = entry.metadata["clamped"]
            report.findings.append(DriftFinding(
                kind=KIND_REFUND_CLAMPED,
                subject_id=entry.entry_id,
                stored=entry.amount,
                derived=entry.amount - max(clamped.values()),
                detail=", ".join(f"{name}={short}" for name, short in sorted(clamped.items())),
            ))

    for kind, rows in (
        (KIND_CONTENT_AGGREGATE, repository.content_aggregate_drift()),
        (KIND_USER_AGGREGATE, repository.user_aggregate_drift()),
        (KIND_ESCROW_BALANCE, repository.escrow_balance_drift()),
        (KIND_SPENDABLE_SNAPSHOT, repository.spendable_snapshot_drift()),
        (KIND_BONUS_SNAPSHOT, repository.bonus_snapshot_drift()),
        (KIND_CONTENT_SNAPSHOT, repository.content_snapshot_drift()),
    ):
        for subject_id, stored, derived in rows:
            report.findings.append(DriftFinding(kind=kind, subject_id=subject_id, stored=stored, derived=derived))

    if report.clean:
        logger.info("reconciliation_clean", entries=report.entries_checked)
    else:
        logger.warning("reconciliation_findings", entries=report.entries_checked, **report.counts_by_kind())
    return report
