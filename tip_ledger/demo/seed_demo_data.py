# tip_ledger/demo/seed_demo_data.py

from typing import Any, Dict

import structlog

from tip_ledger.core.events import TipLedger
from tip_ledger.storage.models import OwnershipShare

logger = structlog.get_logger(__name__)

DEMO_MARKER_ACCOUNT = "demo-alice"


def seed_demo_data(ledger: TipLedger) -> Dict[str, Any]:
    """Populate a fresh ledger with a small party's worth of activity.

    Covers every transaction type, a registered and an unregistered payee,
    a refund and a partial escrow payout. Running it twice is a no-op.

    Returns:
        Summary of what was written, empty if the demo data already exists
    """
    if ledger.repository.get_account(DEMO_MARKER_ACCOUNT) is not None:
        logger.info("demo_data_already_seeded")
        return {}

    ledger.register_account("demo-alice", "alice")
    ledger.register_account("demo-bob", "bob")
    ledger.register_account("demo-nova", "Nova Lines")
    ledger.register_session("demo-party", "Friday Listening Party")

    ledger.register_content(
        "demo-track-1",
        "Midnight Drive",
        [OwnershipShare(payee_name="Nova Lines", percentage=100, user_id="demo-nova")],
    )
    ledger.register_content(
        "demo-track-2",
        "Harbour Lights (cover)",
        [
            OwnershipShare(payee_name="Nova Lines", percentage=60, user_id="demo-nova"),
            OwnershipShare(payee_name="The Unsigned", percentage=40, channel_id="UC-demo-unsigned"),
        ],
    )

    ledger.on_external_settlement("demo-alice", 2000, "demo-settlement-alice-1")
    ledger.on_external_settlement("demo-bob", 1000, "demo-settlement-bob-1")
    ledger.on_bonus_granted("demo-bob", 100, "Welcome bonus", admin_actor="demo-admin")

    ledger.on_tip_placed("demo-alice", "demo-track-1", "demo-party", 500)
    ledger.on_tip_placed("demo-bob", "demo-track-2", "demo-party", 300)
    refunded = ledger.on_tip_placed("demo-alice", "demo-track-2", "demo-party", 200)
    ledger.on_tip_refunded("demo-alice", refunded.entry.reference_id)

    ledger.on_payout_approved("demo-nova", 400, "demo-payout-1")

    summary = {
        "accounts": 3,
        "content_items": 2,
        "entries": 8,
        "global_aggregate": ledger.ledger.global_aggregate(),
    }
    logger.info("demo_data_seeded", **summary)
    return summary


if __name__ == "__main__":
    seed_demo_data(TipLedger.from_config())
    print("Demo ledger data inserted")
