# ai_credit_guard/demo/seed_demo_data.py

from decimal import Decimal

from ai_credit_guard.core.ledger import CreditLedger
from ai_credit_guard.core.tracker import StreamingTracker
from ai_credit_guard.storage.db import DEFAULT_DB_PATH
from ai_credit_guard.storage.repository import SQLiteCreditStore, initialize_schema

DEMO_USER = "demo-user"

DEMO_STREAMS = [
    ("openai", "gpt-4o-mini", "Summarize the plot of Hamlet in three sentences.",
     ["Prince Hamlet seeks revenge ", "for his father's murder. ", "Nearly everyone dies."]),
    ("anthropic", "claude-3-5-haiku-20241022", "Write a haiku about ledgers.",
     ["Debits to the left, ", "credits settle on the right, ", "balance holds its breath."]),
]


def seed(db_path: str = DEFAULT_DB_PATH, grant: Decimal = Decimal("500")) -> CreditLedger:
    """Create a demo user and settle one streamed call per provider."""
    initialize_schema(db_path)
    store = SQLiteCreditStore(db_path)
    store.seed_default_pricing()

    ledger = CreditLedger(store)
    ledger.grant_credits(DEMO_USER, grant, "Demo grant")
    tracker = StreamingTracker(ledger)

    for provider, model, prompt, chunks in DEMO_STREAMS:
        started = tracker.start_tracking({
            "user_id": DEMO_USER,
            "content": prompt,
            "model": model,
            "provider": provider,
        })
        for chunk in chunks:
            tracker.update_with_chunk(started.tracker_id, chunk)
        tracker.complete_streaming(started.tracker_id, {"total_text": "".join(chunks)})

    # One abandoned stream, released without charge
    started = tracker.start_tracking({
        "user_id": DEMO_USER,
        "content": "This request is cancelled by the user.",
        "model": "gpt-4o",
        "provider": "openai",
    })
    tracker.cancel_streaming(started.tracker_id, "Demo cancellation")
    tracker.registry.close()
    return ledger


if __name__ == "__main__":
    demo_ledger = seed()
    print(f"Demo usage data inserted. Balance: {demo_ledger.store.get_balance(DEMO_USER)}")
