"""
Shared fixtures: a temporary ledger database and a controllable clock.
"""

import os
import re
import shutil
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from ai_credit_guard.core import tokenizer
from ai_credit_guard.core.ledger import CreditLedger
from ai_credit_guard.core.pricing import ModelPricing
from ai_credit_guard.core.recovery import ErrorRecovery
from ai_credit_guard.storage.repository import SQLiteCreditStore, initialize_schema

# Round numbers make settlement arithmetic easy to check by hand:
# credits = input_tokens * 0.001 + output_tokens * 0.0001
SCENARIO_PRICING = ModelPricing("openai", "scenario-model", Decimal("0.001"), Decimal("0.0001"))


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def no_sleep(seconds):
    pass


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def store(db_path):
    store = SQLiteCreditStore(db_path)
    store.seed_default_pricing()
    store.upsert_pricing([SCENARIO_PRICING])
    return store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(store, clock):
    ledger = CreditLedger(store, recovery=ErrorRecovery(sleep=no_sleep), clock=clock)
    ledger.grant_credits("alice", 100)
    return ledger


class WordEncoding:
    """Stand-in tiktoken encoding: one token per word or punctuation mark."""

    name = "words"

    def encode(self, text, disallowed_special="all"):
        return re.findall(r"\w+|[^\w\s]", text)


@pytest.fixture(autouse=True)
def offline_encoding(monkeypatch):
    # tiktoken downloads its BPE files on first use
    monkeypatch.setattr(tokenizer, "load_encoding", lambda model: WordEncoding())
