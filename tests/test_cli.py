"""
Tests for the CLI interface.
"""

import os
import shutil
import tempfile

import yaml
from typer.testing import CliRunner

from ai_credit_guard.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from ai_credit_guard.core.ledger import CreditLedger
from ai_credit_guard.core.pricing import DEFAULT_PRICING
from ai_credit_guard.storage.models import ReservationContext
from ai_credit_guard.storage.repository import SQLiteCreditStore

runner = CliRunner()


class TestCLI:
    """Test CLI commands against a temporary database."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "credits.db")

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _invoke(self, *args):
        return runner.invoke(app, ["--db", self.db_path, *args])

    def _init(self):
        result = self._invoke("init")
        assert result.exit_code == EXIT_CODE_PASS
        return result

    def test_no_command(self):
        result = self._invoke()
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init(self):
        result = self._init()
        assert "Database initialized successfully" in result.output
        assert f"({len(DEFAULT_PRICING)} pricing rows)" in result.output

    def test_init_without_pricing(self):
        result = self._invoke("init", "--no-seed-pricing")
        assert result.exit_code == EXIT_CODE_PASS
        assert "(0 pricing rows)" in result.output

    def test_init_applies_config_pricing(self):
        config_path = os.path.join(self.temp_dir, "credits.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"pricing": [{
                "provider": "openai",
                "model": "custom-model",
                "input_price_per_1k": "0.001",
                "output_price_per_1k": "0.002",
            }]}, f)

        result = self._invoke("--config", config_path, "init")
        assert result.exit_code == EXIT_CODE_PASS
        assert f"({len(DEFAULT_PRICING) + 1} pricing rows)" in result.output

        result = self._invoke("pricing", "--provider", "openai")
        assert result.exit_code == EXIT_CODE_PASS
        assert "custom-model" in result.output

    def test_grant_and_balance(self):
        self._init()

        result = self._invoke("grant", "alice", "100", "--reason", "Signup bonus")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Granted 100 credits to alice" in result.output
        assert "New balance: 100" in result.output

        result = self._invoke("balance", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Credits for alice" in result.output
        assert "100" in result.output

    def test_grant_invalid_amount(self):
        self._init()
        result = self._invoke("grant", "alice", "lots")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid amount" in result.output

    def test_grant_zero_amount(self):
        self._init()
        result = self._invoke("grant", "alice", "0")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Grant amount must be positive" in result.output

    def test_balance_unknown_user(self):
        self._init()
        result = self._invoke("balance", "nobody")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "User not found" in result.output

    def test_estimate(self):
        self._init()
        result = self._invoke("estimate", "Hello world", "--model", "gpt-4o", "--provider", "openai")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Input tokens: 9" in result.output
        assert "Estimated output tokens: 7" in result.output
        assert "tiktoken" in result.output
        assert "Credits to reserve (x1.2): 1" in result.output

    def test_estimate_unknown_model(self):
        self._init()
        result = self._invoke("estimate", "Hello", "-m", "gpt-9", "-p", "openai")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No pricing for model gpt-9" in result.output

    def test_reservations(self):
        self._init()
        self._invoke("grant", "alice", "50")

        result = self._invoke("reservations", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No active reservations for alice" in result.output

        ledger = CreditLedger(SQLiteCreditStore(self.db_path))
        ledger.reserve_credits("alice", 3, ReservationContext(model="gpt-4o", provider="openai"))

        result = self._invoke("reservations", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Active reservations for alice" in result.output

        result = self._invoke("balance", "alice")
        assert "47" in result.output

    def test_usage(self):
        self._init()
        self._invoke("grant", "alice", "10")

        result = self._invoke("usage", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage for alice" in result.output
        assert "Requests: 0" in result.output

    def test_usage_unknown_user(self):
        self._init()
        result = self._invoke("usage", "nobody")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_cleanup(self):
        self._init()
        result = self._invoke("cleanup", "--batch-size", "10")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Expired 0 reservation(s)" in result.output

    def test_pricing(self):
        self._init()
        result = self._invoke("pricing")
        assert result.exit_code == EXIT_CODE_PASS
        assert "gpt-4o-mini" in result.output
        assert "gemini-1.5-pro" in result.output

    def test_pricing_before_init(self):
        result = self._invoke("pricing")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No pricing found" in result.output

    def test_verbose_flag(self):
        result = runner.invoke(app, ["--db", self.db_path, "--verbose", "init"])
        assert result.exit_code == EXIT_CODE_PASS
