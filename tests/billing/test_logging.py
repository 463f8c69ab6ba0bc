"""
Tests for structured logging configuration.
"""

import json
import logging

import pytest
import structlog

from dotmac.billing_core.logging import setup_logging
from dotmac.billing_core.settings import Settings


@pytest.fixture
def configured_logging():
    setup_logging(Settings())
    yield
    structlog.reset_defaults()


@pytest.mark.unit
class TestSetupLogging:
    def test_json_entries_carry_service_and_bound_context(self, configured_logging, caplog):
        caplog.set_level(logging.INFO)

        with structlog.contextvars.bound_contextvars(pass_id="pass_1"):
            structlog.get_logger("billing.test").info("lifecycle.renewed", amount=10000)

        entry = json.loads(caplog.records[-1].getMessage())
        assert entry["event"] == "lifecycle.renewed"
        assert entry["service"] == "billing-core"
        assert entry["pass_id"] == "pass_1"
        assert entry["amount"] == 10000
        assert entry["level"] == "info"
        assert "timestamp" in entry

    def test_below_level_is_filtered(self, configured_logging, caplog):
        caplog.set_level(logging.WARNING)

        structlog.get_logger("billing.test").info("lifecycle.quiet")

        assert caplog.records == []

    def test_entries_go_to_stderr(self, monkeypatch, capsys):
        monkeypatch.setattr(logging.root, "handlers", [])
        monkeypatch.setattr(logging.root, "level", logging.root.level)
        setup_logging(Settings())
        try:
            structlog.get_logger("billing.test").warning("lifecycle.loud", pass_id="pass_2")
        finally:
            structlog.reset_defaults()

        captured = capsys.readouterr()
        assert captured.out == ""
        assert json.loads(captured.err.strip().splitlines()[-1])["event"] == "lifecycle.loud"
