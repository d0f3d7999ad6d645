"""Unit tests for structured logging configuration."""

import json
import logging

import pytest
import structlog

from resumable_agent.platform.observability.logging import configure_logging, get_logger, mask_secrets


@pytest.fixture
def restore_logging():
    """Restore structlog and root logger state after a test reconfigures them."""
    root = logging.getLogger()
    level = root.level
    yield
    structlog.reset_defaults()
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
    root.setLevel(level)


class TestMaskSecrets:
    """Tests for the mask_secrets processor."""

    def test_masks_token(self):
        """Tokens keep a short prefix and their length."""
        value = "rt1." + "x" * 100
        event = mask_secrets(None, "info", {"event": "checkpoint", "token": value})
        assert event["token"] == f"rt1.xxxx...({len(value)} chars)"

    def test_masks_bytes_secret(self):
        event = mask_secrets(None, "info", {"token_secret": b"0123456789"})
        assert event["token_secret"] == "<10 bytes>"

    def test_leaves_other_keys(self):
        event = mask_secrets(None, "info", {"event": "run_finished", "run_id": "run_1", "api_key": None})
        assert event == {"event": "run_finished", "run_id": "run_1", "api_key": None}


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_json_output(self, capsys, restore_logging):
        """Events are rendered as JSON with bound run identifiers and masked tokens."""
        configure_logging("INFO", json_output=True)
        log = get_logger("tests.logging").bind(run_id="run_1")

        log.info("checkpoint_issued", token="rt1.abcdefghijklmnop.signature")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "checkpoint_issued"
        assert record["run_id"] == "run_1"
        assert record["level"] == "info"
        assert record["token"].startswith("rt1.abcd...")
        assert "signature" not in line

    def test_level_filters(self, capsys, restore_logging):
        configure_logging("WARNING", json_output=True)
        get_logger("tests.logging.level").info("hidden")
        assert "hidden" not in capsys.readouterr().out

    def test_stdlib_logging_routed(self, capsys, restore_logging):
        configure_logging("INFO", json_output=True)
        logging.getLogger("tests.stdlib").warning("plain %s", "message")

        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["event"] == "plain message"
        assert record["logger"] == "tests.stdlib"
