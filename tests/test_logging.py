"""Tests for loguru sink configuration."""

import sys

import pytest
from loguru import logger

from agent_mediation.logging import configure_logging


@pytest.fixture(autouse=True)
def restore_default_sink():
    """Put loguru back to a plain stderr sink after each test."""
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_configure_logging_writes_file_sink(tmp_path):
    log_file = tmp_path / "mediation.log"

    configure_logging("warning", str(log_file))
    logger.debug("debug reaches the file sink")
    logger.remove()

    assert "debug reaches the file sink" in log_file.read_text()


def test_configure_logging_without_file(capsys):
    configure_logging("INFO", "")
    logger.info("to stderr")
    logger.debug("filtered out")

    err = capsys.readouterr().err
    assert "to stderr" in err
    assert "filtered out" not in err
