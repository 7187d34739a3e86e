"""Tests for logging setup and configuration."""

import logging
from pathlib import Path

import pytest

from core.logging.context import get_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import (
    NOISY_LOGGERS,
    get_log_file_path,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestGetLogFilePath:

    def test_builds_path_with_domain_and_stage(self):
        path = get_log_file_path(Path("logs"), domain="challenges", stage="ingestion")

        assert path.parts[:2] == ("logs", "challenges")
        assert path.name.startswith("challenges_ingestion_")
        assert path.suffix == ".log"

    def test_builds_path_without_domain(self):
        path = get_log_file_path(Path("logs"))

        assert path.parts[0] == "logs"
        assert path.name.startswith("pipeline_")

    def test_includes_instance_id(self):
        path = get_log_file_path(Path("logs"), domain="challenges", stage="ingestion", instance_id="2")
        assert path.name.startswith("challenges_ingestion_2_")


class TestSetupLogging:

    def test_stdout_only_mode_uses_single_handler(self, tmp_path):
        setup_logging(stage="ingestion", domain="challenges", log_dir=tmp_path, log_to_stdout=True)

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert list(tmp_path.iterdir()) == []

    def test_file_mode_creates_log_file(self, tmp_path):
        setup_logging(stage="ingestion", domain="challenges", log_dir=tmp_path)

        root = logging.getLogger()
        assert len(root.handlers) == 2
        assert any(isinstance(h.formatter, ConsoleFormatter) for h in root.handlers)
        assert list((tmp_path / "challenges").rglob("*.log"))

    def test_sets_log_context(self, tmp_path):
        setup_logging(
            stage="ingestion",
            domain="challenges",
            worker_id="w-1",
            log_dir=tmp_path,
            log_to_stdout=True,
        )

        ctx = get_log_context()
        assert ctx["stage"] == "ingestion"
        assert ctx["domain"] == "challenges"
        assert ctx["worker_id"] == "w-1"

    def test_suppresses_noisy_loggers(self, tmp_path):
        setup_logging(log_dir=tmp_path, log_to_stdout=True)

        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
