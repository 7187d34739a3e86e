"""Tests for the pipeline command line entry point."""

import json
import logging
from unittest.mock import patch

import pytest

from pipeline.__main__ import main, parse_args
from pipeline.common.dummy import InMemoryBroker


@pytest.fixture(autouse=True)
def stdout_logging(monkeypatch):
    monkeypatch.setenv("LOG_TO_STDOUT", "true")
    monkeypatch.setenv("CHALLENGE_STORE_BACKEND", "memory")
    root = logging.getLogger()
    handlers = list(root.handlers)
    yield
    root.handlers[:] = handlers


class TestParseArgs:
    def test_defaults_to_run(self):
        args = parse_args([])
        assert args.command == "run"
        assert args.instance_id is None

    def test_publish_parses_metadata_json(self):
        args = parse_args(
            ["publish", "--external-id", "c1", "--name", "Launch", "--metadata", '{"season": 3}']
        )
        assert args.command == "publish"
        assert args.metadata == {"season": 3}
        assert args.description is None

    def test_publish_requires_name(self):
        with pytest.raises(SystemExit):
            parse_args(["publish", "--external-id", "c1"])


class TestMain:
    def test_missing_config_file_exits_with_2(self, tmp_path):
        assert main(["--config", str(tmp_path / "missing.yaml"), "run"]) == 2

    def test_publish_uses_broker(self, capsys):
        broker = InMemoryBroker()

        with patch("pipeline.__main__.AmqpBroker", return_value=broker):
            code = main(["publish", "--external-id", "c1", "--name", "Launch"])

        assert code == 0
        [published] = broker.published
        assert json.loads(published.body)["external_id"] == "c1"
        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        printed = [line for line in lines if "schema_version" in line]
        assert printed == [json.loads(published.body)]

    def test_publish_invalid_challenge_exits_with_2(self):
        with patch("pipeline.__main__.AmqpBroker", return_value=InMemoryBroker()):
            assert main(["publish", "--external-id", "c1", "--name", ""]) == 2

    def test_setup_topology(self):
        broker = InMemoryBroker()

        with patch("pipeline.__main__.AmqpBroker", return_value=broker):
            assert main(["setup-topology"]) == 0

        assert broker.topology_declared
