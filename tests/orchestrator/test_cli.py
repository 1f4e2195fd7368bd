"""
Tests for the command line entry point.
"""

from core.config import AppConfig
from event_publishing.transport import InMemoryTransport
from orchestrator.cli import build_store, build_transport, create_parser, main, validate_args
from storage.kv_store import InMemoryKeyValueStore


class TestParser:
    """Argument parsing and validation."""

    def test_defaults(self):
        args = create_parser().parse_args([])

        assert args.config == "config.yaml"
        assert args.dry_run is False
        assert args.no_api is False
        assert args.shutdown_timeout is None
        assert args.log_level is None

    def test_options(self):
        args = create_parser().parse_args([
            "-c", "prod.yaml", "--dry-run", "--no-api",
            "--shutdown-timeout", "2.5", "--log-level", "DEBUG", "--log-format", "json",
        ])

        assert args.config == "prod.yaml"
        assert args.dry_run is True
        assert args.no_api is True
        assert args.shutdown_timeout == 2.5
        assert args.log_format == "json"
        assert validate_args(args) == []

    def test_non_positive_timeout_rejected(self):
        args = create_parser().parse_args(["--shutdown-timeout", "0"])
        assert validate_args(args) == ["--shutdown-timeout must be positive"]


class TestMain:
    """Exit codes before the event loop starts."""

    def test_missing_config_exits_1(self, tmp_path, capsys):
        assert main(["--config", str(tmp_path / "missing.yaml")]) == 1
        assert "Config file not found" in capsys.readouterr().err

    def test_invalid_args_exit_1(self):
        assert main(["--shutdown-timeout", "-1"]) == 1

    def test_invalid_config_exits_1(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("networks:\n  ethereum:\n    rpc_url: http://x\n")
        assert main(["--config", str(path)]) == 1


class TestWiring:
    """Dry-run stand-ins."""

    def test_dry_run_uses_in_memory_backends(self):
        config = AppConfig()
        assert isinstance(build_store(config, dry_run=True), InMemoryKeyValueStore)
        assert isinstance(build_transport(config, dry_run=True), InMemoryTransport)
