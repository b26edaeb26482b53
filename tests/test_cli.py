"""
Unit tests for the atlas-metrics command line.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml

from atlas_metrics import cli
from atlas_metrics.analysis.results import ProjectMetricsResult
from atlas_metrics.base import CancellationToken
from atlas_metrics.maintenance.duplicate_cleanup import DuplicateCleanupUtility
from atlas_metrics.schemas import CollectionStats

from conftest import T0


@pytest.fixture(autouse=True)
def no_log_files():
    """Keep CLI runs from installing file handlers."""
    with patch("atlas_metrics.cli.setup_logging"):
        yield


@pytest.fixture
def credentials(monkeypatch):
    monkeypatch.setenv("ATLAS_PUBLIC_KEY", "pub")
    monkeypatch.setenv("ATLAS_PRIVATE_KEY", "priv")
    monkeypatch.setenv("ATLAS_METRICS_DSN", "postgresql://localhost/metrics")


def _fake_service(**attrs):
    service = MagicMock()
    service.close = AsyncMock()
    service.cancel_token = CancellationToken()
    for name, value in attrs.items():
        setattr(service, name, value)
    return service


class TestConfigCommands:
    """Test config generation and validation."""

    def test_generate_config(self, tmp_path, capsys):
        path = tmp_path / "atlas.yml"

        assert cli.main(["--config", str(path), "--generate-config"]) == 0

        assert yaml.safe_load(path.read_text())["collection"]["granularity"] == "PT1M"
        assert "Generated default configuration" in capsys.readouterr().out

    def test_validate_config(self, tmp_path, capsys):
        path = tmp_path / "atlas.yml"
        path.write_text(yaml.dump({"collection": {"granularity": "PT1M"}}))

        assert cli.main(["--config", str(path), "--validate-config"]) == 0
        assert "Configuration valid" in capsys.readouterr().out

    def test_validate_invalid_config(self, tmp_path, capsys):
        path = tmp_path / "atlas.yml"
        path.write_text(yaml.dump({"collection": {"granularity": "PT3M"}}))

        assert cli.main(["--config", str(path), "--validate-config"]) == 1
        assert "Configuration invalid" in capsys.readouterr().out

    def test_no_command_prints_help(self, tmp_path, capsys):
        assert cli.main(["--config", str(tmp_path / "missing.yml")]) == 1
        assert "usage:" in capsys.readouterr().out


class TestCollectCommand:
    """Test the collect subcommand."""

    def test_missing_credentials(self, tmp_path, capsys):
        assert cli.main(["--config", str(tmp_path / "missing.yml"), "collect"]) == 2
        assert "credentials" in capsys.readouterr().err

    def test_collect_once_prints_report(self, tmp_path, capsys, credentials):
        result = ProjectMetricsResult(project_name="prod", project_id="p1")
        result.add_measurement("CPU", 42.0, "h1:27017")
        service = _fake_service(
            collect_once=AsyncMock(return_value={"prod": result}),
            last_stats=CollectionStats(projects=1, points_collected=3, points_stored=2),
        )

        with patch("atlas_metrics.cli.HarvesterService", return_value=service) as service_cls:
            code = cli.main(["--config", str(tmp_path / "missing.yml"), "collect", "--projects", "prod"])

        assert code == 0
        service.collect_once.assert_awaited_once_with(["prod"])
        service.close.assert_awaited_once()
        config = service_cls.call_args.args[0]
        assert config.atlas.public_key == "pub"

        out = capsys.readouterr().out
        assert "Data points stored" in out
        assert "42.00" in out
        assert "h1:27017" in out

    def test_collect_only_flag(self, tmp_path, credentials):
        service = _fake_service(collect_once=AsyncMock(return_value={}), last_stats=CollectionStats())

        with patch("atlas_metrics.cli.HarvesterService", return_value=service) as service_cls:
            cli.main(["--config", str(tmp_path / "missing.yml"), "collect", "--collect-only"])

        assert service_cls.call_args.args[0].collection.collect_only

    def test_cancelled_collection_exits_130(self, tmp_path, capsys, credentials):
        service = _fake_service(
            collect_once=AsyncMock(return_value={}),
            last_stats=CollectionStats(projects=2, points_stored=4, cancelled=True),
        )

        with patch("atlas_metrics.cli.HarvesterService", return_value=service):
            code = cli.main(["--config", str(tmp_path / "missing.yml"), "collect"])

        assert code == 130
        service.close.assert_awaited_once()
        captured = capsys.readouterr()
        assert "Collection cancelled" in captured.err
        assert "Yes" in captured.out


class TestDuplicatesCommand:
    """Test the duplicates subcommands against an in-memory store."""

    def _run(self, tmp_path, store, *argv):
        service = _fake_service(open_cleanup=AsyncMock(return_value=DuplicateCleanupUtility(store)))
        with patch("atlas_metrics.cli.HarvesterService", return_value=service):
            return cli.main(["--config", str(tmp_path / "missing.yml"), "duplicates", *argv])

    def test_missing_dsn(self, tmp_path, store):
        assert self._run(tmp_path, store, "stats") == 2

    def test_stats(self, tmp_path, store, credentials, capsys):
        for _ in range(3):
            store.add_row(T0, 1.0)

        assert self._run(tmp_path, store, "stats") == 0

        out = capsys.readouterr().out
        assert "Duplicate groups" in out
        assert "Would be removed" in out

    def test_sample(self, tmp_path, store, credentials, capsys):
        for _ in range(2):
            store.add_row(T0, 1.0)

        assert self._run(tmp_path, store, "sample", "--limit", "1") == 0
        assert "h1:27017" in capsys.readouterr().out

    def test_detailed_sample(self, tmp_path, store, credentials, capsys):
        for _ in range(2):
            store.add_row(T0, 1.0)

        assert self._run(tmp_path, store, "sample", "--detailed") == 0

        out = capsys.readouterr().out
        assert "keep" in out
        assert "remove" in out

    def test_cleanup_defaults_to_dry_run(self, tmp_path, store, credentials, capsys):
        for _ in range(3):
            store.add_row(T0, 1.0)

        assert self._run(tmp_path, store, "cleanup") == 0

        assert len(store.rows) == 3
        assert "dry run" in capsys.readouterr().out

    def test_cleanup_execute(self, tmp_path, store, credentials):
        for _ in range(3):
            store.add_row(T0, 1.0)

        assert self._run(tmp_path, store, "cleanup", "--execute") == 0
        assert len(store.rows) == 1

    def test_missing_subcommand(self, tmp_path, store, credentials):
        assert self._run(tmp_path, store) == 1
