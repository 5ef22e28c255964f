from __future__ import annotations

import json
import textwrap
from datetime import datetime, timedelta, timezone

import pytest
from click.testing import CliRunner

from cdnlat import __version__
from cdnlat.cli import main
from cdnlat.models import CampaignResult, EndpointResult
from cdnlat.stats import summarize
from conftest import make_sample

STARTED = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        textwrap.dedent(
            f"""
            domain: edge.example.com
            test_count: 4
            interval: 0s
            endpoints:
              - name: edge-a
                ip: 203.0.113.10
                protocol: h2
            output:
              dir: {tmp_path / "out"}
              enable_log: true
              enable_json: true
            """
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def fake_run(monkeypatch):
    seen = []

    async def run(settings, quiet):
        seen.append((settings, quiet))
        endpoint = settings.endpoints[0]
        samples = [make_sample(i, 100.0 + i, origin_time_ms=30.0) for i in range(1, settings.rounds + 1)]
        return CampaignResult(
            settings=settings,
            started_at=STARTED,
            finished_at=STARTED + timedelta(seconds=1),
            results=[EndpointResult(endpoint, samples, summarize(endpoint, samples))],
        )

    monkeypatch.setattr("cdnlat.cli._run", run)
    return seen


def test_run_writes_enabled_reports_and_log(config_file, fake_run, tmp_path) -> None:
    result = CliRunner().invoke(main, [str(config_file), "--quiet"])

    assert result.exit_code == 0, result.output
    settings, quiet = fake_run[0]
    assert quiet is True
    assert settings.rounds == 4

    reports = list((tmp_path / "out" / "reports").glob("report_*.json"))
    assert len(reports) == 1
    data = json.loads(reports[0].read_text(encoding="utf-8"))
    assert data["summaries"][0]["endpoint"] == "edge-a"
    assert not list((tmp_path / "out" / "reports").glob("*.html"))

    logs = list((tmp_path / "out" / "logs").glob("*.log"))
    assert len(logs) == 1
    assert "Domain: edge.example.com" in logs[0].read_text(encoding="utf-8")


def test_command_line_overrides(config_file, fake_run, tmp_path) -> None:
    result = CliRunner().invoke(
        main,
        [str(config_file), "-q", "-n", "2", "-t", "1.5", "--no-json", "--csv", "--no-log-file"],
    )

    assert result.exit_code == 0, result.output
    settings, _ = fake_run[0]
    assert settings.rounds == 2
    assert settings.timeout == 1.5
    assert not settings.output.enable_json
    assert settings.output.enable_csv
    assert not settings.output.enable_log

    assert list((tmp_path / "out" / "reports").glob("report_*.csv"))
    assert not (tmp_path / "out" / "logs").exists()


def test_missing_config_exits_with_error(tmp_path) -> None:
    result = CliRunner().invoke(main, [str(tmp_path / "missing.yaml")])

    assert result.exit_code == 1
    assert "Configuration file not found" in result.output


def test_non_positive_rounds_rejected(config_file, fake_run) -> None:
    result = CliRunner().invoke(main, [str(config_file), "-n", "0"])

    assert result.exit_code == 1
    assert not fake_run


def test_version() -> None:
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
