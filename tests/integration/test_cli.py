"""
Tests for the scflow command line interface.
"""

import ast
import json

import pandas as pd
import pytest
from typer.testing import CliRunner

from scflow.cli import app
from scflow.config.settings import get_settings
from scflow.config.workflow_config import WorkflowConfig
from scflow.version import __version__

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, small_workflow_config):
    path = tmp_path / "workflow.json"
    small_workflow_config.save(path)
    return path


class TestRunCommand:
    def test_writes_results(self, tenx_dir, config_file, tmp_path):
        output_dir = tmp_path / "results"

        result = runner.invoke(
            app,
            [
                "run",
                str(tenx_dir),
                "--config",
                str(config_file),
                "--output-dir",
                str(output_dir),
                "--log-level",
                "WARNING",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Done" in result.output
        clusters = pd.read_csv(output_dir / "clusters.csv", index_col=0)
        assert list(clusters.columns) == ["identity"]
        assert clusters["identity"].nunique() >= 3
        markers = pd.read_csv(output_dir / "all_markers.csv")
        assert {"gene", "cluster", "avg_log2FC", "p_val_adj"} <= set(markers.columns)
        assert (output_dir / "top_markers.csv").exists()
        ast.parse((output_dir / "analysis.py").read_text())

    def test_no_script(self, tenx_dir, config_file, tmp_path):
        output_dir = tmp_path / "results"

        result = runner.invoke(
            app,
            [
                "run",
                str(tenx_dir),
                "-c",
                str(config_file),
                "-o",
                str(output_dir),
                "--no-script",
                "-l",
                "ERROR",
            ],
        )

        assert result.exit_code == 0, result.output
        assert not (output_dir / "analysis.py").exists()

    def test_missing_config_file(self, tenx_dir, tmp_path):
        result = runner.invoke(
            app, ["run", str(tenx_dir), "--config", str(tmp_path / "missing.json")]
        )

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_corrupted_config_file(self, tenx_dir, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")

        result = runner.invoke(
            app, ["run", str(tenx_dir), "-c", str(path), "-o", str(tmp_path / "out")]
        )

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "Corrupted workflow config" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert not (tmp_path / "out").exists()

    def test_log_level_from_settings(self, tenx_dir, config_file, tmp_path, monkeypatch):
        levels = []
        monkeypatch.setattr(get_settings(), "LOG_LEVEL", "ERROR")
        monkeypatch.setattr(
            "scflow.cli.configure_cli_logging",
            lambda level, console=None: levels.append(level),
        )

        result = runner.invoke(
            app, ["run", str(tenx_dir), "-c", str(config_file), "-o", str(tmp_path / "out")]
        )

        assert result.exit_code == 0, result.output
        assert levels == ["ERROR"]

    def test_stage_failure(self, tenx_dir, tmp_path, small_workflow_config):
        small_workflow_config.qc.max_percent_mt = 0.0
        path = tmp_path / "strict.json"
        small_workflow_config.save(path)

        result = runner.invoke(
            app, ["run", str(tenx_dir), "-c", str(path), "-o", str(tmp_path / "out")]
        )

        assert result.exit_code == 1
        assert "No cells pass" in result.output
        assert not (tmp_path / "out").exists()

    def test_missing_data(self, tmp_path):
        result = runner.invoke(app, ["run", str(tmp_path / "nowhere")])
        assert result.exit_code != 0


class TestQcCommand:
    def test_reports_metrics(self, tenx_dir, raw_counts):
        result = runner.invoke(app, ["qc", str(tenx_dir)])

        assert result.exit_code == 0, result.output
        assert f"{raw_counts.n_obs} cells, 8 mitochondrial genes" in result.output
        assert "n_genes_by_counts" in result.output
        assert "pct_counts_mt" in result.output

    def test_incomplete_directory(self, tenx_dir):
        (tenx_dir / "matrix.mtx").unlink()

        result = runner.invoke(app, ["qc", str(tenx_dir)])

        assert result.exit_code == 1
        assert "Incomplete 10X directory" in result.output


class TestConfigCommand:
    def test_prints_defaults(self):
        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["clustering"]["resolution"] == 0.5
        assert data["qc"]["max_features"] == 2500

    def test_writes_file(self, tmp_path):
        path = tmp_path / "defaults.json"
        result = runner.invoke(app, ["config", "--output", str(path)])

        assert result.exit_code == 0
        assert WorkflowConfig.load(path) == WorkflowConfig()


def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert f"scflow {__version__}" in result.output
