"""Tests for the command line interface."""

import os
from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner

from convergence.cli import cli

CATALOG = """\
kind: Plan
metadata:
  name: database
spec:
  revisions:
    - name: database-v1
      version: 0.0.1
    - name: database-v2
      version: v0.0.10
---
kind: Revision
metadata:
  name: cache-v1
spec:
  plan:
    name: cache
    revision: 1.2.0
  configuration:
    module: https://github.com/example/terraform-cache
---
kind: Plan
metadata:
  name: empty
"""

CONFIGURATIONS = """\
kind: Configuration
metadata:
  name: quiet
  namespace: apps
  generation: 1
spec:
  module: https://github.com/example/terraform-bucket
  enableDriftDetection: true
status:
  conditions:
    - type: TerraformPlan
      status: "True"
      reason: Ready
      observedGeneration: 1
      lastTransitionTime: "2024-06-01T00:00:00Z"
    - type: TerraformApply
      status: "True"
      reason: Ready
      observedGeneration: 1
      lastTransitionTime: "2024-06-01T00:00:00Z"
---
kind: Configuration
metadata:
  name: manual
  namespace: apps
spec:
  module: https://github.com/example/terraform-bucket
"""


def write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.write_text(content)
    return path


class TestPlanLatest:
    """Tests for `plan latest`."""

    def test_lists_latest(self, tmp_path: Path) -> None:
        """Each plan shows its highest revision."""
        result = CliRunner().invoke(cli, ["plan", "latest", str(write(tmp_path, "catalog.yaml", CATALOG))])

        assert result.exit_code == 0, result.output
        assert result.output.splitlines() == [
            "cache: 1.2.0 (cache-v1)",
            "database: v0.0.10 (database-v2)",
            "empty: no revisions",
        ]

    def test_invalid_version_fails(self, tmp_path: Path) -> None:
        """A plan with a non-semver revision makes the command fail."""
        manifest = write(
            tmp_path,
            "bad.yaml",
            "kind: Plan\nmetadata:\n  name: broken\nspec:\n  revisions:\n    - name: r\n      version: BAD\n",
        )

        result = CliRunner().invoke(cli, ["plan", "latest", str(manifest)])

        assert result.exit_code == 1
        assert "invalid revision versions" in result.output

    def test_empty_manifest(self, tmp_path: Path) -> None:
        """Nothing to show is an error."""
        result = CliRunner().invoke(cli, ["plan", "latest", str(write(tmp_path, "none.yaml", "---\n"))])

        assert result.exit_code == 1
        assert "No plans or revisions" in result.output


class TestDriftCheck:
    """Tests for `drift check`."""

    def test_admission(self, tmp_path: Path) -> None:
        """Quiet configurations are admitted, others name the gate."""
        manifest = write(tmp_path, "configs.yaml", CONFIGURATIONS)

        result = CliRunner().invoke(
            cli, ["drift", "check", str(manifest), "--threshold", "0.9", "--now", "2024-06-01T06:00:00"]
        )

        assert result.exit_code == 0, result.output
        assert "apps/quiet: admitted" in result.output
        assert "apps/manual: deferred (disabled-or-deleting)" in result.output

    def test_recent_transition(self, tmp_path: Path) -> None:
        """A short quiet period defers the configuration."""
        manifest = write(tmp_path, "configs.yaml", CONFIGURATIONS)

        result = CliRunner().invoke(cli, ["drift", "check", str(manifest), "--now", "2024-06-01T01:00:00Z"])

        assert "apps/quiet: deferred (plan-recent)" in result.output

    def test_transition_time_without_offset(self, tmp_path: Path) -> None:
        """Transition times without an offset are evaluated as UTC."""
        naive = CONFIGURATIONS.replace("2024-06-01T00:00:00Z", "2024-06-01T00:00:00")
        manifest = write(tmp_path, "configs.yaml", naive)

        result = CliRunner().invoke(cli, ["drift", "check", str(manifest), "--now", "2024-06-01T01:00:00Z"])

        assert result.exit_code == 0, result.output
        assert "apps/quiet: deferred (plan-recent)" in result.output

    def test_invalid_now(self, tmp_path: Path) -> None:
        """A malformed --now is rejected."""
        manifest = write(tmp_path, "configs.yaml", CONFIGURATIONS)

        result = CliRunner().invoke(cli, ["drift", "check", str(manifest), "--now", "yesterday"])

        assert result.exit_code == 1
        assert "Invalid --now" in result.output


class TestConfigCommand:
    """Tests for `config`."""

    def test_shows_environment(self) -> None:
        """The effective configuration is printed as YAML."""
        with patch.dict(os.environ, {"DRIFT_THRESHOLD": "0.3"}, clear=True):
            result = CliRunner().invoke(cli, ["config"])

        assert result.exit_code == 0, result.output
        assert "driftThreshold: 0.3" in result.output

    def test_invalid_environment(self) -> None:
        """Configuration errors become CLI errors."""
        with patch.dict(os.environ, {"DRIFT_THRESHOLD": "2"}, clear=True):
            result = CliRunner().invoke(cli, ["config"])

        assert result.exit_code == 1
        assert "DRIFT_THRESHOLD" in result.output
