"""Pytest configuration and fixtures for CLI tests.

Every invocation runs against a per-test data directory and a config file
that turns off the flat quota estimate, so commands stay fast and never
touch the developer's real data.
"""

import pytest
import yaml
from click.testing import CliRunner


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def user_config(tmp_path):
    """User config file in the isolated XDG config home."""
    path = tmp_path / "xdg-config" / "remindervault" / "config.yaml"
    path.parent.mkdir(parents=True)
    path.write_text(yaml.safe_dump({"estimate_quota": False, "probe_timeout": 5.0}))
    return path


@pytest.fixture
def cli_runner(data_dir, user_config):
    """Click CLI test runner bound to the test's data directory and owner."""

    class RemindervaultCliRunner(CliRunner):
        def invoke(self, args, **kwargs):  # type: ignore[override]
            from remindervault.cli.main import cli

            base = ["--data-dir", str(data_dir), "--owner", "alice"]
            return super().invoke(cli, base + list(args), **kwargs)

    return RemindervaultCliRunner()


@pytest.fixture
def add_reminder(cli_runner):
    """Add a reminder through the CLI and return its id."""

    def add(title="Team Meeting", *extra):
        result = cli_runner.invoke(["add", title, "--due", "2099-01-15 09:30", *extra])
        assert result.exit_code == 0, result.output
        return result.output.strip().split()[-1]

    return add
