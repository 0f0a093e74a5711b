"""Tests for coordinator configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from trustme_ci.config import (
    ENV_BASENAME,
    ENV_DELAY,
    ENV_DRY_RUN,
    ENV_VERBOSE,
    CoordinatorConfig,
    StateLayout,
)


class TestCoordinatorConfig:
    """Tests for CoordinatorConfig validation."""

    def test_defaults(self, tmp_path):
        """Test the documented defaults."""
        config = CoordinatorConfig(project_dir=tmp_path)
        assert config.basename == ".trustme"
        assert config.delay == 0
        assert not config.verbose
        assert not config.dry_run
        assert config.kill_grace == 0.1
        assert config.kill_poll_interval == 0.5
        assert config.kill_patience == 10
        assert config.preempt_rounds == 3

    def test_project_dir_made_absolute(self, tmp_path, monkeypatch):
        """Test relative project paths resolve against the CWD."""
        monkeypatch.chdir(tmp_path)
        config = CoordinatorConfig(project_dir=Path("sub"))
        assert config.project_dir.is_absolute()
        assert config.project_dir.name == "sub"

    def test_negative_delay_rejected(self, tmp_path):
        """Test that a negative debounce delay is invalid."""
        with pytest.raises(ValidationError):
            CoordinatorConfig(project_dir=tmp_path, delay=-1)

    @pytest.mark.parametrize("basename", ["", ".", "a/b"])
    def test_bad_basename_rejected(self, tmp_path, basename):
        """Test that the base name cannot escape the project directory."""
        with pytest.raises(ValidationError):
            CoordinatorConfig(project_dir=tmp_path, basename=basename)

    def test_frozen(self, tmp_path):
        """Test that config cannot be changed after construction."""
        config = CoordinatorConfig(project_dir=tmp_path)
        with pytest.raises(ValidationError):
            config.delay = 5


class TestStateLayout:
    """Tests for StateLayout."""

    def test_paths(self, tmp_path):
        """Test every state path shares the base name."""
        layout = CoordinatorConfig(project_dir=tmp_path).layout
        assert layout.lock_dir == tmp_path / ".trustme.lock"
        assert layout.kill_dir == tmp_path / ".trustme.kill"
        assert layout.pid_file == tmp_path / ".trustme.pid"
        assert layout.kill_bin == tmp_path / ".trustme.kill!"
        assert layout.out_file == tmp_path / ".trustme.log"
        assert layout.plugin_file == tmp_path / ".trustme.toml"

    def test_custom_basename(self, tmp_path):
        """Test that two base names never share a path."""
        a = StateLayout.for_base(tmp_path, ".a")
        b = StateLayout.for_base(tmp_path, ".b")
        assert not {a.lock_dir, a.pid_file} & {b.lock_dir, b.pid_file}


class TestFromEnv:
    """Tests for CoordinatorConfig.from_env."""

    def test_reads_environment(self, tmp_path):
        """Test TRUSTME_* variables are applied."""
        env = {
            ENV_DELAY: "2.5",
            ENV_VERBOSE: "true",
            ENV_BASENAME: ".ci",
            ENV_DRY_RUN: "1",
        }
        config = CoordinatorConfig.from_env(tmp_path, environ=env)
        assert config.delay == 2.5
        assert config.verbose
        assert config.basename == ".ci"
        assert config.dry_run

    def test_falsy_verbose(self, tmp_path):
        """Test that unrecognized values read as false."""
        config = CoordinatorConfig.from_env(tmp_path, environ={ENV_VERBOSE: "0"})
        assert not config.verbose

    def test_overrides_win(self, tmp_path):
        """Test explicit values beat the environment."""
        config = CoordinatorConfig.from_env(tmp_path, environ={ENV_DELAY: "2"}, delay=0.5)
        assert config.delay == 0.5

    def test_none_overrides_ignored(self, tmp_path):
        """Test that unset flags do not mask the environment."""
        config = CoordinatorConfig.from_env(
            tmp_path, environ={ENV_DELAY: "2"}, delay=None, verbose=None
        )
        assert config.delay == 2
        assert not config.verbose

    def test_bad_delay(self, tmp_path):
        """Test that garbage in the environment is reported."""
        with pytest.raises(ValidationError):
            CoordinatorConfig.from_env(tmp_path, environ={ENV_DELAY: "soon"})
