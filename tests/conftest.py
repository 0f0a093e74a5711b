"""Pytest fixtures for trustme-ci tests."""

import os
import subprocess
import sys
import textwrap
import time
from pathlib import Path

import pytest

# Add src to path for imports
SRC_DIR = os.path.join(os.path.dirname(__file__), "..", "src")
sys.path.insert(0, SRC_DIR)

from trustme_ci.config import CoordinatorConfig  # noqa: E402
from trustme_ci.utils.output import OutputLog  # noqa: E402

VICTIM_SCRIPT = textwrap.dedent(
    """
    import os, signal, sys, time

    record, journal, lock_dir, mode = sys.argv[1:5]

    def on_cancel(signum, frame):
        if lock_dir != "-" and os.path.isdir(lock_dir):
            os.rmdir(lock_dir)
        with open(journal, "a") as fh:
            fh.write(f"{os.getpid()}\\n")
        os.remove(record)
        sys.exit(1)

    if mode == "cooperative":
        signal.signal(signal.SIGUSR1, on_cancel)
    else:
        signal.signal(signal.SIGUSR1, signal.SIG_IGN)

    with open(record + ".tmp", "w") as fh:
        fh.write(f"{os.getpid()}\\n")
    os.replace(record + ".tmp", record)
    time.sleep(60)
    """
)


def subprocess_env() -> dict[str, str]:
    """Environment for child invocations: src importable, no stray knobs."""
    env = {
        k: v
        for k, v in os.environ.items()
        if not k.startswith(("TRUSTME_", "DUBS_TRUST_ME_"))
    }
    src = os.path.abspath(SRC_DIR)
    env["PYTHONPATH"] = src + (os.pathsep + env["PYTHONPATH"] if env.get("PYTHONPATH") else "")
    env["LOG_LEVEL"] = "WARNING"
    return env


def dead_pid() -> int:
    """Return the pid of a process that has already exited and been reaped."""
    out = subprocess.run(
        [sys.executable, "-c", "import os; print(os.getpid())"],
        capture_output=True,
        text=True,
        check=True,
    )
    return int(out.stdout.strip())


@pytest.fixture
def config(tmp_path):
    """Coordinator config with short waits, rooted in a temp project."""
    return CoordinatorConfig(
        project_dir=tmp_path,
        kill_grace=0.0,
        kill_poll_interval=0.05,
        kill_patience=40,
        kill_slot_interval=0.01,
        kill_slot_patience=3,
    )


@pytest.fixture
def output(config):
    """Output log inside the temp project."""
    return OutputLog(config.layout.out_file)


@pytest.fixture
def spawn_victim(tmp_path):
    """Start a process that writes its pid into a record file.

    ``mode="cooperative"`` removes the record (and the lock dir, if given)
    on SIGUSR1, journaling its own pid first; ``mode="hang"`` ignores it.
    """
    script = tmp_path / "victim.py"
    script.write_text(VICTIM_SCRIPT)
    journal = tmp_path / "deletions.journal"
    procs: list[subprocess.Popen] = []

    def spawn(record: Path, mode: str = "cooperative", lock_dir: Path | None = None):
        proc = subprocess.Popen(
            [sys.executable, str(script), str(record), str(journal),
             str(lock_dir) if lock_dir else "-", mode],
        )
        procs.append(proc)
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if record.exists() and record.read_text().strip() == str(proc.pid):
                return proc
            time.sleep(0.01)
        raise RuntimeError("victim never wrote its record")

    spawn.journal = journal
    yield spawn

    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait()
