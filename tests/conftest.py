from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def run_git(cwd: Path, *cmd: str) -> str:
    completed = subprocess.run(
        ["git", *cmd],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@dataclass(slots=True)
class RemoteRepo:
    """Bare remote seeded with a ``main`` branch, plus the seed checkout."""

    seed: Path
    bare: Path

    @property
    def url(self) -> str:
        return self.bare.as_uri()

    def show(self, branch: str, path: str) -> str:
        return run_git(self.bare, "show", f"{branch}:{path}")

    def branches(self) -> list[str]:
        output = run_git(self.bare, "for-each-ref", "--format=%(refname:short)", "refs/heads")
        return [line.strip() for line in output.splitlines() if line.strip()]


@pytest.fixture()
def remote_repo(tmp_path: Path) -> RemoteRepo:
    """Create a seed repository and a bare clone that acts as the remote."""

    seed = tmp_path / "seed"
    seed.mkdir()
    run_git(seed, "init")
    run_git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(seed, "config", "user.email", "seed@example.com")
    run_git(seed, "config", "user.name", "Seed Author")

    (seed / "README.md").write_text("# Demo\nold line\n", encoding="utf-8")
    (seed / "src").mkdir()
    (seed / "src" / "app.py").write_text(
        "def greet(name):\n    return 'hello ' + name\n",
        encoding="utf-8",
    )
    (seed / "obsolete.txt").write_text("remove me\n", encoding="utf-8")
    run_git(seed, "add", ".")
    run_git(seed, "commit", "-m", "Initial state")

    bare = tmp_path / "remote.git"
    run_git(tmp_path, "clone", "--bare", str(seed), str(bare))
    return RemoteRepo(seed=seed, bare=bare)


@pytest.fixture()
def work_root(tmp_path: Path) -> Path:
    root = tmp_path / "work"
    root.mkdir()
    return root
