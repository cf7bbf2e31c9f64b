"""Pytest configuration and fixtures for downstream_sync tests."""

import tempfile
from pathlib import Path

import pytest

from helpers import commit_file, init_repo


class FakeDependencyTool:
    """Records every call instead of running go, make or bingo."""

    def __init__(self):
        self.versions: dict[str, str] = {}
        self.calls: list[tuple] = []

    def module_version(self, directory: Path, module: str) -> str:
        self.calls.append(("module_version", module))
        return self.versions[module]

    def regenerate(self, directory: Path) -> None:
        self.calls.append(("regenerate", Path(directory)))

    def replace(self, directory: Path, old: str, new: str) -> None:
        self.calls.append(("replace", old, new))
        with open(Path(directory) / "go.mod", "a") as f:
            f.write(f"replace {old} => {new}\n")

    def generate_manifests(self, directory: Path, target: str, makefile: str | None = None) -> None:
        self.calls.append(("generate_manifests", target, makefile))

    def bootstrap(self, directory: Path) -> None:
        self.calls.append(("bootstrap", Path(directory)))


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_tool():
    return FakeDependencyTool()


@pytest.fixture
def basic_repo(temp_dir: Path):
    """A repository with a single commit on main."""
    repo_path = temp_dir / "basic"
    repo = init_repo(repo_path)
    commit_file(repo, "README.md", "# Basic Repo\n", "Initial commit", when=1_700_000_000)
    yield repo_path
