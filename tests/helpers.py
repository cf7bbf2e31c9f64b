"""Helpers for building throwaway git repositories in tests."""

from pathlib import Path

from git import Repo


def configure(repo: Repo) -> Repo:
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()
    return repo


def init_repo(path: Path, branch: str = "main") -> Repo:
    """Initialize an empty repository whose first branch is `branch`."""
    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(path)
    repo.git.symbolic_ref("HEAD", f"refs/heads/{branch}")
    return configure(repo)


def clone_repo(source: Path, dest: Path) -> Repo:
    return configure(Repo.clone_from(str(source), str(dest)))


def commit_files(repo: Repo, files: dict[str, str | None], message: str, when: int | None = None) -> str:
    """
    Write (or delete, when the content is None) files and commit them.

    `when` is a unix timestamp used for both author and committer date.
    """
    root = Path(repo.working_tree_dir)
    for name, content in files.items():
        target = root / name
        if content is None:
            repo.git.rm("-r", "--", name)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        repo.git.add("--", name)
    env = {}
    if when is not None:
        env = {"GIT_AUTHOR_DATE": f"@{when} +0000", "GIT_COMMITTER_DATE": f"@{when} +0000"}
    with repo.git.custom_environment(**env):
        repo.git.commit("--allow-empty", "-m", message)
    return repo.head.commit.hexsha


def commit_file(repo: Repo, name: str, content: str, message: str, when: int | None = None) -> str:
    return commit_files(repo, {name: content}, message, when)
