"""
Git operations for the syncer.

Provides a wrapper around git operations using GitPython, covering the
primitives the engine needs: structured log, fetch, rev-parse, ancestry checks,
branch reset, cherry-pick, merge with a strategy, and committing with trailers.
"""

import logging
import re
from pathlib import Path
from typing import Iterable

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .errors import GitOperationFailure
from .models import PRETTY_FORMAT, Commit, parse_commit_record, parse_commit_records

logger = logging.getLogger(__name__)

# Reported on stdout/stderr by git when a pick turns out to be already applied
_EMPTY_PICK_MARKERS = ("The previous cherry-pick is now empty", "nothing to commit")


def command_output(error: GitCommandError) -> str:
    """Combined stdout/stderr of a failed git command."""
    parts = []
    for stream in (error.stdout, error.stderr):
        if not stream:
            continue
        text = stream.strip()
        # GitPython wraps captured streams as "  stdout: '...'"
        text = re.sub(r"^(stdout|stderr): '(.*)'$", r"\2", text, flags=re.S)
        parts.append(text)
    return "\n".join(parts)


class GitRepository:
    """Wrapper around a git repository for sync operations."""

    def __init__(self, path: Path):
        """Initialize repository wrapper."""
        self.path = Path(path).resolve()
        try:
            self.repo = Repo(self.path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise ValueError(f"Not a valid git repository: {self.path}") from e

    def _git(self, command: str, *args: str, stage: str | None = None) -> str:
        """Run a git subcommand, translating failures into GitOperationFailure."""
        logger.debug("git %s %s (in %s)", command, " ".join(args), self.path)
        try:
            output = getattr(self.repo.git, command.replace("-", "_"))(*args)
        except GitCommandError as e:
            raise GitOperationFailure(
                f"git {command} failed in {self.path}",
                stage=stage,
                output=command_output(e),
            ) from e
        logger.debug("git %s output: %s", command, output)
        return output

    # --- inspection -----------------------------------------------------

    def get_current_branch(self) -> str:
        """Get the current branch name."""
        return self.repo.active_branch.name

    def get_current_commit(self) -> str:
        """Get the current HEAD commit hash."""
        return self.repo.head.commit.hexsha

    def current_ref(self) -> str:
        """Current branch name, or the HEAD commit when detached."""
        if self.repo.head.is_detached:
            return self.get_current_commit()
        return self.get_current_branch()

    def rev_parse(self, ref: str) -> str:
        """Resolve a ref to a full commit hash."""
        return self._git("rev-parse", ref).strip()

    def try_rev_parse(self, ref: str) -> str | None:
        """Resolve a ref, returning None when it does not exist."""
        try:
            return self.repo.git.rev_parse("--verify", "--quiet", ref).strip() or None
        except GitCommandError:
            return None

    def show_commit(self, ref: str, repo: str = "") -> Commit:
        """Capture a single commit in the structured display format."""
        output = self._git("show", ref, PRETTY_FORMAT, "--quiet")
        return parse_commit_record(output.strip("\n"), repo=repo)

    def log_commits(self, *args: str, repo: str = "") -> list[Commit]:
        """Run git log with the structured format and parse every line."""
        output = self._git("log", PRETTY_FORMAT, *args)
        return parse_commit_records(output, repo=repo)

    def log_bodies(self, *args: str) -> str:
        """Return full commit messages of a git log query."""
        return self._git("log", "--pretty=%B", *args)

    def is_ancestor(self, commit: str, ref: str) -> bool:
        """Check whether commit is reachable from ref."""
        try:
            self.repo.git.merge_base("--is-ancestor", commit, ref)
            return True
        except GitCommandError:
            return False

    def merge_base(self, left: str, right: str) -> str:
        return self._git("merge-base", left, right).strip()

    def find_superseding_commit(self, reference: str, upto: str) -> str | None:
        """
        Find a commit reachable from `upto` whose subject ends with `reference`.

        Used to tell whether an upstream pull request that was cherry-picked
        downstream already landed upstream, e.g. reference "(#1234)".
        """
        output = self._git(
            "log",
            "--fixed-strings",
            "--grep",
            reference,
            "--pretty=format:%H %s",
            upto,
        )
        for line in output.splitlines():
            commit_hash, _, subject = line.partition(" ")
            if subject.rstrip().endswith(reference):
                return commit_hash
        return None

    def conflicted_paths(self) -> list[str]:
        """Paths with unresolved conflicts in the index."""
        try:
            output = self.repo.git.diff("--name-only", "--diff-filter=U")
        except GitCommandError:
            return []
        return [line for line in output.splitlines() if line.strip()]

    def has_staged_changes(self) -> bool:
        """Check if there are staged changes."""
        status = self._git("status", "--porcelain")
        # Staged changes show as first character being non-space and non-?
        for line in status.splitlines():
            if line and len(line) >= 2:
                index_status = line[0]
                if index_status in "AMDRC":
                    return True
        return False

    def file_exists_at_commit(self, commit_hash: str, file_path: str) -> bool:
        """Check if a file exists at a specific commit."""
        try:
            commit = self.repo.commit(commit_hash)
            _ = commit.tree / file_path
            return True
        except KeyError:
            return False

    def is_tracked(self, path: str) -> bool:
        try:
            return bool(self.repo.git.ls_files("--", path).strip())
        except GitCommandError:
            return False

    # --- mutation -------------------------------------------------------

    def set_committer(self, name: str | None, email: str | None) -> None:
        """Set user.name/user.email, leaving existing values untouched."""
        reader = self.repo.config_reader()
        for section_key, value in (("name", name), ("email", email)):
            if not value:
                continue
            if reader.has_option("user", section_key):
                continue
            with self.repo.config_writer() as writer:
                writer.set_value("user", section_key, value)

    def fetch(self, remote: str, *refs: str, tags: bool = False) -> str:
        """Fetch from a remote URL; the result is available as FETCH_HEAD."""
        args = ["--tags"] if tags else []
        self._git("fetch", *args, remote, *refs, stage="fetch")
        return self.rev_parse("FETCH_HEAD")

    def checkout(self, ref: str) -> None:
        self._git("checkout", ref)

    def force_branch(self, name: str, commit: str) -> None:
        """Create or reset a branch to point at commit."""
        self._git("branch", name, "--force", commit)

    def merge(self, ref: str, strategy: str, extra_args: Iterable[str] = ()) -> None:
        self._git("merge", "--no-edit", "--strategy", strategy, ref, *extra_args, stage="merge")

    def cherry_pick(self, commit: str, *args: str) -> None:
        """
        Cherry-pick a commit.

        Raises GitCommandError untouched, since callers inspect the failure to
        decide whether it is a conflict shape they know how to recover.
        """
        logger.debug("git cherry-pick %s %s", " ".join(args), commit)
        self.repo.git.cherry_pick(*args, commit)

    def cherry_pick_continue(self) -> None:
        with self.repo.git.custom_environment(GIT_EDITOR="true"):
            self._git("cherry-pick", "--continue", stage="cherry-pick")

    def cherry_pick_skip(self) -> None:
        self._git("cherry-pick", "--skip", stage="cherry-pick")

    def cherry_pick_in_progress(self) -> bool:
        return (Path(self.repo.git_dir) / "CHERRY_PICK_HEAD").exists()

    def cherry_pick_abort(self) -> None:
        """Abort the cherry-pick in progress, if any, restoring the pre-pick HEAD."""
        if not self.cherry_pick_in_progress():
            return
        self._git("cherry-pick", "--abort", stage="cherry-pick")

    def is_empty_pick(self, output: str) -> bool:
        return any(marker in output for marker in _EMPTY_PICK_MARKERS)

    def checkout_side(self, side: str, paths: Iterable[str]) -> None:
        """Resolve conflicted paths with --ours or --theirs."""
        self._git("checkout", f"--{side}", "--", *paths, stage="conflict-recovery")

    def stage_files(self, file_paths: Iterable[str], force: bool = False) -> None:
        """Stage multiple files for commit."""
        file_paths = list(file_paths)
        if not file_paths:
            return
        args = ["--force"] if force else []
        self._git("add", *args, "--", *file_paths)

    def remove_paths(self, file_paths: Iterable[str]) -> None:
        """Remove paths (recursively), ignoring paths that do not match."""
        self._git("rm", "-r", "-f", "--ignore-unmatch", "--", *file_paths)

    def commit(
        self,
        message: str | None = None,
        paths: Iterable[str] = (),
        amend: bool = False,
        allow_empty: bool = False,
        trailers: Iterable[str] = (),
        extra_args: Iterable[str] = (),
    ) -> str:
        """Create (or amend) a commit and return the new HEAD hash."""
        cmd_args: list[str] = []
        if amend:
            cmd_args.append("--amend")
        if message is None:
            cmd_args.append("--no-edit")
        else:
            cmd_args.extend(["--message", message])
        if allow_empty:
            cmd_args.append("--allow-empty")
        for trailer in trailers:
            cmd_args.extend(["--trailer", trailer])
        cmd_args.extend(extra_args)
        paths = list(paths)
        if paths:
            cmd_args.extend(["--", *paths])
        self._git("commit", *cmd_args, stage="commit")
        return self.repo.head.commit.hexsha

    def push(self, remote_url: str, local_ref: str, remote_branch: str, force: bool = True) -> None:
        """Push a local ref to a branch on a remote URL."""
        args = ["--force"] if force else []
        self.repo.git.push(*args, remote_url, f"{local_ref}:refs/heads/{remote_branch}")
