"""
Replay of detected work onto downstream repositories.

MirrorReplayer adopts a new upstream target while keeping the downstream tree
(merge with the "ours" strategy), cherry-picks the carry commits, regenerates
vendored dependencies and manifests, and writes the bookkeeping record.
MonorepoReplayer cherry-picks upstream commits into their staging subtree and
records each one with Upstream-repository/Upstream-commit trailers.

Only a few conflict shapes are resolved automatically. Anything else is handed
to the conflict handler, or fails the run when there is none.
"""

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Mapping, Sequence

from git.exc import GitCommandError

from .config import MirrorSettings, MonorepoSettings, RemoteLayout
from .detection import UPSTREAM_COMMIT_TRAILER, UPSTREAM_REPOSITORY_TRAILER
from .errors import UnrecoverableReplayConflict
from .git_ops import GitRepository, command_output
from .models import BookkeepingRecord, Commit, SynchronizationTarget
from .tools import DependencyTool

logger = logging.getLogger(__name__)

DEPENDENCY_MANIFESTS = ("go.mod", "go.sum", "vendor/modules.txt")
MODULE_FILES = ("vendor", "go.mod", "go.sum")


class ReplayStage(str, Enum):
    NOT_STARTED = "not-started"
    TARGET_ADOPTED = "target-adopted"
    CONFLICT_PAUSED = "conflict-paused"
    CARRIES_APPLIED = "carries-applied"
    ARTIFACTS_REGENERATED = "artifacts-regenerated"
    BOOKKEEPING_WRITTEN = "bookkeeping-written"
    DONE = "done"


class ConflictResolution(str, Enum):
    ABORT = "abort"
    CONTINUE = "continue"


@dataclass(frozen=True)
class ConflictContext:
    """What the operator needs to know to resolve a failed cherry-pick."""

    repo: str
    path: Path
    commit: Commit
    output: str
    conflicted_paths: tuple[str, ...] = ()


ConflictHandler = Callable[[ConflictContext], ConflictResolution]


@dataclass
class ReplayResult:
    """Outcome of replaying one repository."""

    repo: str
    stage: ReplayStage = ReplayStage.NOT_STARTED
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    recovered: dict[str, str] = field(default_factory=dict)  # commit -> recovery


def is_dependency_manifest(path: str) -> bool:
    return any(path == m or path.endswith("/" + m) for m in DEPENDENCY_MANIFESTS)


class _Replayer:
    """Shared cherry-pick and commit plumbing."""

    def __init__(
        self,
        repo: GitRepository,
        name: str,
        tool: DependencyTool,
        commit_args: Iterable[str] = (),
        conflict_handler: ConflictHandler | None = None,
    ):
        self.repo = repo
        self.name = name
        self.tool = tool
        self.commit_args = list(commit_args)
        self.conflict_handler = conflict_handler
        self.result = ReplayResult(name)

    @property
    def stage(self) -> ReplayStage:
        return self.result.stage

    def _advance(self, stage: ReplayStage) -> None:
        logger.debug("%s: %s -> %s", self.name, self.result.stage.value, stage.value)
        self.result.stage = stage

    def _pick(self, commit: Commit, *args: str) -> bool:
        """
        Cherry-pick a commit, recovering known conflict shapes.

        Returns False when the pick was skipped as redundant.
        """
        try:
            self.repo.cherry_pick(commit.hash, *args)
            return True
        except GitCommandError as e:
            output = command_output(e)

        paths = self.repo.conflicted_paths()
        recovery = self._recover(commit, output, paths)
        if recovery is not None:
            logger.warning("%s: recovered cherry-pick of %s (%s)", self.name, commit.short_hash, recovery)
            self.result.recovered[commit.hash] = recovery
            if recovery == "redundant":
                self.result.skipped.append(commit.hash)
                return False
            return True

        self._pause_or_fail(commit, output, paths)
        return True

    def _recover(self, commit: Commit, output: str, paths: list[str]) -> str | None:
        if not paths and self.repo.is_empty_pick(output):
            self.repo.cherry_pick_skip()
            return "redundant"

        if len(paths) == 1 and is_dependency_manifest(paths[0]) and "deleted in" in output:
            path = paths[0]
            # Take the incoming side; regeneration rewrites the file afterwards
            if f"{path} deleted in HEAD" in output:
                self.repo.stage_files([path], force=True)
            else:
                self.repo.remove_paths([path])
            self.repo.cherry_pick_continue()
            return "dependency-manifest"

        return None

    def _pause_or_fail(self, commit: Commit, output: str, paths: list[str]) -> None:
        if self.conflict_handler is None:
            self._abandon()
            raise UnrecoverableReplayConflict(
                f"{self.name}: cherry-pick of {commit.hash} ({commit.message}) failed",
                stage="cherry-pick",
                output=output,
            )
        previous = self.result.stage
        self._advance(ReplayStage.CONFLICT_PAUSED)
        context = ConflictContext(self.name, self.repo.path, commit, output, tuple(paths))
        if self.conflict_handler(context) == ConflictResolution.ABORT:
            self._abandon()
            raise UnrecoverableReplayConflict(
                f"{self.name}: cherry-pick of {commit.hash} aborted by operator",
                stage="cherry-pick",
                output=output,
            )
        logger.info("%s: operator resolved %s, continuing", self.name, commit.short_hash)
        self._advance(previous)

    def _abandon(self) -> None:
        """Leave the clone without a cherry-pick in progress so it can be replayed again."""
        logger.info("%s: aborting the in-progress cherry-pick", self.name)
        self.repo.cherry_pick_abort()

    def _existing(self, paths: Iterable[str]) -> list[str]:
        return [p for p in paths if (self.repo.path / p).exists() or self.repo.is_tracked(p)]

    def _commit_paths(self, paths: Iterable[str], message: str) -> str | None:
        """Force-add paths (vendor dirs are often gitignored) and commit them."""
        existing = self._existing(paths)
        if not existing:
            return None
        self.repo.stage_files(existing, force=True)
        if not self.repo.has_staged_changes():
            logger.info("%s: nothing to commit for %r", self.name, message)
            return None
        commit_hash = self.repo.commit(message, paths=existing, extra_args=self.commit_args)
        self.result.created.append(commit_hash)
        return commit_hash


class MirrorReplayer(_Replayer):
    """Brings one mirrored downstream repository to its synchronization target."""

    def __init__(
        self,
        repo: GitRepository,
        name: str,
        settings: MirrorSettings,
        remotes: RemoteLayout,
        tool: DependencyTool,
        commit_args: Iterable[str] = (),
        delay_manifest_generation: bool = False,
        delay_go_mod: bool = False,
        conflict_handler: ConflictHandler | None = None,
    ):
        super().__init__(repo, name, tool, commit_args, conflict_handler)
        self.settings = settings
        self.remotes = remotes
        self.delay_manifest_generation = delay_manifest_generation
        self.delay_go_mod = delay_go_mod

    @property
    def overlay(self) -> Path:
        return self.repo.path / self.settings.overlay_dir

    @property
    def manifests_dir(self) -> str:
        return f"{self.settings.overlay_dir}/manifests"

    @property
    def makefile(self) -> str:
        return f"{self.settings.overlay_dir}/Makefile"

    def replay(self, target: SynchronizationTarget) -> ReplayResult:
        """Run the replay state machine to completion."""
        head = self.repo.rev_parse(self.settings.branch)
        if target.is_noop(head):
            logger.info("%s: already at %s with nothing to carry", self.name, head[:7])
            self._write_record(target)
            self._advance(ReplayStage.DONE)
            return self.result

        self._adopt_target(target)
        self._apply_carries(target.additional)
        self._regenerate_artifacts()
        self._write_bookkeeping(target)
        self._advance(ReplayStage.DONE)
        return self.result

    def _adopt_target(self, target: SynchronizationTarget) -> None:
        # Both parents are recorded; the tree stays the downstream one
        branch, working = self.settings.branch, self.settings.working_branch
        logger.info("%s: adopting upstream %s on %s", self.name, target.target.short_hash, working)
        self.repo.checkout(branch)
        self.repo.force_branch(working, target.target.hash)
        self.repo.checkout(working)
        self.repo.merge(branch, "ours", self.commit_args)
        self._advance(ReplayStage.TARGET_ADOPTED)

    def _apply_carries(self, carries: Sequence[Commit]) -> None:
        for index, commit in enumerate(carries, start=1):
            logger.info(
                "%s: carrying %s (%d/%d): %s",
                self.name, commit.short_hash, index, len(carries), commit.message,
            )
            if self._pick(commit):
                self._refresh_overlay()
        self._advance(ReplayStage.CARRIES_APPLIED)

    def _recover(self, commit: Commit, output: str, paths: list[str]) -> str | None:
        recovery = super()._recover(commit, output, paths)
        if recovery is not None:
            return recovery
        prefix = self.manifests_dir + "/"
        if paths and all(p.startswith(prefix) for p in paths):
            # Keep the target side; manifests are regenerated right after
            for path in paths:
                if self.repo.file_exists_at_commit("HEAD", path):
                    self.repo.checkout_side("ours", [path])
                    self.repo.stage_files([path], force=True)
                else:
                    self.repo.remove_paths([path])
            self.repo.cherry_pick_continue()
            return "artifact-manifest"
        return None

    def _abandon(self) -> None:
        super()._abandon()
        # The partial working branch is rebuilt from scratch on the next run
        self.repo.checkout(self.settings.branch)

    def _refresh_overlay(self) -> None:
        """Regenerate the overlay module and manifests into the picked commit."""
        if not self.overlay.is_dir():
            return
        if not self.delay_go_mod:
            self.tool.regenerate(self.overlay)
        if self.delay_manifest_generation:
            self.repo.remove_paths([self.manifests_dir])
        else:
            self.tool.generate_manifests(self.repo.path, "manifests", makefile=self.makefile)
        overlay = f"{self.settings.overlay_dir}/."
        self.repo.stage_files([overlay], force=True)
        self.repo.commit(paths=[overlay], amend=True, extra_args=self.commit_args)

    def _regenerate_artifacts(self) -> None:
        add_files = list(MODULE_FILES)
        self.tool.regenerate(self.repo.path)
        for module_dir in self.settings.extra_module_dirs.get(self.name, []):
            if not (self.repo.path / module_dir).is_dir():
                logger.warning("%s: module directory %s does not exist", self.name, module_dir)
                continue
            self.tool.regenerate(self.repo.path / module_dir)
            add_files.extend(f"{module_dir}/{f}" for f in MODULE_FILES)
        if self.delay_go_mod and self.overlay.is_dir():
            self.tool.regenerate(self.overlay)
            add_files.extend(f"{self.settings.overlay_dir}/{f}" for f in MODULE_FILES)
        self._commit_paths(add_files, "UPSTREAM: <drop>: go mod vendor")

        stripped = self._existing(self.settings.strip_paths)
        if stripped:
            self.repo.remove_paths(stripped)
            for path in stripped:
                leftover = self.repo.path / path
                if leftover.is_dir():
                    shutil.rmtree(leftover)
            if self.repo.has_staged_changes():
                commit_hash = self.repo.commit(
                    "UPSTREAM: <drop>: remove upstream GitHub configuration",
                    paths=stripped,
                    extra_args=self.commit_args,
                )
                self.result.created.append(commit_hash)

        if self.delay_manifest_generation and self.overlay.is_dir():
            self.tool.generate_manifests(self.repo.path, "manifests", makefile=self.makefile)
            self._commit_paths([self.manifests_dir], "UPSTREAM: <drop>: Generate manifests")
        self._advance(ReplayStage.ARTIFACTS_REGENERATED)

    def _record(self, target: SynchronizationTarget) -> BookkeepingRecord:
        return BookkeepingRecord(
            upstream_org=self.remotes.upstream_org,
            upstream_repo=self.name,
            upstream_branch=self.settings.upstream_branch,
            expected_merge_base=target.target.hash,
        )

    def _write_record(self, target: SynchronizationTarget) -> None:
        path = self.repo.path / self.settings.bookkeeping_file
        path.write_text(self._record(target).to_yaml())

    def _write_bookkeeping(self, target: SynchronizationTarget) -> None:
        self._write_record(target)
        self._commit_paths(
            [self.settings.bookkeeping_file], "UPSTREAM: <drop>: configure the commit-checker"
        )
        self._advance(ReplayStage.BOOKKEEPING_WRITTEN)


def rewrite_dependency_replacements(
    repo: GitRepository,
    replacements: Mapping[str, str],
    remotes: RemoteLayout,
    tool: DependencyTool,
    commit_args: Iterable[str] = (),
) -> str | None:
    """
    Point the primary's go.mod at the downstream forks of its dependencies.

    Only call this once every dependency in `replacements` is published at the
    given commit; returns the new commit hash, or None if nothing changed.
    """
    if not replacements:
        return None
    for name, commit in replacements.items():
        logger.info("rewriting %s to %s@%s", name, remotes.downstream_module(name), commit[:7])
        tool.replace(
            repo.path,
            remotes.upstream_module(name),
            f"{remotes.downstream_module(name)}@{commit}",
        )
        tool.regenerate(repo.path)

    paths = [p for p in MODULE_FILES if (repo.path / p).exists()]
    repo.stage_files(paths, force=True)
    if not repo.has_staged_changes():
        logger.info("no go.mod changes to commit, continuing")
        return None
    return repo.commit("UPSTREAM: <drop>: rewrite go mod", paths=paths, extra_args=list(commit_args))


class MonorepoReplayer(_Replayer):
    """Cherry-picks upstream commits into their staging subtree."""

    def __init__(
        self,
        repo: GitRepository,
        settings: MonorepoSettings,
        tool: DependencyTool,
        commit_args: Iterable[str] = (),
        delay_manifest_generation: bool = False,
        delay_go_mod: bool = False,
        conflict_handler: ConflictHandler | None = None,
    ):
        super().__init__(repo, repo.path.name, tool, commit_args, conflict_handler)
        self.settings = settings
        self.delay_manifest_generation = delay_manifest_generation
        self.delay_go_mod = delay_go_mod

    def subtree(self, component: str) -> str:
        return f"{self.settings.staging_dir}/{component}"

    def replay(self, commits: Sequence[Commit]) -> ReplayResult:
        """Replay commits oldest first, each amended with provenance trailers."""
        for index, commit in enumerate(commits, start=1):
            logger.info("cherry-picking commit %d/%d: %s %s", index, len(commits), commit.repo, commit.short_hash)
            self._apply(commit)
        if commits and (self.delay_go_mod or self.delay_manifest_generation):
            self._regenerate_batch(commits)
        self._advance(ReplayStage.DONE)
        return self.result

    def _recover(self, commit: Commit, output: str, paths: list[str]) -> str | None:
        # Components keep no vendor directory of their own under staging/;
        # the files must leave the working tree too, since the subtree is force-added
        if "vendor/modules.txt deleted in HEAD and modified in" in output:
            self.repo.remove_paths([f"{self.subtree(commit.repo)}/vendor"])
            self.repo.cherry_pick_continue()
            return "nested-vendor"
        return super()._recover(commit, output, paths)

    def _apply(self, commit: Commit) -> None:
        subtree = self.subtree(commit.repo)
        if not self._pick(
            commit, "--allow-empty", "--keep-redundant-commits", f"-Xsubtree={subtree}"
        ):
            # Nothing was committed, so there is no HEAD of ours to amend
            return
        self._advance(ReplayStage.CARRIES_APPLIED)

        if not self.delay_go_mod:
            self.tool.regenerate(self.repo.path)
            self.tool.regenerate(self.repo.path / subtree)
        if not self.delay_manifest_generation:
            self.tool.generate_manifests(self.repo.path, self.settings.manifest_target)
        self._advance(ReplayStage.ARTIFACTS_REGENERATED)

        paths = self._existing([subtree, *self.settings.artifact_paths])
        self.repo.stage_files(paths, force=True)
        commit_hash = self.repo.commit(
            amend=True,
            allow_empty=True,
            paths=paths,
            trailers=[
                f"{UPSTREAM_REPOSITORY_TRAILER}: {commit.repo}",
                f"{UPSTREAM_COMMIT_TRAILER}: {commit.hash}",
            ],
            extra_args=self.commit_args,
        )
        self.result.created.append(commit_hash)
        self._advance(ReplayStage.BOOKKEEPING_WRITTEN)

    def _regenerate_batch(self, commits: Sequence[Commit]) -> None:
        components = sorted({c.repo for c in commits})
        if self.delay_go_mod:
            self.tool.regenerate(self.repo.path)
            for component in components:
                self.tool.regenerate(self.repo.path / self.subtree(component))
        if self.delay_manifest_generation:
            self.tool.generate_manifests(self.repo.path, self.settings.manifest_target)
        paths = [*(self.subtree(c) for c in components), *self.settings.artifact_paths]
        self._commit_paths(paths, "Regenerate vendored dependencies and manifests")
