"""
Run orchestration for both topologies.

A run detects (or loads) its work items, optionally records them in the
resumability file, then stops at a summary (summarize), replays them locally
(synchronize), or replays and publishes them as a pull request (publish).
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import Mode, SyncConfig
from .detection import (
    detect_monorepo_commits,
    detect_mirror_targets,
    determine_downstream_head,
    is_commit_missing,
)
from .errors import PublishFailure, SyncError
from .git_ops import GitRepository
from .models import (
    Commit,
    SynchronizationTarget,
    load_commits,
    load_targets,
    save_commits,
    save_targets,
)
from .publish import (
    MIRROR_TITLE,
    MONOREPO_TITLE,
    CodeHostingClient,
    GitHubPublisher,
    mirror_labels,
    mirror_pr_body,
    monorepo_labels,
    monorepo_pr_body,
)
from .replay import (
    ConflictHandler,
    MirrorReplayer,
    MonorepoReplayer,
    ReplayResult,
    rewrite_dependency_replacements,
)
from .tools import DependencyTool, GoToolchain

logger = logging.getLogger(__name__)

console = Console()


@dataclass
class SyncResult:
    """Result of a synchronization run."""

    mode: Mode
    success: bool = True
    replays: dict[str, ReplayResult] = field(default_factory=dict)
    pull_requests: dict[str, int | None] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def commits_created(self) -> int:
        return sum(len(r.created) for r in self.replays.values())


def commits_table(title: str, commits: Sequence[Commit], repo_base: str) -> Table:
    """Render commits the way the summary and PR comments list them."""
    table = Table(title=title)
    table.add_column("Date", style="green", width=20)
    table.add_column("Commit", style="cyan")
    table.add_column("Author", style="yellow", width=25)
    table.add_column("Message", style="white")
    for commit in commits:
        message = commit.message[:60]
        if len(commit.message) > 60:
            message += "..."
        table.add_row(
            commit.date.strftime("%Y-%m-%d %H:%M:%S"),
            f"{repo_base}{commit.repo}@{commit.short_hash}",
            commit.author,
            message,
        )
    return table


def print_summary(result: SyncResult) -> None:
    console.print("\n[bold]Sync Summary:[/bold]")
    if result.success:
        console.print(f"  [green]✓ {result.mode.value}: created {result.commits_created} commits[/green]")
    else:
        console.print(f"  [red]✗ {result.mode.value} failed[/red]")

    for name, replay in result.replays.items():
        console.print(
            f"  {name}: {replay.stage.value}, {len(replay.created)} created, "
            f"{len(replay.skipped)} skipped, {len(replay.recovered)} recovered"
        )
    for name, number in result.pull_requests.items():
        console.print(f"  {name}: pull request {'#' + str(number) if number else '(dry run)'}")

    if result.errors:
        console.print(f"  [red]Errors: {len(result.errors)}[/red]")
        for error in result.errors:
            console.print(f"    • {error}")
    if result.warnings:
        console.print(f"  [yellow]Warnings: {len(result.warnings)}[/yellow]")
        for warning in result.warnings:
            console.print(f"    • {warning}")


class _Syncer:
    def __init__(
        self,
        config: SyncConfig,
        tool: DependencyTool | None = None,
        publisher: CodeHostingClient | None = None,
        conflict_handler: ConflictHandler | None = None,
    ):
        self.config = config
        self.tool = tool or GoToolchain()
        self._publisher = publisher
        self.conflict_handler = conflict_handler

    @property
    def publisher(self) -> CodeHostingClient:
        if self._publisher is None:
            self._publisher = GitHubPublisher(self.config.publish, host=self.config.remotes.host)
        return self._publisher

    def run(self, mode: Mode | None = None) -> SyncResult:
        """Detect, then summarize, synchronize or publish."""
        mode = mode or self.config.mode
        result = SyncResult(mode=mode)
        try:
            self._run(mode, result)
        except SyncError as e:
            result.success = False
            result.errors.append(str(e))
            print_summary(result)
            raise
        if mode != Mode.SUMMARIZE:
            print_summary(result)
        return result

    def _run(self, mode: Mode, result: SyncResult) -> None:
        raise NotImplementedError


class MonorepoSyncer(_Syncer):
    """Synchronizes the staged components of one downstream monorepo."""

    def __init__(self, config: SyncConfig, *args, **kwargs):
        super().__init__(config, *args, **kwargs)
        self.repo = GitRepository(config.monorepo.repo_path)

    def detect(self, result: SyncResult | None = None) -> list[Commit]:
        """Work items for this run: loaded from commits_input, or detected."""
        settings = self.config.monorepo
        if self.config.commits_input:
            commits = load_commits(self.config.commits_input)
            logger.info("loaded %d commits from %s", len(commits), self.config.commits_input)
        else:
            detection = detect_monorepo_commits(
                self.repo, settings, self.config.remotes, self.config.fetch_mode
            )
            if result is not None:
                result.warnings.extend(detection.warnings)
            commits = list(detection.commits)

        missing = [c for c in commits if is_commit_missing(self.repo, c, settings)]
        if len(missing) != len(commits):
            logger.info("%d commits are already synchronized", len(commits) - len(missing))
        if self.config.commits_output:
            save_commits(self.config.commits_output, missing)
            logger.info("wrote %d commits to %s", len(missing), self.config.commits_output)
        return missing

    def summarize(self, commits: Sequence[Commit]) -> None:
        console.print(commits_table(f"Pending Commits ({len(commits)})", commits, f"{self.config.remotes.upstream_org}/"))

    def _run(self, mode: Mode, result: SyncResult) -> None:
        commits = self.detect(result)
        if not commits:
            logger.info("current repository state is up-to-date with upstream")
            return

        if mode == Mode.SUMMARIZE:
            self.summarize(commits)
            return

        self.repo.set_committer(self.config.git_name, self.config.git_email)
        replayer = MonorepoReplayer(
            self.repo,
            self.config.monorepo,
            self.tool,
            commit_args=self.config.git_commit_args(),
            delay_manifest_generation=self.config.delay_manifest_generation,
            delay_go_mod=self.config.delay_go_mod,
            conflict_handler=self.conflict_handler,
        )
        result.replays[replayer.name] = replayer.result
        replayer.replay(commits)

        if mode == Mode.PUBLISH:
            self.publish(commits, result)

    def publish(self, commits: Sequence[Commit], result: SyncResult) -> None:
        settings = self.config.publish
        if not settings.github_repo:
            raise PublishFailure("publish.github_repo is required for a monorepo", stage="publish")
        self.publisher.push_branch(self.repo, settings.github_repo, settings.remote_branch)
        result.pull_requests[settings.github_repo] = self.publisher.upsert_pull_request(
            settings.github_org,
            settings.github_repo,
            MONOREPO_TITLE,
            monorepo_pr_body(commits, settings.assign, self.config.remotes),
            settings.pr_base_branch or self.config.monorepo.pr_base_branch,
            settings.remote_branch,
            monorepo_labels(settings.self_approve),
        )


class MirrorSyncer(_Syncer):
    """Synchronizes a primary repository and its dependency mirrors."""

    def __init__(self, config: SyncConfig, *args, **kwargs):
        super().__init__(config, *args, **kwargs)
        settings = config.mirror
        missing = [n for n in settings.ordered_names if n not in settings.repositories]
        if missing:
            raise ValueError(f"no local clone registered for: {', '.join(missing)}")
        self.repos = {name: GitRepository(settings.path_for(name)) for name in settings.ordered_names}

    def detect(self) -> Mapping[str, SynchronizationTarget]:
        """Targets for this run: loaded from commits_input, or detected."""
        if self.config.commits_input:
            targets = load_targets(self.config.commits_input)
            logger.info("loaded targets for %d repositories from %s", len(targets), self.config.commits_input)
        else:
            targets = detect_mirror_targets(
                self.config.mirror, self.config.remotes, self.config.fetch_mode, self.tool
            )
        if self.config.commits_output:
            save_targets(self.config.commits_output, targets)
            logger.info("wrote targets to %s", self.config.commits_output)
        return targets

    def summarize(self, targets: Mapping[str, SynchronizationTarget]) -> None:
        remotes = self.config.remotes
        for name, target in targets.items():
            console.print(f"\n[bold]{remotes.downstream_org}/{remotes.downstream_name(name)}: updating to[/bold]")
            console.print(commits_table("Upstream Target", [target.target], f"{remotes.upstream_org}/"))
            console.print(" + additional commits to cherry-pick on top:")
            console.print(
                commits_table(
                    f"Carried Commits ({len(target.additional)})",
                    target.additional,
                    f"{remotes.downstream_org}/{remotes.downstream_prefix}",
                )
            )

    def _run(self, mode: Mode, result: SyncResult) -> None:
        targets = self.detect()
        if not targets:
            logger.info("all repositories are up-to-date with upstream")

        if mode == Mode.SUMMARIZE:
            self.summarize(targets)
            return

        settings = self.config.mirror
        if settings.bootstrap_tools:
            self.tool.bootstrap(self.repos[settings.primary].path)

        self.synchronize(targets, result)

        if mode == Mode.SYNCHRONIZE and settings.print_pull_request_comment:
            self.print_pull_request_comments(targets)
        elif mode == Mode.PUBLISH:
            self.publish(targets, result)

    def synchronize(self, targets: Mapping[str, SynchronizationTarget], result: SyncResult) -> None:
        settings = self.config.mirror
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Replaying...", total=len(targets))
            for name, target in targets.items():
                progress.update(task, description=f"Replaying {name}...")
                repo = self.repos[name]
                repo.set_committer(self.config.git_name, self.config.git_email)
                replayer = MirrorReplayer(
                    repo,
                    name,
                    settings,
                    self.config.remotes,
                    self.tool,
                    commit_args=self.config.git_commit_args(),
                    delay_manifest_generation=self.config.delay_manifest_generation,
                    delay_go_mod=self.config.delay_go_mod,
                    conflict_handler=self.conflict_handler if settings.pause_on_conflict else None,
                )
                result.replays[name] = replayer.result
                replayer.replay(target)
                progress.advance(task)

        # Replace directives may only point at dependency states that are
        # already published, so dependencies replayed in this run wait a run
        replacements = {}
        for name in settings.dependencies:
            if name in targets:
                logger.info("%s was replayed in this run, not rewriting go.mod for it yet", name)
                continue
            replacements[name] = determine_downstream_head(
                self.repos[name], name, self.config.remotes.downstream_url(name, self.config.fetch_mode)
            )
        rewrite_dependency_replacements(
            self.repos[settings.primary],
            replacements,
            self.config.remotes,
            self.tool,
            self.config.git_commit_args(),
        )

    def pull_request_body(self, target: SynchronizationTarget) -> str:
        return mirror_pr_body(
            target.target, target.additional, self.config.publish.assign, self.config.remotes
        )

    def print_pull_request_comments(self, targets: Mapping[str, SynchronizationTarget]) -> None:
        remotes = self.config.remotes
        for name, target in targets.items():
            heading = f"For repo {remotes.downstream_org}/{remotes.downstream_name(name)}"
            console.print("=" * len(heading), markup=False, highlight=False)
            console.print(heading, markup=False, highlight=False)
            console.print("=" * len(heading), markup=False, highlight=False)
            console.print(self.pull_request_body(target), markup=False, highlight=False)
            for label in mirror_labels(False):
                console.print(f"/label {label}", markup=False, highlight=False)

    def publish(self, targets: Mapping[str, SynchronizationTarget], result: SyncResult) -> None:
        settings = self.config.publish
        remotes = self.config.remotes
        labels = mirror_labels(settings.self_approve)
        for name, target in targets.items():
            fork = self.publisher.ensure_fork(remotes.downstream_org, remotes.downstream_name(name))
            self.publisher.push_branch(self.repos[name], fork, settings.remote_branch)
            result.pull_requests[name] = self.publisher.upsert_pull_request(
                settings.github_org,
                fork,
                MIRROR_TITLE,
                self.pull_request_body(target),
                settings.pr_base_branch or self.config.mirror.pr_base_branch,
                settings.remote_branch,
                labels,
            )
