"""
Detection of the commits a downstream repository is missing.

Two strategies exist:

* monorepo: upstream components live in subdirectories of a staging
  directory. The last synchronized upstream commit of each component is found
  through `Upstream-repository:`/`Upstream-commit:` trailers, the upstream
  ranges are collected independently and interleaved chronologically.
* mirror: each upstream repository is mirrored hash-for-hash. The new upstream
  target is resolved (primary head, dependencies through the primary's module
  graph) and the downstream carry commits since the merge-base are classified.
"""

import heapq
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .classification import Classification, classify_carries
from .config import FetchMode, MirrorSettings, MonorepoSettings, RemoteLayout, RevertPolicy
from .errors import MissingSyncBoundary
from .git_ops import GitRepository
from .models import Commit, SynchronizationTarget
from .tools import DependencyTool
from .versions import resolve_version

logger = logging.getLogger(__name__)

UPSTREAM_REPOSITORY_TRAILER = "Upstream-repository"
UPSTREAM_COMMIT_TRAILER = "Upstream-commit"

_UPSTREAM_COMMIT_RE = re.compile(rf"^{UPSTREAM_COMMIT_TRAILER}: ([a-f0-9]+)\s*$", re.M)


# --- monorepo strategy ---------------------------------------------------


@dataclass(frozen=True)
class ComponentDetection:
    """Detection result for one staged component."""

    component: str
    boundary: str
    upstream_head: str
    commits: tuple[Commit, ...] = ()
    warnings: tuple[str, ...] = ()


def list_components(repo: GitRepository, settings: MonorepoSettings) -> list[str]:
    """Components to track, defaulting to every directory under the staging dir."""
    if settings.components:
        return list(settings.components)
    staging = repo.path / settings.staging_dir
    if not staging.is_dir():
        return []
    return sorted(p.name for p in staging.iterdir() if p.is_dir())


def find_sync_boundary(
    repo: GitRepository,
    component: str,
    settings: MonorepoSettings,
) -> str:
    """
    Find the last upstream commit synchronized into a component.

    Raises:
        MissingSyncBoundary: if no marker commit exists for the component.
    """
    output = repo.log_bodies(
        settings.central_ref,
        "-n",
        str(settings.history),
        "--grep",
        f"{UPSTREAM_REPOSITORY_TRAILER}: {component}",
        "--grep",
        UPSTREAM_COMMIT_TRAILER,
        "--all-match",
        "--reverse",
        "--",
        f"{settings.staging_dir}/{component}",
    )
    match = _UPSTREAM_COMMIT_RE.search(output)
    if not match:
        raise MissingSyncBoundary(
            f"no {UPSTREAM_COMMIT_TRAILER} marker found for {component} on {settings.central_ref}",
            stage="detect",
        )
    logger.debug("found last commit %s synchronized into %s", match.group(1), component)
    return match.group(1)


def detect_component(
    repo: GitRepository,
    component: str,
    remote: str,
    settings: MonorepoSettings,
) -> ComponentDetection:
    """Collect the upstream commits of one component since its sync boundary."""
    boundary = find_sync_boundary(repo, component, settings)
    upstream_head = repo.fetch(remote, settings.upstream_branch)

    if not repo.is_ancestor(boundary, upstream_head):
        warning = (
            f"last synchronized commit {boundary[:7]} of {component} is not an ancestor of "
            f"upstream {upstream_head[:7]}; treating {component} as up to date"
        )
        logger.warning(warning)
        return ComponentDetection(component, boundary, upstream_head, warnings=(warning,))

    commits = repo.log_commits(
        "--no-merges", "--reverse", f"{boundary}..{upstream_head}", repo=component
    )
    logger.info("found %d upstream commits for %s", len(commits), component)
    return ComponentDetection(component, boundary, upstream_head, tuple(commits))


def interleave_commits(per_repo: Mapping[str, list[Commit] | tuple[Commit, ...]]) -> list[Commit]:
    """
    Merge oldest-first per-repository sequences into one chronological order.

    Among all repositories with pending commits, the one whose next commit is
    earliest goes next; ties go to the repository that sorts first. Commits of
    one repository are never reordered relative to each other.
    """
    # heapq.merge only advances the iterable it emitted from and breaks ties by
    # iterable position
    sequences = [per_repo[name] for name in sorted(per_repo)]
    return list(heapq.merge(*sequences, key=lambda commit: commit.date))


def is_commit_missing(repo: GitRepository, commit: Commit, settings: MonorepoSettings) -> bool:
    """True when no downstream commit records this upstream commit."""
    output = repo.log_bodies(
        "-n",
        "1",
        "--grep",
        f"{UPSTREAM_REPOSITORY_TRAILER}: {commit.repo}",
        "--grep",
        f"{UPSTREAM_COMMIT_TRAILER}: {commit.hash}",
        "--all-match",
        "--",
        f"{settings.staging_dir}/{commit.repo}",
    )
    return not output.strip()


@dataclass(frozen=True)
class MonorepoDetection:
    components: Mapping[str, ComponentDetection]
    commits: tuple[Commit, ...]

    @property
    def warnings(self) -> list[str]:
        return [w for d in self.components.values() for w in d.warnings]


def detect_monorepo_commits(
    repo: GitRepository,
    settings: MonorepoSettings,
    remotes: RemoteLayout,
    fetch_mode: FetchMode,
) -> MonorepoDetection:
    """Detect and order the upstream commits every staged component is missing."""
    results = {}
    for component in list_components(repo, settings):
        remote = remotes.upstream_url(component, fetch_mode)
        results[component] = detect_component(repo, component, remote, settings)

    ordered = interleave_commits({name: r.commits for name, r in results.items()})
    return MonorepoDetection(MappingProxyType(results), tuple(ordered))


# --- mirror strategy -----------------------------------------------------


@dataclass(frozen=True)
class RepositoryDetection:
    """Detection result for one mirrored repository."""

    name: str
    target: Commit
    up_to_date: bool
    classifications: tuple[Classification, ...] = field(default=())

    def to_target(self) -> SynchronizationTarget:
        carried = tuple(c.commit for c in self.classifications if c.carried)
        return SynchronizationTarget(target=self.target, additional=carried)


def is_up_to_date(repo: GitRepository, name: str, commit: str, branch: str) -> bool:
    """True when the downstream branch already contains the target commit."""
    if repo.is_ancestor(commit, branch):
        logger.info("%s: branch %s already contains %s, nothing to do", name, branch, commit[:7])
        return True
    return False


def detect_carry_commits(
    repo: GitRepository,
    name: str,
    target: str,
    remote: str,
    branch: str,
    drop_list: list[str],
    revert_policy: RevertPolicy,
) -> list[Classification]:
    """Classify the downstream commits made since the merge-base with target."""
    if repo.try_rev_parse(f"{target}^{{commit}}") is None:
        repo.fetch(remote, target)
    merge_base = repo.merge_base(branch, target)
    candidates = repo.log_commits(
        f"{merge_base}..{branch}",
        "--ancestry-path",
        "--no-merges",
        "--reverse",
        repo=name,
    )
    logger.info("%s: %d candidate carry commits since %s", name, len(candidates), merge_base[:7])
    return classify_carries(candidates, repo, target, drop_list, revert_policy)


def detect_repository(
    repo: GitRepository,
    name: str,
    target: Commit,
    settings: MirrorSettings,
    remotes: RemoteLayout,
    fetch_mode: FetchMode,
) -> RepositoryDetection:
    """Detection for one mirrored repository once its target is known."""
    if not settings.force_remerge and is_up_to_date(repo, name, target.hash, settings.branch):
        return RepositoryDetection(name, target, up_to_date=True)
    classifications = detect_carry_commits(
        repo,
        name,
        target.hash,
        remotes.upstream_url(name, fetch_mode),
        settings.branch,
        settings.drop_commits,
        settings.revert_policy,
    )
    return RepositoryDetection(name, target, False, tuple(classifications))


def detect_mirror_targets(
    settings: MirrorSettings,
    remotes: RemoteLayout,
    fetch_mode: FetchMode,
    tool: DependencyTool,
) -> Mapping[str, SynchronizationTarget]:
    """
    Resolve the synchronization target of every mirrored repository.

    Repositories that are already up to date are absent from the result.
    The returned mapping lists dependencies before the primary.
    """
    primary = GitRepository(settings.path_for(settings.primary))
    head = primary.fetch(remotes.upstream_url(settings.primary, fetch_mode), tags=True)
    logger.info("%s: resolved latest upstream commit %s", settings.primary, head[:7])
    primary_target = primary.show_commit(head, repo=settings.primary)

    results: dict[str, RepositoryDetection] = {}
    results[settings.primary] = detect_repository(
        primary, settings.primary, primary_target, settings, remotes, fetch_mode
    )

    # Dependency versions come from the primary's go.mod at the new target
    original_ref = primary.current_ref()
    primary.checkout(primary_target.hash)
    try:
        versions = {
            name: tool.module_version(primary.path, remotes.upstream_module(name))
            for name in settings.dependencies
        }
    finally:
        primary.checkout(original_ref)

    for name in settings.dependencies:
        logger.info("%s: resolved latest version %s", name, versions[name])
        repo = GitRepository(settings.path_for(name))
        repo.fetch(remotes.upstream_url(name, fetch_mode), tags=True)
        commit_hash = resolve_version(repo, versions[name])
        logger.info("%s: resolved latest commit %s", name, commit_hash[:7])
        target = repo.show_commit(commit_hash, repo=name)
        results[name] = detect_repository(repo, name, target, settings, remotes, fetch_mode)

    targets = {
        name: results[name].to_target()
        for name in settings.ordered_names
        if not results[name].up_to_date
    }
    return MappingProxyType(targets)


def determine_downstream_head(repo: GitRepository, name: str, remote: str) -> str:
    """Current head of a downstream fork, as published."""
    head = repo.fetch(remote, tags=True)
    logger.debug("%s: downstream head is %s", name, head[:7])
    return head

