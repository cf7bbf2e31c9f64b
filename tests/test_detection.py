"""Tests for commit detection and ordering."""

from datetime import datetime, timezone
from pathlib import Path

import pytest
from git import Repo

from downstream_sync.config import FetchMode, MirrorSettings, MonorepoSettings, RemoteLayout
from downstream_sync.detection import (
    detect_mirror_targets,
    detect_monorepo_commits,
    find_sync_boundary,
    interleave_commits,
    is_commit_missing,
)
from downstream_sync.errors import MissingSyncBoundary
from downstream_sync.git_ops import GitRepository
from downstream_sync.models import Commit

from helpers import clone_repo, commit_file, commit_files, init_repo


def commit_at(label: str, repo: str, ts: int) -> Commit:
    return Commit(
        hash=label * 40,
        date=datetime.fromtimestamp(ts, tz=timezone.utc),
        author="a",
        message=f"commit {label}",
        repo=repo,
    )


def catch_up(temp_dir: Path, commit: str) -> None:
    """Move the downstream dep mirror exactly to an upstream commit."""
    down = Repo(temp_dir / "down" / "dep")
    down.git.fetch(str(temp_dir / "upstream" / "dep"), "main")
    down.git.reset("--hard", commit)


def marker(component: str, upstream_commit: str) -> str:
    return (
        f"Synchronize {component}\n\n"
        f"Upstream-repository: {component}\n"
        f"Upstream-commit: {upstream_commit}\n"
    )


class TestInterleave:
    """Tests for the chronological interleave."""

    def test_chronological_across_repositories(self):
        c1, c2, c3 = commit_at("1", "a", 1), commit_at("2", "a", 3), commit_at("3", "a", 5)
        d1, d2 = commit_at("4", "b", 2), commit_at("5", "b", 4)

        assert interleave_commits({"a": [c1, c2, c3], "b": [d1, d2]}) == [c1, d1, c2, d2, c3]
        assert interleave_commits({"b": [d1, d2], "a": [c1, c2, c3]}) == [c1, d1, c2, d2, c3]

    def test_never_reorders_one_repository(self):
        # Upstream history whose dates go backwards (e.g. a rebased branch)
        a1, a2 = commit_at("1", "a", 5), commit_at("2", "a", 1)
        b1 = commit_at("3", "b", 3)

        ordered = interleave_commits({"a": [a1, a2], "b": [b1]})

        assert ordered == [b1, a1, a2]
        assert ordered.index(a1) < ordered.index(a2)

    def test_ties_break_by_repository_name(self):
        a1, b1 = commit_at("1", "a", 1), commit_at("2", "b", 1)
        assert interleave_commits({"b": [b1], "a": [a1]}) == [a1, b1]

    def test_empty(self):
        assert interleave_commits({"a": [], "b": []}) == []


@pytest.fixture
def monorepo(temp_dir: Path):
    """
    Two upstream components and a downstream monorepo staging both.

    Upstream a: a0 (t=10) then a1, a2, a3 at t=100, 300, 500.
    Upstream b: b0 (t=20) then b1, b2 at t=200, 400.
    The downstream last synchronized a0 and b0.
    """
    up_a = init_repo(temp_dir / "upstream" / "a")
    a0 = commit_file(up_a, "a.txt", "a0", "a0", when=10)
    up_b = init_repo(temp_dir / "upstream" / "b")
    b0 = commit_file(up_b, "b.txt", "b0", "b0", when=20)

    down = init_repo(temp_dir / "downstream")
    commit_file(down, "README.md", "downstream", "Initial commit", when=5)
    commit_file(down, "staging/a/a.txt", "a0", marker("a", a0), when=30)
    commit_file(down, "staging/b/b.txt", "b0", marker("b", b0), when=40)

    hashes = {"a0": a0, "b0": b0}
    hashes["a1"] = commit_file(up_a, "a.txt", "a1", "a1", when=100)
    hashes["b1"] = commit_file(up_b, "b.txt", "b1", "b1", when=200)
    hashes["a2"] = commit_file(up_a, "a.txt", "a2", "a2", when=300)
    hashes["b2"] = commit_file(up_b, "b.txt", "b2", "b2", when=400)
    hashes["a3"] = commit_file(up_a, "a.txt", "a3", "a3", when=500)

    remotes = RemoteLayout(
        upstream_urls={
            "a": str(temp_dir / "upstream" / "a"),
            "b": str(temp_dir / "upstream" / "b"),
        }
    )
    settings = MonorepoSettings(
        repo_path=temp_dir / "downstream", central_ref="main", upstream_branch="main"
    )
    return GitRepository(temp_dir / "downstream"), settings, remotes, hashes


class TestMonorepoDetection:
    """Tests for the staging-directory strategy."""

    def test_find_sync_boundary(self, monorepo):
        repo, settings, _, hashes = monorepo
        assert find_sync_boundary(repo, "a", settings) == hashes["a0"]
        assert find_sync_boundary(repo, "b", settings) == hashes["b0"]

    def test_interleaves_components(self, monorepo):
        repo, settings, remotes, hashes = monorepo

        detection = detect_monorepo_commits(repo, settings, remotes, FetchMode.HTTPS)

        assert [c.hash for c in detection.commits] == [
            hashes["a1"], hashes["b1"], hashes["a2"], hashes["b2"], hashes["a3"],
        ]
        assert [c.repo for c in detection.commits] == ["a", "b", "a", "b", "a"]
        assert detection.warnings == []

    def test_second_detection_is_identical(self, monorepo):
        repo, settings, remotes, _ = monorepo

        first = detect_monorepo_commits(repo, settings, remotes, FetchMode.HTTPS)
        second = detect_monorepo_commits(repo, settings, remotes, FetchMode.HTTPS)

        assert first.commits == second.commits

    def test_boundary_not_ancestor_warns(self, monorepo, temp_dir: Path):
        repo, settings, remotes, _ = monorepo
        down = Repo(temp_dir / "downstream")
        commit_file(down, "staging/b/b.txt", "rewritten", marker("b", "e" * 40))

        detection = detect_monorepo_commits(repo, settings, remotes, FetchMode.HTTPS)

        assert all(c.repo == "a" for c in detection.commits)
        assert len(detection.warnings) == 1
        assert "not an ancestor" in detection.warnings[0]
        assert detection.components["b"].commits == ()

    def test_missing_boundary_fails(self, monorepo, temp_dir: Path):
        repo, settings, remotes, _ = monorepo
        down = Repo(temp_dir / "downstream")
        commit_file(down, "staging/c/c.txt", "c", "Add c without markers")

        with pytest.raises(MissingSyncBoundary, match="c on main"):
            detect_monorepo_commits(repo, settings, remotes, FetchMode.HTTPS)

    def test_explicit_components(self, monorepo):
        repo, settings, remotes, hashes = monorepo
        settings = settings.model_copy(update={"components": ["b"]})

        detection = detect_monorepo_commits(repo, settings, remotes, FetchMode.HTTPS)

        assert [c.hash for c in detection.commits] == [hashes["b1"], hashes["b2"]]

    def test_is_commit_missing(self, monorepo, temp_dir: Path):
        repo, settings, remotes, hashes = monorepo
        detection = detect_monorepo_commits(repo, settings, remotes, FetchMode.HTTPS)
        a1 = detection.commits[0]
        down = Repo(temp_dir / "downstream")
        commit_file(down, "staging/a/a.txt", "a1", marker("a", hashes["a1"]))

        assert is_commit_missing(repo, a1, settings) is False
        assert is_commit_missing(repo, detection.commits[2], settings) is True


class TestMirrorDetection:
    """Tests for the hash-identical mirror strategy."""

    @pytest.fixture
    def mirrors(self, temp_dir: Path, fake_tool):
        up_prim = init_repo(temp_dir / "upstream" / "prim")
        commit_files(up_prim, {"go.mod": "module prim\n", "main.go": "v1"}, "prim base", when=10)
        up_dep = init_repo(temp_dir / "upstream" / "dep")
        commit_file(up_dep, "dep.go", "v1", "dep base", when=20)

        down_prim = clone_repo(temp_dir / "upstream" / "prim", temp_dir / "down" / "prim")
        clone_repo(temp_dir / "upstream" / "dep", temp_dir / "down" / "dep")

        carry = commit_file(down_prim, "openshift/Dockerfile", "FROM x", "UPSTREAM: <carry>: add Dockerfile", when=30)
        commit_file(down_prim, "vendor/modules.txt", "x", "UPSTREAM: <drop>: go mod vendor", when=40)

        prim_target = commit_file(up_prim, "main.go", "v2", "prim update", when=50)
        dep_target = commit_file(up_dep, "dep.go", "v2", "dep update", when=60)
        commit_file(up_dep, "dep.go", "v3", "dep unreleased", when=70)

        fake_tool.versions["github.com/operator-framework/dep"] = f"v0.0.0-20240102150405-{dep_target[:12]}"
        settings = MirrorSettings(
            repositories={"prim": temp_dir / "down" / "prim", "dep": temp_dir / "down" / "dep"},
            primary="prim",
            dependencies=["dep"],
        )
        remotes = RemoteLayout(
            upstream_urls={
                "prim": str(temp_dir / "upstream" / "prim"),
                "dep": str(temp_dir / "upstream" / "dep"),
            }
        )
        return settings, remotes, {"carry": carry, "prim": prim_target, "dep": dep_target}

    def test_targets_and_carries(self, mirrors, fake_tool):
        settings, remotes, hashes = mirrors

        targets = detect_mirror_targets(settings, remotes, FetchMode.HTTPS, fake_tool)

        assert list(targets) == ["dep", "prim"]
        assert targets["prim"].target.hash == hashes["prim"]
        assert [c.hash for c in targets["prim"].additional] == [hashes["carry"]]
        assert targets["dep"].target.hash == hashes["dep"]
        assert targets["dep"].additional == ()
        assert ("module_version", "github.com/operator-framework/dep") in fake_tool.calls

    def test_restores_primary_checkout(self, mirrors, fake_tool):
        settings, remotes, _ = mirrors

        detect_mirror_targets(settings, remotes, FetchMode.HTTPS, fake_tool)

        assert GitRepository(settings.path_for("prim")).current_ref() == "main"

    def test_up_to_date_repositories_are_omitted(self, mirrors, fake_tool, temp_dir: Path):
        settings, remotes, hashes = mirrors
        catch_up(temp_dir, hashes["dep"])

        targets = detect_mirror_targets(settings, remotes, FetchMode.HTTPS, fake_tool)

        assert list(targets) == ["prim"]

    def test_force_remerge_keeps_up_to_date_repositories(self, mirrors, fake_tool, temp_dir: Path):
        settings, remotes, hashes = mirrors
        catch_up(temp_dir, hashes["dep"])
        settings = settings.model_copy(update={"force_remerge": True})

        targets = detect_mirror_targets(settings, remotes, FetchMode.HTTPS, fake_tool)

        assert list(targets) == ["dep", "prim"]
