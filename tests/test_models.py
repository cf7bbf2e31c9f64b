"""Tests for the data model module."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from downstream_sync.errors import MalformedCommitRecord
from downstream_sync.models import (
    FIELD_SEPARATOR,
    BookkeepingRecord,
    Commit,
    SynchronizationTarget,
    load_commits,
    load_targets,
    parse_commit_record,
    parse_commit_records,
    save_commits,
    save_targets,
)

HASH_A = "a" * 40
HASH_B = "b" * 40


def record(*fields: str) -> str:
    return FIELD_SEPARATOR.join(fields)


def make_commit(commit_hash: str = HASH_A, minutes: int = 0, repo: str = "", message: str = "msg") -> Commit:
    return Commit(
        hash=commit_hash,
        date=datetime(2024, 1, 2, 15, 4, 5, tzinfo=timezone.utc) + timedelta(minutes=minutes),
        author="Jane Doe",
        message=message,
        repo=repo,
    )


class TestParseCommitRecord:
    """Tests for parsing the structured git display format."""

    def test_parse_valid_record(self):
        line = record(HASH_A, "2024-01-02T15:04:05+02:00", "Jane Doe", "UPSTREAM: <carry>: fix bug")
        commit = parse_commit_record(line, repo="catalogd")

        assert commit.hash == HASH_A
        assert commit.author == "Jane Doe"
        assert commit.message == "UPSTREAM: <carry>: fix bug"
        assert commit.repo == "catalogd"
        assert commit.date.utcoffset() == timedelta(hours=2)
        assert commit.short_hash == "aaaaaaa"

    def test_message_with_regular_spaces(self):
        line = record(HASH_A, "2024-01-02T15:04:05+00:00", "Jane Doe", "a subject  with   spaces")
        assert parse_commit_record(line).message == "a subject  with   spaces"

    def test_too_few_fields(self):
        with pytest.raises(MalformedCommitRecord, match="expected 4 fields"):
            parse_commit_record(record(HASH_A, "2024-01-02T15:04:05+00:00", "Jane Doe"))

    def test_too_many_fields(self):
        line = record(HASH_A, "2024-01-02T15:04:05+00:00", "Jane Doe", "subject", "extra")
        with pytest.raises(MalformedCommitRecord):
            parse_commit_record(line)

    def test_invalid_date(self):
        with pytest.raises(MalformedCommitRecord, match="invalid commit date"):
            parse_commit_record(record(HASH_A, "yesterday", "Jane Doe", "subject"))

    def test_naive_date(self):
        with pytest.raises(MalformedCommitRecord, match="no timezone"):
            parse_commit_record(record(HASH_A, "2024-01-02T15:04:05", "Jane Doe", "subject"))

    def test_invalid_hash(self):
        with pytest.raises(MalformedCommitRecord):
            parse_commit_record(record("not-a-hash", "2024-01-02T15:04:05+00:00", "Jane Doe", "subject"))

    def test_parse_multiple_records_skips_blank_lines(self):
        output = "\n".join(
            [
                record(HASH_A, "2024-01-02T15:04:05+00:00", "Jane", "first"),
                "",
                record(HASH_B, "2024-01-03T15:04:05+00:00", "John", "second"),
                "",
            ]
        )
        commits = parse_commit_records(output, repo="api")
        assert [c.hash for c in commits] == [HASH_A, HASH_B]
        assert all(c.repo == "api" for c in commits)


class TestCommit:
    """Tests for the Commit model."""

    def test_naive_date_rejected(self):
        with pytest.raises(ValidationError):
            Commit(hash=HASH_A, date=datetime(2024, 1, 2), author="a", message="m")

    def test_frozen(self):
        commit = make_commit()
        with pytest.raises(ValidationError):
            commit.message = "changed"

    def test_with_repo(self):
        commit = make_commit()
        tagged = commit.with_repo("registry")
        assert tagged.repo == "registry"
        assert commit.repo == ""
        assert tagged.hash == commit.hash


class TestSynchronizationTarget:
    """Tests for SynchronizationTarget."""

    def test_noop_when_at_target_without_carries(self):
        target = SynchronizationTarget(target=make_commit(HASH_A))
        assert target.is_noop(HASH_A) is True

    def test_not_noop_with_carries(self):
        target = SynchronizationTarget(target=make_commit(HASH_A), additional=(make_commit(HASH_B),))
        assert target.is_noop(HASH_A) is False

    def test_not_noop_when_behind(self):
        target = SynchronizationTarget(target=make_commit(HASH_A))
        assert target.is_noop(HASH_B) is False


class TestBookkeepingRecord:
    """Tests for the commit-checker record."""

    def test_yaml_uses_commit_checker_keys(self):
        text = BookkeepingRecord(
            upstream_org="operator-framework",
            upstream_repo="catalogd",
            upstream_branch="main",
            expected_merge_base=HASH_A,
        ).to_yaml()

        assert "upstreamOrg: operator-framework" in text
        assert "upstreamRepo: catalogd" in text
        assert "upstreamBranch: main" in text
        assert f"expectedMergeBase: {HASH_A}" in text

    def test_from_yaml(self):
        text = (
            "expectedMergeBase: " + HASH_B + "\n"
            "upstreamBranch: main\n"
            "upstreamOrg: operator-framework\n"
            "upstreamRepo: operator-controller\n"
        )
        parsed = BookkeepingRecord.from_yaml(text)
        assert parsed.upstream_repo == "operator-controller"
        assert parsed.expected_merge_base == HASH_B


class TestWorkItemFiles:
    """Tests for the resumability file."""

    def test_commit_list_preserves_order_and_fields(self, temp_dir: Path):
        commits = [make_commit(HASH_B, 0, "a"), make_commit(HASH_A, 5, "b")]
        path = temp_dir / "out" / "commits.json"

        save_commits(path, commits)

        assert load_commits(path) == commits

    def test_target_map_keys_and_order(self, temp_dir: Path):
        targets = {
            "catalogd": SynchronizationTarget(target=make_commit(HASH_A, repo="catalogd")),
            "operator-controller": SynchronizationTarget(
                target=make_commit(HASH_B, repo="operator-controller"),
                additional=(make_commit(HASH_A, 1), make_commit(HASH_B, 2)),
            ),
        }
        path = temp_dir / "targets.json"

        save_targets(path, targets)
        loaded = load_targets(path)

        assert list(loaded) == ["catalogd", "operator-controller"]
        assert loaded["operator-controller"].additional == targets["operator-controller"].additional

    def test_file_uses_plain_json_keys(self, temp_dir: Path):
        path = temp_dir / "commits.json"
        save_commits(path, [make_commit()])
        text = path.read_text()
        for key in ('"date"', '"hash"', '"author"', '"message"', '"repo"'):
            assert key in text
