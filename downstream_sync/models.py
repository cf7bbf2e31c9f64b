"""
Data model for downstream_sync.

Defines the commit record captured from git, the per-repository synchronization
target, the bookkeeping record and the resumability (work-item) file format.
"""

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .errors import MalformedCommitRecord

# Fields are separated by a non-breaking space, which does not appear in
# commit subjects in practice.
FIELD_SEPARATOR = "\u00a0"
PRETTY_FORMAT = f"--pretty=format:%H{FIELD_SEPARATOR}%cI{FIELD_SEPARATOR}%an{FIELD_SEPARATOR}%s"

_HASH_RE = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")


class Commit(BaseModel):
    """A single commit as captured from the git display output."""

    model_config = ConfigDict(frozen=True)

    date: datetime = Field(..., description="Committer date, timezone aware")
    hash: str = Field(..., description="Full commit hash")
    author: str = Field(default="", description="Author name")
    message: str = Field(default="", description="Commit subject line")
    repo: str = Field(default="", description="Repository the commit originates from")

    @field_validator("hash")
    @classmethod
    def _check_hash(cls, value: str) -> str:
        if not _HASH_RE.match(value):
            raise ValueError(f"not a full commit hash: {value!r}")
        return value

    @field_validator("date")
    @classmethod
    def _check_date(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("commit dates must be timezone aware")
        return value

    @property
    def short_hash(self) -> str:
        return self.hash[:7]

    def with_repo(self, repo: str) -> "Commit":
        """Return a copy tagged with its originating repository."""
        return self.model_copy(update={"repo": repo})


def parse_commit_record(line: str, repo: str = "") -> Commit:
    """
    Parse one line produced with PRETTY_FORMAT into a Commit.

    Raises:
        MalformedCommitRecord: if the field count is wrong or the date is not
            a timezone-aware ISO-8601 timestamp.
    """
    parts = line.split(FIELD_SEPARATOR)
    if len(parts) != 4:
        raise MalformedCommitRecord(
            f"expected 4 fields in commit record, got {len(parts)}: {line!r}"
        )
    commit_hash, raw_date, author, message = parts
    try:
        date = datetime.fromisoformat(raw_date.strip())
    except ValueError as e:
        raise MalformedCommitRecord(f"invalid commit date {raw_date!r}") from e
    if date.tzinfo is None:
        raise MalformedCommitRecord(f"commit date has no timezone: {raw_date!r}")
    try:
        return Commit(
            hash=commit_hash.strip(),
            date=date,
            author=author,
            message=message,
            repo=repo,
        )
    except ValueError as e:
        raise MalformedCommitRecord(f"invalid commit record {line!r}: {e}") from e


def parse_commit_records(output: str, repo: str = "") -> list[Commit]:
    """Parse multi-line git output, skipping blank lines."""
    return [
        parse_commit_record(line, repo=repo)
        for line in output.splitlines()
        if line.strip()
    ]


class SynchronizationTarget(BaseModel):
    """Describes how to bring one downstream repository to the intended state."""

    model_config = ConfigDict(frozen=True)

    target: Commit = Field(..., description="Upstream commit to converge on")
    additional: tuple[Commit, ...] = Field(
        default=(),
        description="Downstream carry commits to reapply, in downstream order",
    )

    def is_noop(self, current_head: str) -> bool:
        """True when there is nothing to replay on top of the current head."""
        return not self.additional and self.target.hash == current_head


class BookkeepingRecord(BaseModel):
    """Marker consumed by the commit-checker to verify the sync boundary."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    upstream_org: str = Field(..., alias="upstreamOrg")
    upstream_repo: str = Field(..., alias="upstreamRepo")
    upstream_branch: str = Field(..., alias="upstreamBranch")
    expected_merge_base: str = Field(..., alias="expectedMergeBase")

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(by_alias=True), sort_keys=True)

    @classmethod
    def from_yaml(cls, text: str) -> "BookkeepingRecord":
        return cls.model_validate(yaml.safe_load(text))


# Work-item files let detection and replay run as separate scheduled steps.
_commit_list = TypeAdapter(list[Commit])
_target_map = TypeAdapter(dict[str, SynchronizationTarget])


def save_commits(path: Path, commits: list[Commit]) -> None:
    """Write a monorepo work-item file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(_commit_list.dump_python(commits, mode="json"), f, indent=2)


def load_commits(path: Path) -> list[Commit]:
    """Read a monorepo work-item file."""
    with open(path) as f:
        return _commit_list.validate_python(json.load(f))


def save_targets(path: Path, targets: Mapping[str, SynchronizationTarget]) -> None:
    """Write a mirror work-item file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(_target_map.dump_python(dict(targets), mode="json"), f, indent=2)


def load_targets(path: Path) -> dict[str, SynchronizationTarget]:
    """Read a mirror work-item file."""
    with open(path) as f:
        return _target_map.validate_python(json.load(f))
