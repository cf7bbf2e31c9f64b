"""
Carry-commit classification.

Every downstream-only commit in a mirrored repository declares its intent with
an `UPSTREAM:` prefix:

    UPSTREAM: <carry>: keep this forever
    UPSTREAM: <drop>: only needed until the next sync
    UPSTREAM: 1234: cherry-pick of upstream pull request 1234
    UPSTREAM: revert: <carry>: ...
    UPSTREAM: org/repo: 1234: ...

The directive decides whether the commit is replayed on top of a new upstream
target.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Protocol

from .config import RevertPolicy
from .errors import UnexpectedCommitDirective
from .models import Commit

logger = logging.getLogger(__name__)

DIRECTIVE_RE = re.compile(
    r"^UPSTREAM: (?P<revert>revert: )?(?:(?P<scope>[\w.-]+/[\w.-]+)?: )?"
    r"(?P<kind>\d+:|<carry>:|<drop>:)"
)


class DirectiveKind(str, Enum):
    CARRY = "carry"
    DROP = "drop"
    PULL_REQUEST = "pull-request"


@dataclass(frozen=True)
class Directive:
    """Parsed `UPSTREAM:` prefix of a carry commit."""

    kind: DirectiveKind
    pull_request: str | None = None
    scope: str | None = None
    revert: bool = False

    @property
    def reference(self) -> str:
        """Marker upstream squash/rebase merges append to the subject."""
        return f"(#{self.pull_request})"


def parse_directive(message: str) -> Directive:
    """
    Parse the directive of a commit subject.

    Raises:
        UnexpectedCommitDirective: if the message does not start with a
            recognized `UPSTREAM:` prefix.
    """
    match = DIRECTIVE_RE.match(message)
    if not match:
        raise UnexpectedCommitDirective(
            f"unexpected commit message: {message}", stage="classify"
        )
    raw_kind = match.group("kind").strip("<>:")
    if raw_kind == "carry":
        kind, pull_request = DirectiveKind.CARRY, None
    elif raw_kind == "drop":
        kind, pull_request = DirectiveKind.DROP, None
    else:
        kind, pull_request = DirectiveKind.PULL_REQUEST, raw_kind
    return Directive(
        kind=kind,
        pull_request=pull_request,
        scope=match.group("scope"),
        revert=match.group("revert") is not None,
    )


class UpstreamHistory(Protocol):
    def find_superseding_commit(self, reference: str, upto: str) -> str | None: ...


class Decision(str, Enum):
    CARRY = "carry"
    DROP = "drop"
    SUPERSEDED = "superseded"
    DROP_LISTED = "drop-listed"


@dataclass(frozen=True)
class Classification:
    commit: Commit
    decision: Decision
    directive: Directive | None = None
    superseded_by: str | None = None

    @property
    def carried(self) -> bool:
        return self.decision == Decision.CARRY


def _drop_listed(commit_hash: str, drop_list: Iterable[str]) -> str | None:
    for entry in drop_list:
        entry = entry.strip()
        if entry and commit_hash.startswith(entry):
            return entry
    return None


def classify_commit(
    commit: Commit,
    history: UpstreamHistory,
    target: str,
    drop_list: Iterable[str] = (),
    revert_policy: RevertPolicy = RevertPolicy.FOLLOW,
) -> Classification:
    """Decide whether a single downstream commit must be carried."""
    # Every carried commit must declare its intent, even ones the operator drops
    directive = parse_directive(commit.message)

    dropped = _drop_listed(commit.hash, drop_list)
    if dropped:
        logger.info("dropping %s due to drop-commits option %s", commit.short_hash, dropped)
        return Classification(commit, Decision.DROP_LISTED, directive)

    if directive.revert:
        if revert_policy == RevertPolicy.FAIL:
            raise UnexpectedCommitDirective(
                f"revert directive needs an operator decision: {commit.message}",
                stage="classify",
            )
        if revert_policy == RevertPolicy.CARRY:
            logger.info("carrying revert %s", commit.short_hash)
            return Classification(commit, Decision.CARRY, directive)
        logger.warning(
            "revert %s is resolved like its %s directive", commit.short_hash, directive.kind.value
        )

    if directive.kind == DirectiveKind.DROP:
        logger.info("dropping %s", commit.short_hash)
        return Classification(commit, Decision.DROP, directive)
    if directive.kind == DirectiveKind.CARRY:
        logger.info("carrying %s", commit.short_hash)
        return Classification(commit, Decision.CARRY, directive)

    # A cherry-picked pull request is no longer needed once upstream merged it.
    # Upstream rewrites merged commits to end with "(#1234)", so search for that.
    # A miss only costs an empty or failing pick, never a lost carry.
    logger.info("investigating cherry-picked PR %s in %s", directive.pull_request, commit.short_hash)
    superseded_by = history.find_superseding_commit(directive.reference, target)
    if superseded_by:
        logger.info(
            "%s is superseded by upstream %s", commit.short_hash, superseded_by[:7]
        )
        return Classification(commit, Decision.SUPERSEDED, directive, superseded_by)
    logger.info("cherry-picked PR %s needs to be carried", directive.pull_request)
    return Classification(commit, Decision.CARRY, directive)


def classify_carries(
    commits: Iterable[Commit],
    history: UpstreamHistory,
    target: str,
    drop_list: Iterable[str] = (),
    revert_policy: RevertPolicy = RevertPolicy.FOLLOW,
) -> list[Classification]:
    """Classify candidates, preserving downstream order."""
    drop_list = list(drop_list)
    return [
        classify_commit(commit, history, target, drop_list, revert_policy)
        for commit in commits
    ]
