"""
Error taxonomy for downstream_sync.

Every failure that aborts a run derives from SyncError. Only the conflict shapes
recognized by the replay executor are recovered locally; everything else is
raised through these types so the run stops before writing bookkeeping.
"""


class SyncError(Exception):
    """Base class for all synchronization failures."""

    def __init__(self, message: str, *, stage: str | None = None, output: str = ""):
        super().__init__(message)
        self.stage = stage
        self.output = output

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            message = f"[{self.stage}] {message}"
        if self.output:
            message = f"{message}\n{self.output}"
        return message


class MalformedCommitRecord(SyncError):
    """A commit display line did not have the expected fields."""


class UnresolvableVersion(SyncError):
    """A module version could not be mapped onto a commit."""


class MissingSyncBoundary(SyncError):
    """No Upstream-commit marker exists for a tracked component."""


class UnexpectedCommitDirective(SyncError):
    """A carry commit message does not declare an UPSTREAM directive."""


class UnrecoverableReplayConflict(SyncError):
    """A cherry-pick failed in a way that is not safe to resolve automatically."""


class DependencyRegenerationFailure(SyncError):
    """The module tool (tidy/vendor/verify) or manifest generation failed."""


class PublishFailure(SyncError):
    """Pushing the branch or creating/updating the pull request failed."""


class GitOperationFailure(SyncError):
    """Any other git primitive failed."""
