"""
Resolution of module versions to commits.

A Go module version is either a plain release tag (v1.2.3) or carries a
pre-release component. Pseudo-versions encode the commit directly, e.g.
v0.0.0-20240102150405-abcdef123456 or v1.2.4-rc.0.20240102150405-abcdef123456.
"""

import logging
import re
from dataclasses import dataclass

from .errors import UnresolvableVersion
from .git_ops import GitRepository

logger = logging.getLogger(__name__)

_SEMVER_RE = re.compile(
    r"^v?(?P<core>\d+\.\d+\.\d+)"
    r"(?:-(?P<prerelease>[0-9A-Za-z.-]+))?"
    r"(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)
_PSEUDO_RE = re.compile(r"^(?:.*\.)?(?P<date>\d{14})-(?P<commit>[0-9a-f]{7,40})$")
_HEX_RE = re.compile(r"^[0-9a-f]{7,40}$")


@dataclass(frozen=True)
class ModuleVersion:
    """A parsed module version."""

    raw: str
    prerelease: str | None
    build: str | None

    @property
    def tag(self) -> str:
        """The version without build metadata, as used for tags."""
        if self.build:
            return self.raw[: -(len(self.build) + 1)]
        return self.raw

    def commit_hint(self) -> str | None:
        """The abbreviated commit encoded in the pre-release, if any."""
        if not self.prerelease:
            return None
        match = _PSEUDO_RE.match(self.prerelease)
        if match:
            return match.group("commit")
        tokens = self.prerelease.split("-")
        if len(tokens) > 1 and _HEX_RE.match(tokens[-1]):
            return tokens[-1]
        return None


def parse_version(version: str) -> ModuleVersion:
    match = _SEMVER_RE.match(version.strip())
    if not match:
        raise UnresolvableVersion(f"not a semantic version: {version!r}", stage="resolve-version")
    return ModuleVersion(
        raw=version.strip(),
        prerelease=match.group("prerelease"),
        build=match.group("build"),
    )


def resolve_version(repo: GitRepository, version: str) -> str:
    """
    Resolve a module version to a full commit hash in `repo`.

    Release versions are looked up as tags. Pre-release versions must encode
    the commit (pseudo-version or trailing hash token). As a deliberate
    leniency, a pre-release that encodes no commit is still accepted when it
    exists verbatim as a tag, so published release candidates such as
    v1.0.0-rc.1 resolve like releases do. Anything else is rejected.

    Raises:
        UnresolvableVersion: when no commit can be determined.
    """
    parsed = parse_version(version)

    if parsed.prerelease is None:
        commit = repo.try_rev_parse(f"{parsed.tag}^{{commit}}")
        if commit is None:
            raise UnresolvableVersion(
                f"tag {parsed.tag} not found in {repo.path}", stage="resolve-version"
            )
        return commit

    hint = parsed.commit_hint()
    if hint is not None:
        commit = repo.try_rev_parse(f"{hint}^{{commit}}")
        if commit is None:
            raise UnresolvableVersion(
                f"commit {hint} from version {version} not found in {repo.path}",
                stage="resolve-version",
            )
        logger.debug("decoded commit %s from version %s", commit, version)
        return commit

    commit = repo.try_rev_parse(f"refs/tags/{parsed.tag}^{{commit}}")
    if commit is None:
        raise UnresolvableVersion(
            f"pre-release version {version} encodes no commit and is not a tag",
            stage="resolve-version",
        )
    return commit
