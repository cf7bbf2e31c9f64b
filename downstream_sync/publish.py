"""
Publishing of replayed branches.

Builds the pull request bodies and drives the code-hosting collaborator: make
sure the bot has a fork, force-push the replayed branch to it, then create or
update the pull request and its labels.
"""

import html
import logging
from typing import Iterable, Protocol, Sequence

import requests
from git.exc import GitCommandError

from .config import PublishSettings, RemoteLayout
from .errors import PublishFailure
from .git_ops import GitRepository, command_output
from .models import Commit

logger = logging.getLogger(__name__)

MONOREPO_TITLE = "Synchronize From Upstream Repositories"
MIRROR_TITLE = "NO-ISSUE: Synchronize From Upstream Repositories"

# Sync pull requests must be merged, not rebased, so carries stay identifiable
TIDE_MERGE_METHOD_MERGE_LABEL = "tide/merge-method-merge"
KIND_SYNC_LABEL = "kind/sync"
APPROVED_LABEL = "approved"
LGTM_LABEL = "lgtm"

MAX_BODY_LENGTH = 65536

_TABLE_HEADER = ["| Date | Commit | Author | Message |", "| -    | -      | -      | -       |"]
_FOOTER = (
    "This pull request is expected to merge without any human intervention. If tests are "
    "failing here, changes must land upstream to fix any issues so that future "
    "downstreaming efforts succeed."
)


def _row(commit: Commit, org: str, name: str, host: str) -> str:
    return (
        f"|{commit.date.strftime('%Y-%m-%d %H:%M:%S')}"
        f"|[{org}/{name}@{commit.short_hash}](https://{host}/{org}/{name}/commit/{commit.hash})"
        f"|{commit.author}|{commit.message}|"
    )


def _finish(lines: list[str], assign: Iterable[str], escape: bool = False) -> str:
    lines.extend(["", _FOOTER, ""])
    lines.extend(f"/cc @{who}" for who in assign if who)
    body = "\n".join(lines)
    if escape:
        # Escaping grows the body, so the length limit applies afterwards
        body = html.escape(body)
    if len(body) >= MAX_BODY_LENGTH:
        body = body[: MAX_BODY_LENGTH - 6]
        if escape and body.rfind("&") > body.rfind(";"):
            # Do not leave half an entity behind
            body = body[: body.rfind("&")]
        body += "..."
    return body


def monorepo_pr_body(commits: Sequence[Commit], assign: Iterable[str], remotes: RemoteLayout) -> str:
    """Pull request body listing every upstream commit synchronized into staging/."""
    lines = [
        "The staging/ and vendor/ directories have been synchronized from the upstream "
        "repositories, pulling in the following commits:",
        "",
        *_TABLE_HEADER,
    ]
    lines.extend(_row(c, remotes.upstream_org, c.repo, remotes.host) for c in commits)
    return _finish(lines, assign)


def mirror_pr_body(
    target: Commit, carried: Sequence[Commit], assign: Iterable[str], remotes: RemoteLayout
) -> str:
    """Pull request body for one mirrored repository, HTML-escaped."""
    name = target.repo
    lines = ["The downstream repository has been updated through the following upstream commit:", ""]
    lines.extend(_TABLE_HEADER)
    lines.append(_row(target, remotes.upstream_org, name, remotes.host))
    lines.append(
        f"||[upstream commit list](https://{remotes.host}/{remotes.upstream_org}/{name}"
        f"/commits/{target.hash})|||"
    )
    lines.extend(
        ["", "The `vendor/` directory has been updated and the following commits were carried:", ""]
    )
    lines.extend(_TABLE_HEADER)
    lines.extend(
        _row(c, remotes.downstream_org, remotes.downstream_name(c.repo or name), remotes.host)
        for c in carried
    )
    return _finish(lines, assign, escape=True)


def mirror_labels(self_approve: bool) -> list[str]:
    labels = [TIDE_MERGE_METHOD_MERGE_LABEL, KIND_SYNC_LABEL]
    if self_approve:
        logger.info("self-approving PR by adding the %r and %r labels", APPROVED_LABEL, LGTM_LABEL)
        labels.extend([APPROVED_LABEL, LGTM_LABEL])
    return labels


def monorepo_labels(self_approve: bool) -> list[str]:
    if self_approve:
        logger.info("self-approving PR by adding the %r and %r labels", APPROVED_LABEL, LGTM_LABEL)
        return [APPROVED_LABEL, LGTM_LABEL]
    return []


class CodeHostingClient(Protocol):
    """What publishing needs from the code-hosting service."""

    def ensure_fork(self, org: str, repo: str) -> str: ...

    def push_branch(self, repo: GitRepository, fork: str, branch: str) -> None: ...

    def upsert_pull_request(
        self,
        org: str,
        repo: str,
        title: str,
        body: str,
        base: str,
        branch: str,
        labels: Sequence[str] = (),
    ) -> int | None: ...


class GitHubPublisher:
    """CodeHostingClient for GitHub, over the REST API and git push."""

    def __init__(
        self,
        settings: PublishSettings,
        session: requests.Session | None = None,
        timeout: float = 60,
        host: str = "github.com",
    ):
        self.settings = settings
        self.host = host
        self.login = settings.github_login
        self.dry_run = settings.dry_run
        self.timeout = timeout
        self._token = settings.resolve_token()
        if not self._token and not self.dry_run:
            raise PublishFailure("a GitHub token is required to publish", stage="publish")
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/vnd.github+json"})
        if self._token:
            self.session.headers["Authorization"] = f"Bearer {self._token}"

    def censor(self, text: str) -> str:
        """Redact the token from text that is about to be logged or raised."""
        if self._token:
            return text.replace(self._token, "CENSORED")
        return text

    def _request(self, method: str, path: str, ok: Sequence[int] = (200, 201), **kwargs) -> requests.Response:
        url = f"{self.settings.api_url.rstrip('/')}{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise PublishFailure(
                f"{method} {url} failed", stage="publish", output=self.censor(str(e))
            ) from e
        if response.status_code not in ok:
            raise PublishFailure(
                f"{method} {url} returned {response.status_code}",
                stage="publish",
                output=self.censor(response.text),
            )
        return response

    def ensure_fork(self, org: str, repo: str) -> str:
        """Make sure the bot has a fork of org/repo and return the fork's name."""
        if self.dry_run:
            logger.info("[dry-run] would ensure %s has a fork of %s/%s", self.login, org, repo)
            return repo
        response = self._request("GET", f"/repos/{self.login}/{repo}", ok=(200, 404))
        if response.status_code == 200:
            return response.json()["name"]
        logger.info("forking %s/%s for %s", org, repo, self.login)
        response = self._request("POST", f"/repos/{org}/{repo}/forks", ok=(202,))
        return response.json()["name"]

    def push_branch(self, repo: GitRepository, fork: str, branch: str) -> None:
        """Force-push HEAD of the local repository to the bot's fork."""
        url = f"https://{self.login}:{self._token}@{self.host}/{self.login}/{fork}.git"
        if self.dry_run:
            logger.info("[dry-run] would push %s to %s/%s:%s", repo.path, self.login, fork, branch)
            return
        logger.info("pushing %s to %s/%s:%s", repo.path, self.login, fork, branch)
        try:
            repo.push(url, "HEAD", branch, force=True)
        except GitCommandError as e:
            raise PublishFailure(
                f"failed to push to {self.login}/{fork}",
                stage="push",
                output=self.censor(command_output(e)),
            ) from e

    def upsert_pull_request(
        self,
        org: str,
        repo: str,
        title: str,
        body: str,
        base: str,
        branch: str,
        labels: Sequence[str] = (),
    ) -> int | None:
        """Create the pull request, or update the open one from the same head."""
        head = f"{self.login}:{branch}"
        if self.dry_run:
            logger.info("[dry-run] would open or update %s/%s PR %r from %s into %s", org, repo, title, head, base)
            return None

        response = self._request(
            "GET", f"/repos/{org}/{repo}/pulls", params={"head": head, "base": base, "state": "open"}
        )
        existing = response.json()
        payload = {"title": title, "body": body}
        if existing:
            number = existing[0]["number"]
            logger.info("updating %s/%s#%d", org, repo, number)
            self._request("PATCH", f"/repos/{org}/{repo}/pulls/{number}", json=payload)
        else:
            payload.update({"head": head, "base": base, "maintainer_can_modify": True})
            number = self._request("POST", f"/repos/{org}/{repo}/pulls", json=payload).json()["number"]
            logger.info("created %s/%s#%d", org, repo, number)

        if labels:
            self._request(
                "POST", f"/repos/{org}/{repo}/issues/{number}/labels", json={"labels": list(labels)}
            )
        return number
