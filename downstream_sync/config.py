"""
Configuration handling for downstream_sync.

Defines the configuration schema and provides methods for loading/saving
sync configuration from YAML files. Command-line options override values
loaded from the file.
"""

from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator


class Mode(str, Enum):
    """Operating mode of a run."""

    SUMMARIZE = "summarize"
    SYNCHRONIZE = "synchronize"
    PUBLISH = "publish"


class FetchMode(str, Enum):
    """How remotes are addressed when fetching."""

    SSH = "ssh"
    HTTPS = "https"


class RevertPolicy(str, Enum):
    """How `UPSTREAM: revert: ...` carry commits are resolved."""

    FOLLOW = "follow"  # resolve like the reverted directive
    CARRY = "carry"
    FAIL = "fail"


class RemoteLayout(BaseModel):
    """Naming scheme for upstream and downstream remotes and Go modules."""

    host: str = Field(default="github.com", description="Code hosting host name")
    upstream_org: str = Field(
        default="operator-framework", description="Organization owning the upstream repos"
    )
    downstream_org: str = Field(
        default="openshift", description="Organization owning the downstream forks"
    )
    downstream_prefix: str = Field(
        default="operator-framework-",
        description="Prefix of downstream repository names (e.g. operator-framework-catalogd)",
    )
    # Explicit fetch URLs, keyed by upstream repository name
    upstream_urls: dict[str, str] = Field(
        default_factory=dict, description="Per-repository upstream URL overrides"
    )
    # Explicit fetch URLs, keyed by upstream repository name
    downstream_urls: dict[str, str] = Field(
        default_factory=dict, description="Per-repository downstream URL overrides"
    )

    def downstream_name(self, repo: str) -> str:
        return f"{self.downstream_prefix}{repo}"

    def _url(self, org: str, name: str, mode: FetchMode) -> str:
        if mode == FetchMode.SSH:
            return f"git@{self.host}:{org}/{name}.git"
        return f"https://{self.host}/{org}/{name}.git"

    def upstream_url(self, repo: str, mode: FetchMode) -> str:
        """Fetch URL of an upstream repository."""
        if repo in self.upstream_urls:
            return self.upstream_urls[repo]
        return self._url(self.upstream_org, repo, mode)

    def downstream_url(self, repo: str, mode: FetchMode) -> str:
        """Fetch URL of the downstream fork of an upstream repository."""
        if repo in self.downstream_urls:
            return self.downstream_urls[repo]
        return self._url(self.downstream_org, self.downstream_name(repo), mode)

    def upstream_module(self, repo: str) -> str:
        return f"{self.host}/{self.upstream_org}/{repo}"

    def downstream_module(self, repo: str) -> str:
        return f"{self.host}/{self.downstream_org}/{self.downstream_name(repo)}"


class PublishSettings(BaseModel):
    """Settings for pushing the replayed branch and opening the pull request."""

    github_login: str = Field(default="openshift-bot", description="GitHub user that pushes")
    github_org: str = Field(default="openshift", description="Downstream GitHub org name")
    github_repo: str | None = Field(
        default=None, description="Downstream GitHub repository name (monorepo topology)"
    )
    assign: list[str] = Field(
        default_factory=lambda: [
            "openshift/openshift-team-operator-runtime",
            "openshift/openshift-team-operator-ecosystem",
        ],
        description="Users or teams to /cc on the pull request",
    )
    self_approve: bool = Field(
        default=False, description="Add the approved and lgtm labels to the pull request"
    )
    pr_base_branch: str | None = Field(
        default=None, description="Base branch of the pull request (defaults per topology)"
    )
    remote_branch: str = Field(
        default="synchronize-upstream", description="Branch pushed to the fork"
    )
    dry_run: bool = Field(
        default=True, description="Only log what would be pushed and opened"
    )
    api_url: str = Field(default="https://api.github.com", description="GitHub API root")
    token: str | None = Field(default=None, description="GitHub token", repr=False)
    token_path: Path | None = Field(default=None, description="File holding the GitHub token")

    def resolve_token(self) -> str | None:
        """Return the token, reading it from token_path if needed."""
        if self.token:
            return self.token
        if self.token_path and self.token_path.exists():
            return self.token_path.read_text().strip()
        return None


class MonorepoSettings(BaseModel):
    """Settings for the staging-directory (monorepo) topology."""

    repo_path: Path = Field(default=Path("."), description="Path to the downstream monorepo")
    staging_dir: str = Field(default="staging", description="Directory holding the components")
    central_ref: str = Field(
        default="origin/master",
        description="Ref of the central branch, used to find what was already synchronized",
    )
    history: int = Field(
        default=1, ge=1, description="How many marker commits back to start searching"
    )
    upstream_branch: str = Field(default="master", description="Upstream branch to fetch")
    components: list[str] = Field(
        default_factory=list,
        description="Components to track (defaults to every directory under staging_dir)",
    )
    manifest_target: str = Field(
        default="generate-manifests", description="make target regenerating manifests"
    )
    artifact_paths: list[str] = Field(
        default_factory=lambda: ["vendor", "go.mod", "go.sum", "manifests", "pkg/manifests"],
        description="Root paths amended into every replayed commit",
    )
    pr_base_branch: str = Field(default="master", description="Default pull request base")


class MirrorSettings(BaseModel):
    """Settings for the hash-identical mirror topology."""

    repositories: dict[str, Path] = Field(
        default_factory=dict, description="Repository registry: name -> local clone"
    )
    primary: str = Field(
        default="operator-controller",
        description="Repository whose go.mod pins the dependency versions",
    )
    dependencies: list[str] = Field(
        default_factory=lambda: ["catalogd"],
        description="Repositories resolved through the primary's module graph",
    )
    branch: str = Field(default="main", description="Downstream branch")
    upstream_branch: str = Field(default="main", description="Upstream branch")
    working_branch: str = Field(default="synchronize", description="Branch the replay builds")
    overlay_dir: str = Field(
        default="openshift", description="Downstream-only directory with its own module"
    )
    extra_module_dirs: dict[str, list[str]] = Field(
        default_factory=lambda: {"operator-controller": ["testdata/push", "testdata/registry"]},
        description="Additional module directories to vendor, per repository",
    )
    strip_paths: list[str] = Field(
        default_factory=lambda: [".github"],
        description="Upstream paths removed from every synchronized tree",
    )
    bookkeeping_file: str = Field(default="commitchecker.yaml")
    drop_commits: list[str] = Field(
        default_factory=list, description="Carry commit hashes (or prefixes) to drop"
    )
    force_remerge: bool = Field(default=False, description="Re-merge even when up to date")
    pause_on_conflict: bool = Field(
        default=False, description="Pause for the operator on unknown cherry-pick conflicts"
    )
    print_pull_request_comment: bool = Field(
        default=False, description="Print the pull request body in synchronize mode"
    )
    revert_policy: RevertPolicy = Field(default=RevertPolicy.FOLLOW)
    bootstrap_tools: bool = Field(
        default=True, description="Run 'bingo get' before replaying"
    )
    pr_base_branch: str = Field(default="main", description="Default pull request base")

    @property
    def ordered_names(self) -> list[str]:
        """Dependencies first, then the primary."""
        return [*self.dependencies, self.primary]

    def path_for(self, name: str) -> Path:
        try:
            return self.repositories[name]
        except KeyError:
            raise KeyError(f"No local clone registered for repository {name!r}") from None


class SyncConfig(BaseModel):
    """Main configuration for a synchronization run."""

    mode: Mode = Field(default=Mode.SUMMARIZE, description="Operating mode")
    fetch_mode: FetchMode = Field(default=FetchMode.SSH)
    log_level: str = Field(default="INFO", description="Logging level")

    commits_output: Path | None = Field(
        default=None, description="File to write the detected work items to"
    )
    commits_input: Path | None = Field(
        default=None, description="File to read work items from instead of detecting"
    )

    git_name: str | None = Field(default=None, description="Committer name")
    git_email: str | None = Field(default=None, description="Committer email")
    git_signoff: bool = Field(default=False, description="Sign off replayed commits")

    delay_manifest_generation: bool = Field(
        default=False, description="Generate manifests once at the end of the batch"
    )
    delay_go_mod: bool = Field(
        default=False, description="Run the go mod commands once at the end of the batch"
    )

    remotes: RemoteLayout = Field(default_factory=RemoteLayout)
    publish: PublishSettings = Field(default_factory=PublishSettings)
    monorepo: MonorepoSettings = Field(default_factory=MonorepoSettings)
    mirror: MirrorSettings = Field(default_factory=MirrorSettings)

    @model_validator(mode="after")
    def _check_consistency(self) -> "SyncConfig":
        if (self.git_name is None) != (self.git_email is None):
            raise ValueError("git_name and git_email must be specified together")
        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log_level: {self.log_level}")
        if self.mode == Mode.PUBLISH:
            if not self.publish.github_login:
                raise ValueError("publish.github_login is mandatory in publish mode")
            if not self.publish.assign:
                raise ValueError("publish.assign is mandatory in publish mode")
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "SyncConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def to_yaml(self, path: Path) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w") as f:
            yaml.dump(
                self.model_dump(mode="json", exclude={"publish": {"token"}}),
                f,
                default_flow_style=False,
                sort_keys=False,
            )

    def git_commit_args(self) -> list[str]:
        """Extra arguments appended to every commit the tool creates."""
        return ["--signoff"] if self.git_signoff else []


def create_default_config(
    mirror_repositories: dict[str, Path] | None = None,
    monorepo_path: Path | None = None,
) -> SyncConfig:
    """Create a default configuration with sensible defaults."""
    config = SyncConfig()
    if mirror_repositories:
        config.mirror.repositories = dict(mirror_repositories)
    if monorepo_path:
        config.monorepo.repo_path = monorepo_path
    return config
