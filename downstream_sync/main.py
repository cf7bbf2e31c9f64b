"""
CLI entry point for downstream_sync.

Provides the command-line interface for synchronizing downstream repositories
from their upstreams, in either the monorepo or the mirror topology.
"""

import logging
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from .config import FetchMode, Mode, RevertPolicy, SyncConfig, create_default_config
from .errors import SyncError
from .replay import ConflictContext, ConflictResolution
from .syncer import MirrorSyncer, MonorepoSyncer

console = Console()

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def prompt_conflict(context: ConflictContext) -> ConflictResolution:
    """Let the operator resolve a failed cherry-pick by hand."""
    console.print(f"\n[red]Cherry-pick of {context.commit.short_hash} into {context.repo} failed:[/red]")
    console.print(context.output, markup=False, highlight=False)
    if context.conflicted_paths:
        console.print("[bold]Conflicted paths:[/bold]")
        for path in context.conflicted_paths:
            console.print(f"  • {path}")
    console.print(
        f"Resolve the conflict in {context.path} and conclude the cherry-pick, "
        "then continue; or abort the run."
    )
    choice = click.prompt(
        "Action",
        type=click.Choice([r.value for r in ConflictResolution]),
        default=ConflictResolution.CONTINUE.value,
    )
    return ConflictResolution(choice)


def parse_dependency(value: str) -> tuple[str, Path]:
    name, sep, path = value.partition("=")
    if not sep or not name or not path:
        raise click.BadParameter(f"expected NAME=PATH, got {value!r}")
    return name, Path(path)


def load_config(config_path: Path | None, overrides: dict) -> SyncConfig:
    """Load the YAML configuration (or defaults) and apply command-line overrides."""
    try:
        config = SyncConfig.from_yaml(config_path) if config_path else SyncConfig()
        data = config.model_dump()
        for key, value in overrides.items():
            if value is None:
                continue
            section, _, field = key.partition(".")
            if field:
                data[section][field] = value
            else:
                data[section] = value
        return SyncConfig.model_validate(data)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config_path}[/red]")
        console.print("Run 'downstream-sync init' to create a configuration file.")
        raise SystemExit(1)
    except (ValidationError, ValueError) as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise SystemExit(1)


def run_syncer(syncer_cls, config: SyncConfig, conflict_handler=None) -> None:
    try:
        syncer = syncer_cls(config, conflict_handler=conflict_handler)
        syncer.run()
    except SyncError as e:
        logger.error("%s", e)
        raise SystemExit(1)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)


def common_options(func):
    """Options shared by both topologies."""
    options = [
        click.option(
            "--config",
            "-c",
            "config_path",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            default=None,
            help="Path to the sync configuration file",
        ),
        click.option(
            "--mode",
            type=click.Choice([m.value for m in Mode]),
            default=None,
            help="summarize: show what would be synchronized; synchronize: replay locally; "
            "publish: replay, push and open a pull request",
        ),
        click.option(
            "--fetch-mode",
            type=click.Choice([m.value for m in FetchMode]),
            default=None,
            help="Address remotes over ssh or https",
        ),
        click.option("--log-level", default=None, help="Logging level"),
        click.option(
            "--commits-output",
            type=click.Path(dir_okay=False, path_type=Path),
            default=None,
            help="Write the detected work items to this file",
        ),
        click.option(
            "--commits-input",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            default=None,
            help="Read work items from this file instead of detecting them",
        ),
        click.option("--git-name", default=None, help="Committer name"),
        click.option("--git-email", default=None, help="Committer email"),
        click.option("--git-signoff/--no-git-signoff", default=None, help="Sign off commits"),
        click.option(
            "--delay-manifest-generation/--no-delay-manifest-generation",
            default=None,
            help="Generate manifests once at the end instead of after every commit",
        ),
        click.option(
            "--delay-go-mod/--no-delay-go-mod",
            default=None,
            help="Run go mod once at the end instead of after every commit",
        ),
        click.option("--github-login", default=None, help="GitHub user pushing the branch"),
        click.option("--github-org", default=None, help="GitHub org of the pull request"),
        click.option("--assign", "assign", multiple=True, help="User or team to /cc (repeatable)"),
        click.option("--self-approve/--no-self-approve", default=None, help="Add approved and lgtm labels"),
        click.option("--pr-base-branch", default=None, help="Base branch of the pull request"),
        click.option("--dry-run/--no-dry-run", default=None, help="Do not push or call the GitHub API"),
        click.option(
            "--token",
            "-t",
            envvar="DOWNSTREAM_SYNC_TOKEN",
            default=None,
            help="GitHub token (or set DOWNSTREAM_SYNC_TOKEN env var)",
        ),
        click.option(
            "--token-path",
            type=click.Path(dir_okay=False, path_type=Path),
            default=None,
            help="File holding the GitHub token",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def common_overrides(params: dict) -> dict:
    return {
        "mode": params["mode"],
        "fetch_mode": params["fetch_mode"],
        "log_level": params["log_level"],
        "commits_output": params["commits_output"],
        "commits_input": params["commits_input"],
        "git_name": params["git_name"],
        "git_email": params["git_email"],
        "git_signoff": params["git_signoff"],
        "delay_manifest_generation": params["delay_manifest_generation"],
        "delay_go_mod": params["delay_go_mod"],
        "publish.github_login": params["github_login"],
        "publish.github_org": params["github_org"],
        "publish.assign": list(params["assign"]) or None,
        "publish.self_approve": params["self_approve"],
        "publish.pr_base_branch": params["pr_base_branch"],
        "publish.dry_run": params["dry_run"],
        "publish.token": params["token"],
        "publish.token_path": params["token_path"],
    }


@click.group()
@click.version_option(package_name="downstream-sync")
def cli():
    """Downstream Sync - keep downstream forks synchronized with their upstreams."""
    pass


@cli.command()
@click.option(
    "--repository",
    "-r",
    "repositories",
    multiple=True,
    help="Mirrored repository as NAME=PATH (can be specified multiple times)",
)
@click.option(
    "--monorepo",
    "monorepo_path",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
    default=None,
    help="Path to the downstream monorepo",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("downstream_sync.yaml"),
    help="Output config file path",
)
def init(repositories: tuple[str, ...], monorepo_path: Path | None, output: Path):
    """Initialize a new sync configuration file."""
    mirror_repositories = dict(parse_dependency(r) for r in repositories)
    config = create_default_config(
        mirror_repositories=mirror_repositories or None,
        monorepo_path=monorepo_path,
    )
    config.to_yaml(output)
    console.print(f"[green]Created configuration file: {output}[/green]")
    if mirror_repositories:
        console.print(f"  Mirrored repositories: {len(mirror_repositories)}")
        for name, path in mirror_repositories.items():
            console.print(f"    • {name} → {path}")
    if monorepo_path:
        console.print(f"  Monorepo: {monorepo_path}")
    console.print("\nEdit this file to customize settings.")


@cli.command()
@common_options
@click.option(
    "--repo",
    "repo_path",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
    default=None,
    help="Path to the downstream monorepo",
)
@click.option("--staging-dir", default=None, help="Directory holding the upstream components")
@click.option("--central-ref", default=None, help="Ref used to find what was already synchronized")
@click.option("--history", type=int, default=None, help="How many marker commits back to search")
@click.option("--github-repo", default=None, help="GitHub repository of the pull request")
def monorepo(config_path: Path | None, repo_path, staging_dir, central_ref, history, github_repo, **params):
    """Synchronize upstream components staged in a monorepo."""
    overrides = common_overrides(params)
    overrides.update(
        {
            "monorepo.repo_path": repo_path,
            "monorepo.staging_dir": staging_dir,
            "monorepo.central_ref": central_ref,
            "monorepo.history": history,
            "publish.github_repo": github_repo,
        }
    )
    config = load_config(config_path, overrides)
    setup_logging(config.log_level)
    run_syncer(MonorepoSyncer, config)


@cli.command()
@common_options
@click.option(
    "--primary",
    default=None,
    help="Primary repository whose go.mod pins the dependencies",
)
@click.option(
    "--repository",
    "-r",
    "repositories",
    multiple=True,
    help="Local clone as NAME=PATH (can be specified multiple times)",
)
@click.option(
    "--drop-commit",
    "drop_commits",
    multiple=True,
    help="Carry commit hash (or prefix) to drop (can be specified multiple times)",
)
@click.option("--force-remerge/--no-force-remerge", default=None, help="Re-merge even when up to date")
@click.option(
    "--pause-on-cherry-pick-error/--no-pause-on-cherry-pick-error",
    "pause_on_conflict",
    default=None,
    help="Pause for manual resolution when a cherry-pick fails",
)
@click.option(
    "--print-pull-request-comment/--no-print-pull-request-comment",
    default=None,
    help="In synchronize mode, print the pull request body",
)
@click.option(
    "--revert-policy",
    type=click.Choice([p.value for p in RevertPolicy]),
    default=None,
    help="How revert carry commits are resolved",
)
def mirror(
    config_path: Path | None,
    primary,
    repositories,
    drop_commits,
    force_remerge,
    pause_on_conflict,
    print_pull_request_comment,
    revert_policy,
    **params,
):
    """Synchronize hash-identical downstream mirrors."""
    overrides = common_overrides(params)
    overrides.update(
        {
            "mirror.primary": primary,
            "mirror.drop_commits": list(drop_commits) or None,
            "mirror.force_remerge": force_remerge,
            "mirror.pause_on_conflict": pause_on_conflict,
            "mirror.print_pull_request_comment": print_pull_request_comment,
            "mirror.revert_policy": revert_policy,
        }
    )
    config = load_config(config_path, overrides)
    if repositories:
        config.mirror.repositories.update(parse_dependency(r) for r in repositories)
    setup_logging(config.log_level)
    run_syncer(MirrorSyncer, config, conflict_handler=prompt_conflict)


if __name__ == "__main__":
    cli()
