"""
Dependency-manager primitives.

Wraps the Go module tool (go list/mod tidy/vendor/verify/edit), make-based
manifest generation and bingo tool bootstrap. Commands run sequentially through
subprocess; an interrupt reaches the running child and aborts the run.
"""

import json
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Protocol, Sequence

from .errors import DependencyRegenerationFailure

logger = logging.getLogger(__name__)

# Seconds to wait before each bingo attempt
BOOTSTRAP_BACKOFF = (0, 10, 30, 60, 120, 240)


def run_command(args: Sequence[str], cwd: Path, stage: str) -> str:
    """
    Run an external command to completion and return its combined output.

    Raises:
        DependencyRegenerationFailure: if the command exits non-zero or cannot
            be started.
    """
    logger.debug("running %s (in %s)", " ".join(args), cwd)
    try:
        completed = subprocess.run(
            list(args),
            cwd=cwd,
            env=os.environ.copy(),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as e:
        raise DependencyRegenerationFailure(
            f"could not run {args[0]}: {e}", stage=stage
        ) from e
    if completed.returncode != 0:
        raise DependencyRegenerationFailure(
            f"{' '.join(args)} exited with status {completed.returncode} in {cwd}",
            stage=stage,
            output=completed.stdout,
        )
    logger.debug("ran %s: %s", " ".join(args), completed.stdout)
    return completed.stdout


class DependencyTool(Protocol):
    """What the engine needs from the module tooling."""

    def module_version(self, directory: Path, module: str) -> str: ...

    def regenerate(self, directory: Path) -> None: ...

    def replace(self, directory: Path, old: str, new: str) -> None: ...

    def generate_manifests(self, directory: Path, target: str, makefile: str | None = None) -> None: ...

    def bootstrap(self, directory: Path) -> None: ...


class GoToolchain:
    """DependencyTool implementation backed by the go, make and bingo binaries."""

    def __init__(self, go: str = "go", make: str = "make", bingo: str = "bingo"):
        self.go = go
        self.make = make
        self.bingo = bingo

    def module_version(self, directory: Path, module: str) -> str:
        """Resolved version of a module in the build list of `directory`."""
        raw = run_command([self.go, "list", "-json", "-m", module], directory, "resolve-version")
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DependencyRegenerationFailure(
                f"failed to parse module info for {module}", stage="resolve-version", output=raw
            ) from e
        version = info.get("Version")
        if not version:
            raise DependencyRegenerationFailure(
                f"module {module} has no resolved version", stage="resolve-version", output=raw
            )
        return version

    def regenerate(self, directory: Path) -> None:
        """Run go mod tidy, vendor and verify."""
        for step in ("tidy", "vendor", "verify"):
            run_command([self.go, "mod", step], directory, "regenerate")

    def replace(self, directory: Path, old: str, new: str) -> None:
        run_command([self.go, "mod", "edit", "-replace", f"{old}={new}"], directory, "rewrite-go-mod")

    def generate_manifests(self, directory: Path, target: str, makefile: str | None = None) -> None:
        args = [self.make]
        if makefile:
            args.extend(["-f", makefile])
        args.append(target)
        run_command(args, directory, "generate-manifests")

    def bootstrap(self, directory: Path) -> None:
        """Install pinned tools, retrying with back-off."""
        for attempt, delay in enumerate(BOOTSTRAP_BACKOFF, start=1):
            time.sleep(delay)
            try:
                run_command([self.bingo, "get"], directory, "bootstrap")
                return
            except DependencyRegenerationFailure as e:
                if attempt == len(BOOTSTRAP_BACKOFF):
                    raise
                logger.warning("bingo get failed (attempt %d), retrying: %s", attempt, e)
