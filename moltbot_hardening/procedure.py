#!/usr/bin/env python3
"""
Shared step machinery for the provision, decommission and restore procedures.

A procedure is an ordered list of steps. run_step() shows a spinner, records
the outcome in a status table and converts a failed critical command into
StepFailed. best_effort() runs a command whose failure is acceptable and files
the failure in the procedure's WarningLog.
"""

import logging
import os
import subprocess
import time
from typing import Any, Callable, Dict, Optional, Sequence

from moltbot_hardening.errors import HardeningError, StepFailed, ValidationError, WarningLog
from moltbot_hardening.settings import Config
from moltbot_hardening.system import Command, CommandRunner
from moltbot_hardening.ui import (
    NordColors,
    console,
    display_panel,
    print_error,
    print_status_report,
)


class Procedure:
    """Base class holding the collaborators every procedure needs."""

    title: str = "Procedure"

    def __init__(self, config: Config, runner: Optional[CommandRunner] = None):
        self.config = config
        self.runner = runner or CommandRunner()
        self.logger = logging.getLogger("moltbot_hardening")
        self.warnings = WarningLog(self.logger)
        self.status: Dict[str, Dict[str, str]] = {}
        self.start_time = time.time()

    def set_status(self, key: str, status: str, message: str = "") -> None:
        self.status[key] = {"status": status, "message": message}

    def run_step(self, key: str, description: str, func: Callable[[], Any]) -> Any:
        """Run one step with a spinner; a failure aborts the procedure."""
        self.set_status(key, "in_progress", f"{description} in progress...")
        self.logger.debug(f"--- {description} ---")
        start = time.time()
        try:
            with console.status(f"[bold {NordColors.FROST_2}]{description}...[/]"):
                result = func()
        except subprocess.CalledProcessError as e:
            elapsed = time.time() - start
            self.set_status(key, "failed", f"Failed after {elapsed:.2f}s")
            stderr = e.stderr.strip() if isinstance(e.stderr, str) else None
            raise StepFailed(
                f"{description} failed: command exited {e.returncode}", diagnostics=stderr
            ) from e
        except subprocess.TimeoutExpired as e:
            self.set_status(key, "failed", "Timed out")
            raise StepFailed(f"{description} failed: command timed out") from e
        except OSError as e:
            self.set_status(key, "failed", str(e))
            raise StepFailed(f"{description} failed: {e}") from e
        except HardeningError as e:
            self.set_status(key, "failed", str(e))
            raise

        elapsed = time.time() - start
        message = result if isinstance(result, str) and result else f"Completed in {elapsed:.2f}s"
        state = "skipped" if isinstance(result, str) and result.startswith("already") else "success"
        self.set_status(key, state, message)
        console.print(
            f"[success]✓ {description}[/success] [dim]({message})[/dim]", highlight=False
        )
        return result

    def best_effort(
        self, description: str, cmd: Command, redact: Sequence[str] = ()
    ) -> bool:
        """Run a command whose failure is tolerated but remembered."""
        try:
            result = self.runner.run(cmd, check=False, redact=redact)
        except (OSError, subprocess.SubprocessError) as e:
            self.warnings.add(f"{description}: {e}")
            return False
        if result.returncode != 0:
            detail = (result.stderr or "").strip().splitlines()
            suffix = f": {detail[-1]}" if detail else ""
            self.warnings.add(f"{description} (exit {result.returncode}){suffix}")
            return False
        self.logger.debug(f"{description}: ok")
        return True

    def elapsed(self) -> str:
        minutes, seconds = divmod(int(time.time() - self.start_time), 60)
        return f"{minutes}m {seconds}s"

    def print_report(self) -> None:
        if self.status:
            print_status_report(self.status, f"{self.title} Status Report")


# ----------------------------------------------------------------
# Command-line helpers
# ----------------------------------------------------------------
def require_root() -> None:
    if os.geteuid() != 0:
        raise ValidationError("This command must be run as root (e.g., using sudo)")


def report_failure(error: HardeningError) -> None:
    """Print a fatal error, with any captured diagnostics, and log it."""
    logger = logging.getLogger("moltbot_hardening")
    logger.debug(f"Fatal: {error}")
    print_error(str(error))
    diagnostics = getattr(error, "diagnostics", None)
    if diagnostics:
        display_panel(diagnostics.strip(), style=NordColors.RED, title="Diagnostics")
