#!/usr/bin/env python3
"""
Error types shared by the provisioning procedures.

Fatal conditions are raised as HardeningError subclasses and turned into an
exit status of 1 by each command's main(). Best-effort failures are collected
in a WarningLog and reported in the final summary instead.
"""

import logging
from typing import Iterator, List, Optional


class HardeningError(Exception):
    """Base class for fatal errors."""


class ValidationError(HardeningError):
    """Bad input detected before any side effect took place."""


class StepFailed(HardeningError):
    """A critical step could not reach its target state."""

    def __init__(self, message: str, diagnostics: Optional[str] = None):
        super().__init__(message)
        self.diagnostics = diagnostics


class SecurityViolation(HardeningError):
    """The deployment is in a state that must never be accepted."""


class WarningLog:
    """Collects suppressed failures so they can be surfaced in a summary."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("moltbot_hardening")
        self._messages: List[str] = []

    def add(self, message: str) -> None:
        self.logger.warning(message)
        self._messages.append(message)

    def __iter__(self) -> Iterator[str]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __bool__(self) -> bool:
        return bool(self._messages)
