#!/usr/bin/env python3
"""
Confirmation providers.

The decommission and restore procedures never read the terminal directly; they
ask a Prompter. The terminal implementation uses Rich prompts, the others let
automation and tests answer without a TTY.
"""

from typing import Iterable, List, Union

from rich.prompt import Confirm, Prompt

from moltbot_hardening.errors import ValidationError
from moltbot_hardening.ui import NordColors, console


class Prompter:
    """Interface for yes/no questions and free-form answers."""

    def confirm(self, question: str, default: bool = False) -> bool:
        raise NotImplementedError

    def ask(self, question: str) -> str:
        raise NotImplementedError


class TerminalPrompter(Prompter):
    def confirm(self, question: str, default: bool = False) -> bool:
        try:
            return Confirm.ask(
                f"[bold {NordColors.FROST_2}]?[/] {question}",
                default=default,
                console=console,
            )
        except (EOFError, KeyboardInterrupt):
            console.print()
            return default

    def ask(self, question: str) -> str:
        try:
            return Prompt.ask(f"[bold {NordColors.FROST_2}]?[/] {question}", console=console)
        except (EOFError, KeyboardInterrupt):
            console.print()
            raise ValidationError(f"No answer given for '{question}'")


class AssumeDefaults(Prompter):
    """
    Non-interactive mode: every question takes its safe default.

    Questions listed in `accept` are answered yes regardless, which is how the
    --force flag confirms the main operation while optional destructive
    prompts still fall back to "no".
    """

    def __init__(self, accept: Iterable[str] = ()):
        self.accept = set(accept)
        self.asked: List[str] = []

    def confirm(self, question: str, default: bool = False) -> bool:
        self.asked.append(question)
        return True if question in self.accept else default

    def ask(self, question: str) -> str:
        raise ValidationError(f"Cannot answer '{question}' in non-interactive mode")


class ScriptedPrompter(Prompter):
    """Replays a fixed list of answers in order; defaults once exhausted."""

    def __init__(self, answers: Iterable[Union[bool, str]] = ()):
        self.answers = list(answers)
        self.asked: List[str] = []

    def _next(self):
        return self.answers.pop(0) if self.answers else None

    def confirm(self, question: str, default: bool = False) -> bool:
        self.asked.append(question)
        answer = self._next()
        if answer is None:
            return default
        if isinstance(answer, str):
            return answer.strip().lower() in ("y", "yes")
        return bool(answer)

    def ask(self, question: str) -> str:
        self.asked.append(question)
        answer = self._next()
        if answer is None:
            raise ValidationError(f"No scripted answer for '{question}'")
        return str(answer)
