"""Tests for the step runner, warning collection and prompters."""

import pytest

from conftest import FakeRunner
from moltbot_hardening.errors import StepFailed, ValidationError, WarningLog
from moltbot_hardening.procedure import Procedure
from moltbot_hardening import prompts
from moltbot_hardening.prompts import AssumeDefaults, ScriptedPrompter, TerminalPrompter


def test_run_step_records_success_and_skip(config):
    procedure = Procedure(config, FakeRunner())
    procedure.run_step("one", "First step", lambda: None)
    procedure.run_step("two", "Second step", lambda: "already done")
    assert procedure.status["one"]["status"] == "success"
    assert procedure.status["two"] == {"status": "skipped", "message": "already done"}


def test_run_step_wraps_command_failure(config):
    runner = FakeRunner().on("apt-get", returncode=100, stderr="E: Unable to locate package\n")
    procedure = Procedure(config, runner)
    with pytest.raises(StepFailed) as excinfo:
        procedure.run_step("packages", "Installing", lambda: runner.run(["apt-get", "install"]))
    assert "exited 100" in str(excinfo.value)
    assert excinfo.value.diagnostics == "E: Unable to locate package"
    assert procedure.status["packages"]["status"] == "failed"


def test_run_step_wraps_filesystem_failure(config):
    def broken():
        raise PermissionError("denied")

    procedure = Procedure(config, FakeRunner())
    with pytest.raises(StepFailed):
        procedure.run_step("files", "Writing files", broken)


def test_run_step_propagates_hardening_errors(config):
    def invalid():
        raise ValidationError("bad input")

    procedure = Procedure(config, FakeRunner())
    with pytest.raises(ValidationError):
        procedure.run_step("check", "Checking", invalid)
    assert procedure.status["check"] == {"status": "failed", "message": "bad input"}


def test_best_effort_collects_failures(config):
    runner = FakeRunner().on("userdel", returncode=6, stderr="userdel: user busy\n")
    procedure = Procedure(config, runner)
    assert procedure.best_effort("Remove account", ["userdel", "-r", "moltbot"]) is False
    assert procedure.best_effort("Reload", ["systemctl", "daemon-reload"]) is True
    assert list(procedure.warnings) == ["Remove account (exit 6): userdel: user busy"]


def test_warning_log():
    warnings = WarningLog()
    assert not warnings
    warnings.add("first")
    warnings.add("second")
    assert len(warnings) == 2
    assert list(warnings) == ["first", "second"]


def test_assume_defaults_accepts_only_listed_questions():
    prompter = AssumeDefaults(accept={"Proceed?"})
    assert prompter.confirm("Proceed?") is True
    assert prompter.confirm("Delete everything?") is False
    assert prompter.confirm("Keep going?", default=True) is True
    assert prompter.asked == ["Proceed?", "Delete everything?", "Keep going?"]
    with pytest.raises(ValidationError):
        prompter.ask("Which one?")


def test_scripted_prompter_replays_answers():
    prompter = ScriptedPrompter([True, "n", "2"])
    assert prompter.confirm("a?") is True
    assert prompter.confirm("b?") is False
    assert prompter.ask("c?") == "2"
    assert prompter.confirm("d?", default=True) is True
    with pytest.raises(ValidationError):
        prompter.ask("e?")


@pytest.mark.parametrize("error", [EOFError, KeyboardInterrupt])
def test_terminal_prompter_takes_default_when_input_ends(monkeypatch, error):
    def closed(*args, **kwargs):
        raise error()

    monkeypatch.setattr(prompts.Confirm, "ask", closed)
    monkeypatch.setattr(prompts.Prompt, "ask", closed)
    prompter = TerminalPrompter()
    assert prompter.confirm("Remove everything?") is False
    assert prompter.confirm("Keep going?", default=True) is True
    with pytest.raises(ValidationError):
        prompter.ask("Select a backup")
