"""Tests for the restore procedure."""

import json
import os
import stat

import pytest
from click.testing import CliRunner

from moltbot_hardening import restore
from moltbot_hardening.backups import create_snapshot
from moltbot_hardening.decommission import CONFIRM_REMOVE, Decommissioner
from moltbot_hardening.errors import SecurityViolation, StepFailed, ValidationError, WarningLog
from moltbot_hardening.prompts import AssumeDefaults, ScriptedPrompter
from moltbot_hardening.restore import Restorer


def _snapshot(config, runner):
    return create_snapshot(runner, config, "backup", WarningLog())


def test_round_trip_restores_config_and_install(deployed, healthy_runner):
    original_config = deployed.config_file.read_text()
    snapshot = _snapshot(deployed, healthy_runner)

    deployed.config_file.write_text('{"gateway": {"auth": {"mode": "none"}}}\n')
    deployed.config_file.chmod(0o644)
    deployed.compose_file.unlink()

    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([True, False]))
    assert restorer.run(str(snapshot.path)) is True

    assert deployed.config_file.read_text() == original_config
    assert stat.S_IMODE(deployed.config_file.stat().st_mode) == 0o600
    assert stat.S_IMODE(deployed.config_dir.stat().st_mode) == 0o750
    assert stat.S_IMODE(deployed.compose_file.stat().st_mode) == 0o640
    assert healthy_runner.ran("chown", "-R", "root:root", str(deployed.config_dir))
    assert healthy_runner.ran("chown", "-R", "moltbot:moltbot", str(deployed.install_dir))
    assert healthy_runner.ran("systemctl", "start", "moltbot.service")

    safety = restorer.safety_snapshot
    assert safety.name.startswith("pre_rollback_")
    saved = json.loads((safety.path / "config" / "config.json").read_text())
    assert saved["gateway"]["auth"]["mode"] == "none"


def test_volume_archive_is_imported(deployed, healthy_runner):
    snapshot = _snapshot(deployed, healthy_runner)
    (snapshot.path / "moltbot-data.tar.gz").write_bytes(b"")
    Restorer(deployed, healthy_runner, ScriptedPrompter([True, False])).run(str(snapshot.path))
    assert healthy_runner.ran("docker", "volume", "create", "moltbot-data")


def test_logs_restored_only_when_confirmed(deployed, healthy_runner):
    snapshot = _snapshot(deployed, healthy_runner)
    (deployed.log_dir / "gateway.log").write_text("newer\n")

    Restorer(deployed, healthy_runner, ScriptedPrompter([True, False])).run(str(snapshot.path))
    assert (deployed.log_dir / "gateway.log").read_text() == "newer\n"

    Restorer(deployed, healthy_runner, ScriptedPrompter([True, True])).run(str(snapshot.path))
    assert (deployed.log_dir / "gateway.log").read_text() == "started\n"


def test_invalid_snapshot_never_stops_service(deployed, healthy_runner):
    bad = deployed.backup_root / "backup_logs_only"
    (bad / "logs").mkdir(parents=True)
    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([True]))
    with pytest.raises(ValidationError):
        restorer.run(str(bad))
    assert not healthy_runner.ran("systemctl")
    assert len(list(deployed.backup_root.iterdir())) == 1


def test_missing_snapshot_path(deployed, healthy_runner):
    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([True]))
    with pytest.raises(ValidationError):
        restorer.run("/nonexistent/backup_1")


def test_declining_changes_nothing(deployed, healthy_runner):
    snapshot = _snapshot(deployed, healthy_runner)
    healthy_runner.calls.clear()
    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([False]))
    assert restorer.run(str(snapshot.path)) is False
    assert healthy_runner.calls == []


def test_snapshot_resolved_by_name(deployed, healthy_runner):
    snapshot = _snapshot(deployed, healthy_runner)
    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([True, False]))
    assert restorer.run(snapshot.name) is True


def test_interactive_selection_lists_newest_first(deployed, healthy_runner):
    older = _snapshot(deployed, healthy_runner)
    os.utime(older.path, (1_000_000, 1_000_000))
    newer = _snapshot(deployed, healthy_runner)
    os.utime(newer.path, (2_000_000, 2_000_000))

    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter(["1"]))
    assert restorer.choose().path == newer.path


def test_no_snapshots_is_an_error(config, healthy_runner):
    restorer = Restorer(config, healthy_runner, ScriptedPrompter(["1"]))
    with pytest.raises(ValidationError):
        restorer.run()


@pytest.mark.parametrize("answer", ["0", "2", "abc", ""])
def test_bad_selection_is_an_error(deployed, healthy_runner, answer):
    _snapshot(deployed, healthy_runner)
    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([answer]))
    with pytest.raises(ValidationError):
        restorer.run()
    assert not healthy_runner.ran("systemctl")


def test_missing_unit_is_reinstalled_for_original_user(deployed, healthy_runner):
    deployed.unit_file.write_text("[Service]\nUser=alice\n")
    snapshot = _snapshot(deployed, healthy_runner)
    # the unit file is read before it disappears
    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([True, False]))
    original_backup = restorer.backup_current

    def backup_then_lose_unit():
        result = original_backup()
        deployed.unit_file.unlink()
        return result

    restorer.backup_current = backup_then_lose_unit
    restorer.run(str(snapshot.path))

    assert "User=alice" in deployed.unit_file.read_text()
    assert healthy_runner.ran("systemctl", "enable", "moltbot.service")
    assert healthy_runner.ran("chown", "-R", "alice:alice", str(deployed.install_dir))


def test_failed_post_restore_check(deployed, healthy_runner):
    snapshot = _snapshot(deployed, healthy_runner)
    healthy_runner.on("docker", "ps", stdout="")
    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([True, False]))
    with pytest.raises(StepFailed) as excinfo:
        restorer.run(str(snapshot.path))
    assert "not running" in str(excinfo.value)
    assert restorer.status["verify"]["status"] == "failed"


def test_force_without_snapshot_exits_nonzero(tmp_path):
    result = CliRunner().invoke(
        restore.main, ["--force"], env={"MOLTBOT_LOG_FILE": str(tmp_path / "restore.log")}
    )
    assert result.exit_code == 1


def test_exposed_port_after_restore_is_fatal(deployed, healthy_runner):
    snapshot = _snapshot(deployed, healthy_runner)
    healthy_runner.on("ss", "-ltnH", stdout="LISTEN 0 4096 0.0.0.0:18789 0.0.0.0:*\n")
    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([True, False]))
    with pytest.raises(SecurityViolation):
        restorer.run(str(snapshot.path))


def test_decommission_then_restore_round_trip(deployed, healthy_runner):
    original_config = deployed.config_file.read_text()
    decommissioner = Decommissioner(
        deployed, healthy_runner, AssumeDefaults(accept={CONFIRM_REMOVE})
    )
    decommissioner.run()
    assert not deployed.config_file.exists()
    assert not deployed.unit_file.exists()

    restorer = Restorer(deployed, healthy_runner, ScriptedPrompter([True, False]))
    assert restorer.run(str(decommissioner.snapshot.path)) is True

    assert deployed.config_file.read_text() == original_config
    assert "User=moltbot" in deployed.unit_file.read_text()
    assert restorer.status["verify"]["status"] == "success"
