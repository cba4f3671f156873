"""Tests for the decommission procedure."""

from moltbot_hardening.decommission import CONFIRM_REMOVE, Decommissioner
from moltbot_hardening.prompts import AssumeDefaults, ScriptedPrompter


def test_declining_changes_nothing(deployed, healthy_runner):
    prompter = ScriptedPrompter([False])
    assert Decommissioner(deployed, healthy_runner, prompter).run() is False
    assert healthy_runner.calls == []
    assert not deployed.backup_root.exists()
    assert deployed.config_file.exists()


def test_forced_removal_keeps_optional_components(deployed, healthy_runner):
    deployed.jail_file.parent.mkdir(parents=True)
    deployed.jail_file.write_text("[sshd]\n")
    deployed.logrotate_file.parent.mkdir(parents=True)
    deployed.logrotate_file.write_text("rotate\n")
    prompter = AssumeDefaults(accept={CONFIRM_REMOVE})
    decommissioner = Decommissioner(deployed, healthy_runner, prompter)

    assert decommissioner.run() is True

    snapshot = decommissioner.snapshot
    assert snapshot is not None and snapshot.name.startswith("backup_")
    assert (snapshot.path / "config" / "config.json").is_file()
    assert (snapshot.path / "install" / "docker-compose.yml").is_file()
    assert (snapshot.path / "logs" / "gateway.log").is_file()

    for path in (
        deployed.install_dir,
        deployed.config_dir,
        deployed.log_dir,
        deployed.unit_file,
        deployed.logrotate_file,
    ):
        assert not path.exists()
    assert deployed.jail_file.exists()

    assert healthy_runner.ran("systemctl", "stop", "moltbot.service")
    assert healthy_runner.ran("systemctl", "disable", "moltbot.service")
    assert healthy_runner.ran(
        "docker", "compose", "-f", str(deployed.compose_file), "down", "--volumes", "--remove-orphans"
    )
    assert healthy_runner.ran("systemctl", "daemon-reload")
    assert not healthy_runner.ran("userdel")
    assert not healthy_runner.ran("ufw", "--force", "disable")
    assert not healthy_runner.ran("apt-get")
    assert not healthy_runner.ran("tailscale", "down")
    assert snapshot.path.is_dir()
    assert [p.name for p in deployed.backup_root.iterdir()] == [snapshot.name]


def test_compose_failure_falls_back_to_individual_removal(deployed, healthy_runner):
    healthy_runner.on("docker", "compose", returncode=1, stderr="no such service\n")
    decommissioner = Decommissioner(
        deployed, healthy_runner, AssumeDefaults(accept={CONFIRM_REMOVE})
    )
    decommissioner.run()

    assert healthy_runner.ran("docker", "rm", "-f", "moltbot")
    assert healthy_runner.ran("docker", "volume", "rm", "moltbot-data")
    assert healthy_runner.ran("docker", "network", "rm", "moltbot-net")
    assert any("Compose down" in w for w in decommissioner.warnings)


def test_removal_failures_are_collected(deployed, healthy_runner):
    healthy_runner.on("systemctl", "stop", returncode=5, stderr="Unit not loaded\n")
    decommissioner = Decommissioner(
        deployed, healthy_runner, AssumeDefaults(accept={CONFIRM_REMOVE})
    )
    assert decommissioner.run() is True
    assert any("Unit not loaded" in w for w in decommissioner.warnings)
    assert not deployed.install_dir.exists()


def test_accepting_every_prompt_never_touches_ssh(deployed, healthy_runner):
    deployed.jail_file.parent.mkdir(parents=True)
    deployed.jail_file.write_text("[sshd]\n")
    # main, account, tailscale rule, disable ufw, jail, fail2ban package,
    # docker, tailscale down, tailscale uninstall, then keep the backup
    prompter = ScriptedPrompter([True] * 9 + [False])
    decommissioner = Decommissioner(deployed, healthy_runner, prompter)
    decommissioner.run()

    assert len(prompter.asked) == 10
    assert healthy_runner.ran("pkill", "-u", "moltbot")
    assert healthy_runner.ran("userdel", "-r", "moltbot")
    assert healthy_runner.ran("ufw", "delete", "allow", "41641/udp")
    assert healthy_runner.ran("ufw", "--force", "disable")
    assert healthy_runner.ran("apt-get", "purge", "-y", "fail2ban")
    assert healthy_runner.ran("apt-get", "purge", "-y", "docker.io", "docker-compose-v2")
    assert healthy_runner.ran("tailscale", "down")
    assert not deployed.jail_file.exists()
    for call in healthy_runner.commands("ufw"):
        assert "22/tcp" not in call and "ssh" not in call
    assert decommissioner.snapshot.path.is_dir()


def test_backup_deleted_on_request(deployed, healthy_runner):
    prompter = ScriptedPrompter([True, False, False, False, False, False, False, True])
    decommissioner = Decommissioner(deployed, healthy_runner, prompter)
    decommissioner.run()
    assert prompter.asked[-1].startswith("Delete the backup")
    assert decommissioner.snapshot is None
    assert list(deployed.backup_root.iterdir()) == []


def test_account_taken_from_installed_unit(deployed, healthy_runner):
    deployed.unit_file.write_text("[Service]\nUser=svc\n")
    prompter = ScriptedPrompter([True, True])
    Decommissioner(deployed, healthy_runner, prompter).run()

    assert prompter.asked[1] == "Remove the service account 'svc' and its home?"
    assert healthy_runner.ran("pkill", "-u", "svc")
    assert healthy_runner.ran("userdel", "-r", "svc")
    assert not healthy_runner.ran("userdel", "-r", "moltbot")
