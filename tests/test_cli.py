"""Tests for the luksvault command-line interface."""

import json
import os

import pytest

from luksvault.cli import main as cli
from luksvault.config import get_settings
from luksvault.core.devices import SimulatedBackend

DEVICE = "/dev/sim0"


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Environment for CLI runs: file vault, sqlite file and simulated devices."""
    env = {
        "LUKSVAULT_DEV_MODE": "true",
        "LUKSVAULT_DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}",
        "LUKSVAULT_VAULT_BACKEND": "file",
        "LUKSVAULT_KEY_STORE_DIR": str(tmp_path / "state" / "keys"),
        "LUKSVAULT_EPHEMERAL_DIR": str(tmp_path / "ephemeral"),
        "LUKSVAULT_KDF_ITERATIONS": "100000",
        "LUKSVAULT_DEVICE_BACKEND": "simulated",
        "LUKSVAULT_BACKUP_DIR": str(tmp_path / "header-backups"),
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)

    devices = SimulatedBackend(state_path=str(tmp_path / "state" / "simulated-devices.json"))
    devices.add_device(DEVICE)

    passphrase_file = tmp_path / "vault.pass"
    passphrase_file.write_text("correct horse battery staple\n")
    os.chmod(passphrase_file, 0o600)

    get_settings.cache_clear()
    yield str(passphrase_file)
    get_settings.cache_clear()


def run_cli(capsys, *argv):
    """Run the CLI and return (exit code, parsed JSON output)."""
    code = cli.main(["--actor", "alice", *argv])
    out = capsys.readouterr().out
    return code, json.loads(out)


class TestParser:
    """Test argument parsing."""

    def test_usage_error_exits_3(self, capsys):
        """Test argparse errors use the invalid-arguments exit code."""
        with pytest.raises(SystemExit) as exc:
            cli.main(["rotate", DEVICE])

        assert exc.value.code == 3
        assert json.loads(capsys.readouterr().out)["kind"] == "InvalidArguments"

    def test_no_command_prints_help(self, capsys):
        """Test running without a command."""
        assert cli.main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_backup_needs_target(self, cli_env, capsys):
        """Test backup without device or --all."""
        code, result = run_cli(capsys, "backup")

        assert code == 3
        assert result["status"] == "error"

    def test_enroll_format_flag_independent_of_output_format(self):
        """Test the global --format and enroll --format do not collide."""
        args = cli.create_parser().parse_args(["--format", "text", "enroll", DEVICE, "--format"])

        assert args.output_format == "text"
        assert args.format is True


class TestVolumeLifecycle:
    """Test a complete volume lifecycle through the CLI."""

    def test_register_enroll_unlock_lock(self, cli_env, capsys):
        """Test register, enroll, unlock, status and lock."""
        code, result = run_cli(capsys, "register", DEVICE, "--mount-point", "/mnt/sim0", "--rotation-interval-days", "90")
        assert code == 0
        assert result["volume"]["device_id"] == DEVICE

        code, result = run_cli(capsys, "enroll", DEVICE, "--format", "--passphrase-file", cli_env)
        assert code == 0
        assert result["slot"]["slot"] == 0
        assert "encrypted_key" not in result["slot"]

        code, result = run_cli(capsys, "unlock", DEVICE, "--passphrase-file", cli_env)
        assert code == 0
        assert result["state"] == "unlocked"

        code, result = run_cli(capsys, "status", DEVICE)
        assert code == 0
        volume = result["volumes"][0]
        assert volume["state"] == "unlocked"
        assert [s["slot"] for s in volume["slots"]] == [0]

        code, result = run_cli(capsys, "lock", DEVICE)
        assert code == 0
        assert result["state"] == "locked"

    def test_wrong_passphrase_exit_code(self, cli_env, tmp_path, capsys):
        """Test authentication failures exit with 4."""
        run_cli(capsys, "register", DEVICE)
        run_cli(capsys, "enroll", DEVICE, "--format", "--passphrase-file", cli_env)
        wrong = tmp_path / "wrong.pass"
        wrong.write_text("wrong\n")
        os.chmod(wrong, 0o600)

        code, result = run_cli(capsys, "unlock", DEVICE, "--passphrase-file", str(wrong))

        assert code == 4
        assert result["kind"] == "WrongPassphrase"

    def test_unknown_volume_exit_code(self, cli_env, capsys):
        """Test unknown volumes exit with 8."""
        code, result = run_cli(capsys, "status", "/dev/unknown")

        assert code == 8
        assert result["kind"] == "VolumeNotFound"

    def test_invalid_cipher(self, cli_env, capsys):
        """Test unsupported cipher parameters are a configuration error."""
        code, result = run_cli(capsys, "register", DEVICE, "--cipher", "rot13")

        assert code == 2
        assert result["kind"] == "InvalidCipherSpec"

    def test_backup_and_restore(self, cli_env, capsys):
        """Test restore requires --yes and then succeeds."""
        run_cli(capsys, "register", DEVICE)
        run_cli(capsys, "enroll", DEVICE, "--format", "--passphrase-file", cli_env)

        code, result = run_cli(capsys, "backup", DEVICE)
        assert code == 0
        path = result["backup"]["path"]

        code, result = run_cli(capsys, "restore", DEVICE, path)
        assert code == 5
        assert result["kind"] == "RestoreNotConfirmed"

        code, result = run_cli(capsys, "restore", DEVICE, path, "--yes")
        assert code == 0
        assert result["restored"]["path"] == path

    def test_rotate(self, cli_env, capsys):
        """Test a manual rotation moves the key to a new slot."""
        run_cli(capsys, "register", DEVICE)
        run_cli(capsys, "enroll", DEVICE, "--format", "--passphrase-file", cli_env)

        code, result = run_cli(capsys, "rotate", DEVICE, "--slot", "0", "--passphrase-file", cli_env)

        assert code == 0
        assert result["rotation"]["old_slot"] == 0
        assert result["rotation"]["new_slot"] == 1

    def test_invalid_settings(self, cli_env, monkeypatch, capsys):
        """Test invalid environment settings exit with 2."""
        monkeypatch.setenv("LUKSVAULT_KDF_ITERATIONS", "1000")
        get_settings.cache_clear()

        code, result = run_cli(capsys, "status")

        assert code == 2
        assert result["kind"] == "ConfigurationError"

    def test_invalid_slot(self, cli_env, capsys):
        """Test an out-of-range slot is reported as a resource error before formatting."""
        run_cli(capsys, "register", DEVICE)

        code, result = run_cli(capsys, "enroll", DEVICE, "--format", "--slot", "9", "--passphrase-file", cli_env)

        assert code == 7
        assert result["kind"] == "InvalidSlot"

    def test_deregister_decommission(self, cli_env, capsys):
        """Test deregistering refuses active slots unless decommissioning."""
        run_cli(capsys, "register", DEVICE)
        run_cli(capsys, "enroll", DEVICE, "--format", "--passphrase-file", cli_env)

        code, result = run_cli(capsys, "deregister", DEVICE)
        assert code == 7
        assert result["kind"] == "ActiveKeysExist"

        code, result = run_cli(capsys, "deregister", DEVICE, "--decommission")
        assert code == 0
        assert result["removed_slots"] == [0]

        code, result = run_cli(capsys, "status", DEVICE)
        assert code == 8
