"""Tests for the device backends."""

import os

import pytest

from luksvault.core.devices import CryptsetupBackend, SimulatedBackend, create_device_backend
from luksvault.core.errors import AuthenticationFailed, ConfigurationError, DeviceError, DeviceNotFound
from luksvault.core.registry import CipherSpec

LUKS1_DUMP = """LUKS header information for /dev/sda2

Version:        1
Cipher name:    aes
Key Slot 0: ENABLED
\tIterations:             1000
Key Slot 1: DISABLED
Key Slot 2: ENABLED
Key Slot 3: DISABLED
"""

LUKS2_DUMP = """LUKS header information
Version:        2

Keyslots:
  0: luks2
\tKey:        512 bits
  4: luks2
\tKey:        512 bits
Tokens:
Digests:
  0: pbkdf2
"""


class ScriptedCryptsetup(CryptsetupBackend):
    """Backend whose subprocess calls return scripted results."""

    def __init__(self, tmp_path, results=None):
        super().__init__(ephemeral_dir=str(tmp_path / "ephemeral"), proc_root=str(tmp_path / "proc"))
        self.results = list(results or [])
        self.commands: list[tuple] = []
        self.stdin: list = []

    async def _run(self, *args, stdin=None):
        self.commands.append(args)
        self.stdin.append(stdin)
        return self.results.pop(0) if self.results else (0, "", "")


class TestCryptsetupBackend:
    """Test argument handling and output parsing of the cryptsetup backend."""

    @pytest.mark.asyncio
    async def test_used_slots_luks1(self, tmp_path):
        """Test enabled slots are parsed from a LUKS1 dump."""
        backend = ScriptedCryptsetup(tmp_path, [(0, LUKS1_DUMP, "")])

        assert await backend.used_slots("/dev/sda2") == {0, 2}

    @pytest.mark.asyncio
    async def test_used_slots_luks2(self, tmp_path):
        """Test keyslots are parsed from a LUKS2 dump, ignoring digests."""
        backend = ScriptedCryptsetup(tmp_path, [(0, LUKS2_DUMP, "")])

        assert await backend.used_slots("/dev/sda2") == {0, 4}

    @pytest.mark.asyncio
    async def test_open_passes_key_on_stdin(self, tmp_path):
        """Test key material is never placed on the command line."""
        backend = ScriptedCryptsetup(tmp_path)

        await backend.open("/dev/sda2", "luks-sda2", b"secret-key")

        assert b"secret-key" not in " ".join(backend.commands[0]).encode()
        assert "--key-file=-" in backend.commands[0]
        assert backend.stdin[0] == b"secret-key"

    @pytest.mark.asyncio
    async def test_exit_two_is_authentication_failure(self, tmp_path):
        """Test cryptsetup's no-key exit status."""
        backend = ScriptedCryptsetup(tmp_path, [(2, "", "No key available with this passphrase.")])

        with pytest.raises(AuthenticationFailed):
            await backend.open("/dev/sda2", "luks-sda2", b"wrong")

    @pytest.mark.asyncio
    async def test_other_exit_is_device_error(self, tmp_path):
        """Test other failures carry cryptsetup's message."""
        backend = ScriptedCryptsetup(tmp_path, [(5, "", "Device luks-sda2 already exists.")])

        with pytest.raises(DeviceError, match="already exists"):
            await backend.open("/dev/sda2", "luks-sda2", b"key")

    @pytest.mark.asyncio
    async def test_test_key(self, tmp_path):
        """Test test-passphrase results map to booleans."""
        backend = ScriptedCryptsetup(tmp_path, [(0, "", ""), (2, "", ""), (1, "", "I/O error")])

        assert await backend.test_key("/dev/sda2", b"good", slot=1) is True
        assert "--key-slot" in backend.commands[0]
        assert await backend.test_key("/dev/sda2", b"bad") is False
        with pytest.raises(DeviceError):
            await backend.test_key("/dev/sda2", b"key")

    @pytest.mark.asyncio
    async def test_add_key_cleans_up_key_files(self, tmp_path):
        """Test the two key files exist only during luksAddKey."""
        backend = ScriptedCryptsetup(tmp_path)

        await backend.add_key("/dev/sda2", b"old", b"new", slot=3)

        args = backend.commands[0]
        assert "luksAddKey" in args
        key_files = [args[args.index("--key-file") + 1], args[-1]]
        assert not any(os.path.exists(path) for path in key_files)
        assert os.listdir(tmp_path / "ephemeral") == []

    @pytest.mark.asyncio
    async def test_format_uses_cipher_spec(self, tmp_path):
        """Test luksFormat receives the cipher parameters."""
        backend = ScriptedCryptsetup(tmp_path)

        await backend.format("/dev/sda2", CipherSpec(algorithm="aes-xts-plain64", key_size=512), b"key")

        args = backend.commands[0]
        assert args[args.index("--cipher") + 1] == "aes-xts-plain64"
        assert args[args.index("--key-size") + 1] == "512"

    @pytest.mark.asyncio
    async def test_is_mounted_reads_proc_mounts(self, tmp_path):
        """Test mount detection from /proc/mounts, including escaped spaces."""
        proc = tmp_path / "proc"
        proc.mkdir()
        (proc / "mounts").write_text(
            "/dev/mapper/luks-sda2 /srv/data ext4 rw 0 0\n"
            "/dev/mapper/luks-sdb1 /srv/my\\040files ext4 rw 0 0\n"
        )
        backend = ScriptedCryptsetup(tmp_path)

        assert await backend.is_mounted("/srv/data")
        assert await backend.is_mounted("/srv/my files")
        assert not await backend.is_mounted("/srv/other")

    @pytest.mark.asyncio
    async def test_open_handles(self, tmp_path):
        """Test open descriptors below the mount point are counted."""
        mount_point = tmp_path / "mnt"
        mount_point.mkdir()
        (mount_point / "file").write_text("x")
        fd_dir = tmp_path / "proc" / "123" / "fd"
        fd_dir.mkdir(parents=True)
        os.symlink(os.path.realpath(mount_point / "file"), fd_dir / "3")
        os.symlink("/elsewhere", fd_dir / "4")
        (tmp_path / "proc" / "self").mkdir()
        backend = ScriptedCryptsetup(tmp_path)

        assert await backend.open_handles(str(mount_point)) == 1

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        """Test a missing cryptsetup binary is a device error."""
        backend = CryptsetupBackend(
            ephemeral_dir=str(tmp_path), cryptsetup_path=str(tmp_path / "no-such-cryptsetup"),
        )

        with pytest.raises(DeviceError, match="Executable not found"):
            await backend.used_slots("/dev/sda2")


class TestSimulatedBackend:
    """Test the simulated backend used in dev mode."""

    @pytest.mark.asyncio
    async def test_state_persists(self, tmp_path):
        """Test headers survive a new backend instance."""
        state = str(tmp_path / "devices.json")
        backend = SimulatedBackend(state_path=state)
        backend.add_device("/dev/sim0")
        await backend.format("/dev/sim0", CipherSpec(), b"key")

        reloaded = SimulatedBackend(state_path=state)

        assert await reloaded.test_key("/dev/sim0", b"key") is True
        assert await reloaded.used_slots("/dev/sim0") == {0}

    @pytest.mark.asyncio
    async def test_missing_device(self):
        """Test operations on absent devices."""
        with pytest.raises(DeviceNotFound):
            await SimulatedBackend().used_slots("/dev/absent")

    @pytest.mark.asyncio
    async def test_open_wrong_key(self):
        """Test a wrong key does not open the mapping."""
        backend = SimulatedBackend()
        backend.add_device("/dev/sim0")
        await backend.format("/dev/sim0", CipherSpec(), b"key")

        with pytest.raises(AuthenticationFailed):
            await backend.open("/dev/sim0", "luks-sim0", b"other")

        assert not await backend.is_open("luks-sim0")


class TestFactory:
    """Test device backend selection."""

    def test_cryptsetup(self, settings):
        """Test the cryptsetup backend takes its tool paths from settings."""
        settings.device_backend = "cryptsetup"
        settings.cryptsetup_path = "/sbin/cryptsetup"

        backend = create_device_backend(settings)

        assert isinstance(backend, CryptsetupBackend)
        assert backend.cryptsetup == "/sbin/cryptsetup"

    def test_simulated_requires_dev_mode(self, settings):
        """Test simulated devices are refused outside dev mode."""
        settings.dev_mode = False

        with pytest.raises(ConfigurationError, match="dev_mode"):
            create_device_backend(settings)

    def test_unknown_backend(self, settings):
        """Test an unknown backend name."""
        settings.device_backend = "zfs"

        with pytest.raises(ConfigurationError, match="Unknown device backend"):
            create_device_backend(settings)
