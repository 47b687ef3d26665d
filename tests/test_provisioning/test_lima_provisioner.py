"""Tests for the Lima provisioner."""

import json

import pytest

from kai.errors import UnsupportedPlatformError
from kai.infrastructure.process import CommandResult
from kai.provisioning.lima import LimaProvisioner, parse_vm_list
from kai.provisioning.platforms import host_arch, host_os, platform_key


class TestParseVmList:
    def test_array(self):
        assert parse_vm_list('[{"name": "default", "status": "Running"}]') == [
            {"name": "default", "status": "Running"}
        ]

    def test_single_object(self):
        assert parse_vm_list('{"name": "default"}') == [{"name": "default"}]

    def test_one_object_per_line(self):
        output = '{"name": "default", "status": "Stopped"}\n{"name": "docker", "status": "Running"}\n'
        assert [vm["name"] for vm in parse_vm_list(output)] == ["default", "docker"]

    def test_empty(self):
        assert parse_vm_list("  \n") == []


@pytest.fixture
def lima(tmp_path):
    prov = LimaProvisioner(install_dir=tmp_path / "lima", resources_dir=tmp_path / "res", os_name="darwin", arch="arm64")
    prov.bin_dir.mkdir(parents=True)
    prov.limactl_path.write_text("")
    return prov


class FakeLimactl:
    def __init__(self, vms):
        self.vms = vms
        self.calls = []

    async def __call__(self, argv, env=None, stdin=None, check=True):
        self.calls.append(argv[1:])
        if argv[1] == "list":
            return CommandResult(0, "\n".join(json.dumps(vm) for vm in self.vms), "")
        return CommandResult(0, "", "")


class TestVmLifecycle:
    @pytest.mark.asyncio
    async def test_status_queries(self, lima, monkeypatch):
        monkeypatch.setattr("kai.provisioning.lima.run_command", FakeLimactl([{"name": "default", "status": "Running"}]))
        assert await lima.vm_exists() is True
        assert await lima.is_running() is True

    @pytest.mark.asyncio
    async def test_first_start_creates_vm(self, lima, monkeypatch):
        limactl = FakeLimactl([])
        monkeypatch.setattr("kai.provisioning.lima.run_command", limactl)

        await lima.start()

        assert limactl.calls[-1] == ["start", "--tty=false", "--name=default", "template://default"]

    @pytest.mark.asyncio
    async def test_stopped_vm_is_started(self, lima, monkeypatch):
        limactl = FakeLimactl([{"name": "default", "status": "Stopped"}])
        monkeypatch.setattr("kai.provisioning.lima.run_command", limactl)

        await lima.start()

        assert limactl.calls[-1] == ["start", "--tty=false", "default"]

    @pytest.mark.asyncio
    async def test_delete_forces(self, lima, monkeypatch):
        limactl = FakeLimactl([{"name": "default", "status": "Stopped"}])
        monkeypatch.setattr("kai.provisioning.lima.run_command", limactl)

        await lima.delete()

        assert limactl.calls[-1] == ["delete", "--force", "default"]

    @pytest.mark.asyncio
    async def test_missing_limactl_means_no_vms(self, tmp_path):
        prov = LimaProvisioner(install_dir=tmp_path / "none", resources_dir=tmp_path, os_name="darwin", arch="x64")
        assert await prov.list_vms() == []


class TestPlatformGate:
    @pytest.mark.asyncio
    async def test_install_rejected_off_macos(self, tmp_path):
        prov = LimaProvisioner(install_dir=tmp_path / "lima", resources_dir=tmp_path, os_name="linux", arch="x64")
        assert prov.supported is False
        with pytest.raises(UnsupportedPlatformError):
            await prov.install()

    def test_prebundled_ignored_off_macos(self, tmp_path):
        (tmp_path / "bundled-runtime" / "linux-x64").mkdir(parents=True)
        prov = LimaProvisioner(install_dir=tmp_path / "lima", resources_dir=tmp_path, os_name="linux", arch="x64")
        assert prov.has_prebundled() is False

    def test_host_platform(self):
        assert host_os() in ("darwin", "linux", "win32")
        assert host_arch() in ("arm64", "x64")
        assert platform_key("linux", "arm64") == "linux-arm64"
