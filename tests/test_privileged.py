"""Tests for PrivilegedRunner.

Runs real, harmless commands (sh, true) without elevation; elevation logic is
tested by patching is_root().
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from nest_vm.exceptions import CommandFailedError, CommandTimeoutError, PrivilegeError
from nest_vm.privileged import PrivilegedRunner
from nest_vm.settings import Settings

# ============================================================================
# Elevation
# ============================================================================


class TestElevation:
    """Tests for elevation_prefix() / check_privileges()."""

    def test_root_runs_directly(self, settings: Settings) -> None:
        with patch("nest_vm.privileged.is_root", return_value=True):
            assert PrivilegedRunner(settings).elevation_prefix() == []

    def test_sudo_prefix(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"use_sudo": True})
        with patch("nest_vm.privileged.is_root", return_value=False):
            assert PrivilegedRunner(settings).elevation_prefix() == ["sudo", "-n"]

    def test_container_runs_directly(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"containerized": True, "require_privileges": True})
        with patch("nest_vm.privileged.is_root", return_value=False):
            assert PrivilegedRunner(settings).elevation_prefix() == []

    def test_unprivileged_rejected(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"require_privileges": True})
        with patch("nest_vm.privileged.is_root", return_value=False), pytest.raises(PrivilegeError):
            PrivilegedRunner(settings).check_privileges()

    async def test_elevate_false_skips_check(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"require_privileges": True})
        with patch("nest_vm.privileged.is_root", return_value=False):
            result = await PrivilegedRunner(settings).run(["true"], step="check", elevate=False)
        assert result.returncode == 0


# ============================================================================
# Execution
# ============================================================================


class TestRun:
    """Tests for run()."""

    async def test_captures_output(self, settings: Settings) -> None:
        result = await PrivilegedRunner(settings).run(["sh", "-c", "echo out; echo err >&2"], step="echo")
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    async def test_nonzero_exit(self, settings: Settings) -> None:
        with pytest.raises(CommandFailedError) as exc_info:
            await PrivilegedRunner(settings).run(["sh", "-c", "echo boom >&2; exit 3"], step="explode")
        err = exc_info.value
        assert err.returncode == 3
        assert err.step == "explode"
        assert "boom" in err.stderr
        assert err.message.startswith("explode:")
        assert err.context["argv"][-1] == "echo boom >&2; exit 3"

    async def test_missing_executable(self, settings: Settings) -> None:
        with pytest.raises(CommandFailedError) as exc_info:
            await PrivilegedRunner(settings).run(["/nonexistent/qemu-img"], step="create-disk")
        assert exc_info.value.returncode is None

    async def test_timeout_terminates(self, settings: Settings) -> None:
        with pytest.raises(CommandTimeoutError) as exc_info:
            await PrivilegedRunner(settings).run(["sleep", "30"], step="slow", timeout=0.2)
        assert isinstance(exc_info.value, CommandFailedError)
        assert exc_info.value.context["timeout_seconds"] == 0.2

    async def test_cwd(self, settings: Settings, tmp_path: Path) -> None:
        result = await PrivilegedRunner(settings).run(["pwd"], step="pwd", cwd=tmp_path)
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    async def test_output_path_appends(self, settings: Settings, tmp_path: Path) -> None:
        log = tmp_path / "vm" / "qemu.log"
        runner = PrivilegedRunner(settings)
        await runner.run(["sh", "-c", "echo one"], step="launch", output_path=log)
        await runner.run(["sh", "-c", "echo two >&2"], step="launch", output_path=log)
        assert log.read_text() == "one\ntwo\n"

    async def test_output_path_failure(self, settings: Settings, tmp_path: Path) -> None:
        log = tmp_path / "qemu.log"
        with pytest.raises(CommandFailedError) as exc_info:
            await PrivilegedRunner(settings).run(["sh", "-c", "echo bad args >&2; exit 1"], step="launch", output_path=log)
        assert exc_info.value.returncode == 1
        assert "bad args" in log.read_text()
