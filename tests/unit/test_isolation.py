"""Tests for process isolation settings."""

import shutil
from pathlib import Path

import pytest

from exec_relay.sandbox.isolation import Isolation, IsolationMode


class TestIsolationModes:
    """Tests for strategy resolution and command wrapping."""

    def test_none_leaves_command_alone(self, tmp_path: Path) -> None:
        isolation = Isolation("none")

        assert isolation.mode == IsolationMode.NONE
        assert isolation.available
        assert isolation.wrap(["python3", "main.py"], tmp_path) == ["python3", "main.py"]

    def test_auto_without_tools_is_unavailable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("exec_relay.sandbox.isolation.shutil.which", lambda name: None)

        isolation = Isolation("auto")

        assert not isolation.available
        assert isolation.mode == IsolationMode.NONE
        assert "bwrap" in (isolation.error or "")
        assert "unshare" in (isolation.error or "")

    def test_auto_falls_back_to_unshare(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            "exec_relay.sandbox.isolation.shutil.which", lambda name: f"/usr/bin/{name}"
        )
        monkeypatch.setattr(
            Isolation, "_namespaces_work", lambda self, mode: mode == IsolationMode.UNSHARE
        )

        isolation = Isolation("auto")

        assert isolation.available
        assert isolation.mode == IsolationMode.UNSHARE

    def test_auto_prefers_bwrap(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            "exec_relay.sandbox.isolation.shutil.which", lambda name: f"/usr/bin/{name}"
        )
        monkeypatch.setattr(Isolation, "_namespaces_work", lambda self, mode: True)

        assert Isolation("auto").mode == IsolationMode.BWRAP

    def test_auto_skips_tool_that_cannot_create_namespaces(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "exec_relay.sandbox.isolation.shutil.which", lambda name: f"/usr/bin/{name}"
        )
        monkeypatch.setattr(Isolation, "_namespaces_work", lambda self, mode: False)

        assert not Isolation("auto").available

    def test_explicit_missing_strategy_is_unavailable(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("exec_relay.sandbox.isolation.shutil.which", lambda name: None)

        isolation = Isolation("bwrap")

        assert not isolation.available
        assert "bwrap" in (isolation.error or "")

    @pytest.mark.skipif(shutil.which("bwrap") is None, reason="bwrap not installed")
    def test_bwrap_wrapping(self, tmp_path: Path) -> None:
        isolation = Isolation("bwrap")

        argv = isolation.wrap(["python3", "main.py"], tmp_path)

        assert "--unshare-net" in argv
        assert argv[argv.index("--chdir") + 1] == str(tmp_path)
        assert argv[-3:] == ["--", "python3", "main.py"]

    @pytest.mark.skipif(shutil.which("bwrap") is None, reason="bwrap not installed")
    def test_bwrap_with_network(self, tmp_path: Path) -> None:
        argv = Isolation("bwrap", allow_network=True).wrap(["true"], tmp_path)

        assert "--unshare-net" not in argv

    @pytest.mark.skipif(shutil.which("unshare") is None, reason="unshare not installed")
    def test_unshare_wrapping(self, tmp_path: Path) -> None:
        argv = Isolation("unshare").wrap(["true"], tmp_path)

        assert "--net" in argv
        assert argv[-1] == "true"

    def test_describe(self) -> None:
        info = Isolation("none").describe()

        assert info["mode"] == "none"
        assert info["available"] is True
        assert info["error"] is None
        assert info["allow_network"] is False


class TestEnvironment:
    """Tests for the scrubbed child environment."""

    def test_environment_is_minimal(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXEC_RELAY_SECRET", "hunter2")

        env = Isolation("none").environment(tmp_path, {"PYTHONIOENCODING": "utf-8"})

        assert "EXEC_RELAY_SECRET" not in env
        assert env["HOME"] == str(tmp_path)
        assert env["TMPDIR"] == str(tmp_path)
        assert env["PYTHONIOENCODING"] == "utf-8"
