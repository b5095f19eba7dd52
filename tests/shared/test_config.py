"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest

from windbag.config import Settings, get_settings
from windbag.shared.enums import CopyPhase, WorkerPhase
from windbag.shared.exceptions import BuildError, NetworkError, TransferError, TransportClosed, WindbagError


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("WINDBAG_WORK_DIR", raising=False)
        s = get_settings()
        assert s.work_dir == "C:/etc/windbag"
        assert s.keepalive_interval == 5.0
        assert s.dial_retry_timeout == 600
        assert s.retry_backoff_seconds == "1,2,5,10"
        assert s.registry_insecure is True

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WINDBAG_PUSH_TIMEOUT", "60")
        monkeypatch.setenv("WINDBAG_POWERSHELL_EXECUTOR", "pwsh.exe")
        s = Settings()
        assert s.push_timeout == 60
        assert s.powershell_executor == "pwsh.exe"


class TestExceptions:
    def test_hint_is_appended(self) -> None:
        exc = NetworkError("failed to dial", hint="check the firewall")
        assert str(exc) == "failed to dial, check the firewall"
        assert exc.hint == "check the firewall"

    def test_hierarchy(self) -> None:
        assert issubclass(TransportClosed, NetworkError)
        assert issubclass(TransferError, WindbagError)

    def test_transfer_error_carries_phase(self) -> None:
        exc = TransferError("copy failed", phase=CopyPhase.COPY, written=10)
        assert exc.phase is CopyPhase.COPY
        assert exc.written == 10

    def test_build_error_names_worker_and_phase(self) -> None:
        exc = BuildError("boom", worker="a:22", phase=WorkerPhase.PUSHING)
        assert exc.worker == "a:22"
        assert exc.phase is WorkerPhase.PUSHING
