"""Tests for per-worker build state."""

from __future__ import annotations

from windbag.builder.state import BuildWorkerState
from windbag.shared.enums import WorkerPhase
from windbag.shared.models import WorkerEndpoint


class TestBuildWorkerState:
    def test_defaults(self, endpoint: WorkerEndpoint) -> None:
        state = BuildWorkerState(endpoint=endpoint)
        assert state.address == "10.0.0.1:22"
        assert state.phase is WorkerPhase.UNCONNECTED
        assert not state.facts_known
        assert not state.context_shipped

    def test_facts_and_suffix(self, endpoint: WorkerEndpoint) -> None:
        state = BuildWorkerState(endpoint=endpoint)
        state.apply_facts({"os_build": 17763, "os_release": "1809"})
        state.os_arch = "amd64"

        assert state.facts_known
        assert state.tag_suffix == "windows-amd64-1809"
        assert state.suffixed("thxcode/tool:v1") == "thxcode/tool:v1-windows-amd64-1809"

    def test_to_facts(self, endpoint: WorkerEndpoint) -> None:
        state = BuildWorkerState(endpoint=endpoint, os_build=18362, os_release="1903", os_arch="amd64")
        state.buildpath = "C:/etc/windbag/buildpath/tool"
        state.dockerfile = "C:/etc/windbag/dockerfile/Dockerfile.tool"

        facts = state.to_facts()
        assert state.context_shipped
        assert facts.address == "10.0.0.1:22"
        assert facts.os_build == 18362
        assert facts.tag_suffix == state.tag_suffix
