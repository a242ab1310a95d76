from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from agent_gateway import netinit
from agent_gateway.config import NetworkConfig


def _which(available: Dict[str, str]):  # type: ignore[no-untyped-def]
    def fake(name: str) -> Optional[str]:
        return available.get(name)

    return fake


def _recorder(monkeypatch: pytest.MonkeyPatch, ok: bool = True) -> List[List[str]]:
    calls: List[List[str]] = []

    def fake_run(argv: List[str]) -> bool:
        calls.append(list(argv))
        return ok

    monkeypatch.setattr(netinit, "_run", fake_run)
    return calls


def test_prefers_iproute2(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(netinit.shutil, "which", _which({"ip": "/sbin/ip", "ifconfig": "/sbin/ifconfig"}))
    calls = _recorder(monkeypatch)

    assert netinit.configure_interface(NetworkConfig()) is True
    assert calls == [
        ["/sbin/ip", "link", "set", "eth0", "up"],
        ["/sbin/ip", "addr", "add", "192.168.127.2/24", "dev", "eth0"],
        ["/sbin/ip", "route", "add", "default", "via", "192.168.127.1", "dev", "eth0"],
    ]


def test_falls_back_to_ifconfig_and_route(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(netinit.shutil, "which", _which({"ifconfig": "/sbin/ifconfig", "route": "/sbin/route"}))
    calls = _recorder(monkeypatch)

    assert netinit.configure_interface(NetworkConfig()) is True
    assert calls == [
        ["/sbin/ifconfig", "eth0", "192.168.127.2", "netmask", "255.255.255.0", "up"],
        ["/sbin/route", "add", "default", "gw", "192.168.127.1"],
    ]


def test_no_tools_is_a_warning_not_an_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(netinit.shutil, "which", _which({}))
    calls = _recorder(monkeypatch)
    assert netinit.configure_interface(NetworkConfig()) is False
    assert calls == []


def test_command_failures_are_reported_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise FileNotFoundError("ip")

    monkeypatch.setattr(netinit.subprocess, "run", boom)
    assert netinit._run(["ip", "link"]) is False

    def failing(*args, **kwargs):  # type: ignore[no-untyped-def]
        return subprocess.CompletedProcess(args[0], 2, stdout="RTNETLINK answers: File exists\n")

    monkeypatch.setattr(netinit.subprocess, "run", failing)
    assert netinit._run(["ip", "addr"]) is False


def test_init_network_writes_resolv_conf(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(netinit.shutil, "which", _which({"ip": "/sbin/ip"}))
    _recorder(monkeypatch)
    resolv = tmp_path / "etc" / "resolv.conf"

    assert netinit.init_network(NetworkConfig(resolv_conf=str(resolv))) is True
    assert resolv.read_text(encoding="utf-8") == "nameserver 192.168.127.1\n"


def test_disabled_network_is_skipped(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _recorder(monkeypatch)
    resolv = tmp_path / "resolv.conf"

    assert netinit.init_network(NetworkConfig(enabled=False, resolv_conf=str(resolv))) is False
    assert calls == []
    assert not resolv.exists()


def test_ensure_workspace_creates_directory(tmp_path: Path) -> None:
    target = tmp_path / "a" / "workspace"
    assert netinit.ensure_workspace(str(target)) == target
    assert target.is_dir()
