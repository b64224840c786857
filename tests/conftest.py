import subprocess
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from pve_lxc_updater import ProxmoxLXCUpdater


class FakeProcess:
    """Minimal subprocess.Popen result: iterable stdout and an exit status."""

    def __init__(self, lines: List[str], returncode: int):
        self.stdout = iter(lines)
        self.returncode = returncode

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def wait(self):
        return self.returncode


class FakePveHost:
    """Stands in for subprocess.run on a Proxmox node running pct and whiptail."""

    def __init__(self, containers: List[Dict], confirm: bool = True, selection: str = "",
                 checklist_rc: int = 0, list_rc: int = 0):
        self.containers = {c["ctid"]: dict(c) for c in containers}
        self.order = [c["ctid"] for c in containers]
        self.confirm = confirm
        self.selection = selection
        self.checklist_rc = checklist_rc
        self.list_rc = list_rc
        self.calls: List[List[str]] = []
        self.extra_rows: List[str] = []

    def __call__(self, command, **kwargs):
        command = list(command)
        self.calls.append(command)
        self._kwargs = kwargs
        if command[0] == "whiptail":
            return self._whiptail(command)
        return self._pct(command, command[1:], kwargs)

    def _whiptail(self, command):
        if "--yesno" in command:
            return subprocess.CompletedProcess(command, 0 if self.confirm else 1)
        return subprocess.CompletedProcess(command, self.checklist_rc, None, self.selection)

    def _decode(self, data, kwargs):
        """Decode bytes the way text=True does, honouring errors=."""
        if isinstance(data, bytes) and kwargs.get("text"):
            return data.decode("utf-8", kwargs.get("errors") or "strict")
        return data

    def _done(self, command, returncode=0, stdout="", stderr=""):
        return subprocess.CompletedProcess(
            command, returncode, self._decode(stdout, self._kwargs), self._decode(stderr, self._kwargs))

    def popen(self, command, **kwargs):
        """Stands in for subprocess.Popen; only 'pct exec <id> -- sh -c' is streamed."""
        command = list(command)
        self.calls.append(command)
        ct = self.containers[int(command[2])]
        assert command[4:6] == ["sh", "-c"], command
        if ct.get("update_raises"):
            raise RuntimeError(f"pct exec {ct['ctid']} crashed")
        if ct["status"] != "running":
            return FakeProcess([], 255)
        ct.setdefault("executed", []).append(command[6])
        output = ct.get("update_output", "Upgraded packages\n")
        lines = [self._decode(line, kwargs) for line in output.splitlines(keepends=True)]
        return FakeProcess(lines, ct.get("update_rc", 0))

    def _pct(self, command, args, kwargs):
        action = args[0]
        if action == "list":
            rows = ["VMID       Status     Lock         Name"]
            for ctid in self.order:
                c = self.containers[ctid]
                rows.append(f"{ctid:<10} {c['status']:<10} {c.get('lock', ''):<12} {c.get('name', '')}".rstrip())
            rows.extend(self.extra_rows)
            return self._done(command, self.list_rc, "\n".join(rows) + "\n")

        ct = self.containers.get(int(args[1]))
        if ct is None:
            return self._done(command, 2, "", f"Configuration file 'nodes/pve/lxc/{args[1]}.conf' does not exist\n")

        if action == "status":
            return self._done(command, 0, f"status: {ct['status']}\n")
        if action == "config":
            lines = ["arch: amd64", f"hostname: {ct.get('name', '')}"]
            if ct.get("ostype"):
                lines.append(f"ostype: {ct['ostype']}")
            if ct.get("template"):
                lines.append("template: 1")
            config = "\n".join(lines) + "\n"
            if ct.get("description"):
                config = config.encode() + b"description: " + ct["description"] + b"\n"
            return self._done(command, 0, config)
        if action == "start":
            if ct.get("start_fails"):
                return self._done(command, 255, "", "startup for container failed\n")
            ct["status"] = "running"
            return self._done(command)
        if action == "shutdown":
            if ct.get("shutdown_hangs"):
                raise subprocess.TimeoutExpired(command, kwargs.get("timeout"))
            ct["status"] = "stopped"
            return self._done(command)
        if action == "stop":
            if ct.get("stop_fails"):
                return self._done(command, 255, "", "stop failed\n")
            ct["status"] = "stopped"
            return self._done(command)
        if action == "exec":
            return self._exec(command, ct, args[3:])
        raise AssertionError(f"unexpected pct command: {command}")

    def _exec(self, command, ct, inner):
        if ct["status"] != "running":
            return self._done(command, 255, "", f"CT {ct['ctid']} not running\n")
        if inner == ["hostname"]:
            return self._done(command, 0, f"{ct.get('hostname', ct.get('name', ''))}\n")
        if inner[:2] == ["sh", "-uc"]:
            return self._done(command, 0, ct.get("disk", "42 3G 8G 5G\n"))
        if inner[:2] == ["test", "-e"]:
            return self._done(command, 0 if ct.get("reboot") else 1)
        raise AssertionError(f"unexpected exec: {inner}")

    def pct_calls(self, ctid: Optional[int] = None) -> List[List[str]]:
        calls = [c for c in self.calls if c[0] == "pct" and c[1] != "list"]
        if ctid is not None:
            calls = [c for c in calls if c[2] == str(ctid)]
        return calls

    def mutating_calls(self, ctid: Optional[int] = None) -> List[List[str]]:
        """start/stop/shutdown and update commands run through 'sh -c'."""
        return [
            c for c in self.pct_calls(ctid)
            if c[1] in ("start", "stop", "shutdown") or (c[1] == "exec" and c[4:6] == ["sh", "-c"])
        ]

    def actions(self, ctid: int) -> List[str]:
        """Readable trace of the pct calls issued for one container."""
        names = {"hostname": "hostname", "-uc": "disk", "-c": "update", "-e": "reboot-check"}
        trace = []
        for c in self.pct_calls(ctid):
            if c[1] == "exec":
                trace.append(names[c[5] if len(c) > 5 else c[4]])
            else:
                trace.append(c[1])
        return trace


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    path = tmp_path / "logs"
    monkeypatch.setenv("PVE_LXC_LOG_DIR", str(path))
    monkeypatch.delenv("PVE_LXC_SHUTDOWN_TIMEOUT", raising=False)
    monkeypatch.delenv("PVE_LXC_START_DELAY", raising=False)
    return path


@pytest.fixture
def sleep(monkeypatch):
    mock = MagicMock()
    monkeypatch.setattr("pve_lxc_updater.time.sleep", mock)
    return mock


@pytest.fixture
def use_host(monkeypatch, sleep):
    """Route subprocess.run and subprocess.Popen to a FakePveHost."""
    def _install(host: FakePveHost) -> FakePveHost:
        monkeypatch.setattr("pve_lxc_updater.subprocess.run", host)
        monkeypatch.setattr("pve_lxc_updater.subprocess.Popen", host.popen)
        return host
    return _install


@pytest.fixture
def updater(log_dir):
    u = ProxmoxLXCUpdater()
    u.init_logging()
    return u
