import signal
import subprocess

import pytest

import lan_redirect
from lan_redirect import (
    PosixProcessDirectory,
    ProcessRecord,
    WindowsProcessDirectory,
    parse_lsof_pid,
    parse_name_commandline,
    parse_netstat_listening,
    parse_ps_line,
    parse_ss_pid,
)


NETSTAT_OUTPUT = """
Active Connections

  Proto  Local Address          Foreign Address        State           PID
  TCP    0.0.0.0:135            0.0.0.0:0              LISTENING       1000
  TCP    127.0.0.1:50123        127.0.0.1:9099         ESTABLISHED     5555
  TCP    0.0.0.0:19099          0.0.0.0:0              LISTENING       2222
  TCP    0.0.0.0:9099           0.0.0.0:0              LISTENING       4321
  TCP    [::]:9099              [::]:0                 LISTENING       4321
  UDP    0.0.0.0:9099           *:*                                    7777
"""


class FakeRun:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        key = cmd[0]
        resp = self.responses.get(key)
        if isinstance(resp, BaseException):
            raise resp
        rc, out = resp
        return subprocess.CompletedProcess(cmd, rc, stdout=out, stderr="")


def test_parse_netstat_matches_only_listening_local_port():
    assert parse_netstat_listening(NETSTAT_OUTPUT, 9099) == 4321
    assert parse_netstat_listening(NETSTAT_OUTPUT, 135) == 1000
    assert parse_netstat_listening(NETSTAT_OUTPUT, 50123) is None
    assert parse_netstat_listening(NETSTAT_OUTPUT, 8080) is None


def test_parse_lsof_and_ss():
    assert parse_lsof_pid("\n4321\n4322\n") == 4321
    assert parse_lsof_pid("") is None
    ss = 'LISTEN 0 128 0.0.0.0:9099 0.0.0.0:* users:(("python3",pid=999,fd=3))'
    assert parse_ss_pid(ss) == 999
    assert parse_ss_pid("") is None


def test_parse_ps_and_name_commandline():
    rec = parse_ps_line(42, "python3         python3 /opt/lan_redirect.py --config x.yaml\n")
    assert rec == ProcessRecord(42, "python3", "python3 /opt/lan_redirect.py --config x.yaml")
    assert parse_ps_line(42, "\n") is None

    rec = parse_name_commandline(7, "Name=python.exe\r\nCommandLine=C:\\Py\\python.exe lan_redirect.py\r\n")
    assert rec.executable_name == "python.exe"
    assert rec.command_line == "C:\\Py\\python.exe lan_redirect.py"
    assert parse_name_commandline(7, "") is None


def test_windows_find_owner_uses_netstat(monkeypatch):
    fake = FakeRun({"netstat": (0, NETSTAT_OUTPUT)})
    monkeypatch.setattr(lan_redirect.subprocess, "run", fake)
    d = WindowsProcessDirectory()
    assert d.find_listening_owner(9099) == 4321
    assert fake.calls[0] == ["netstat", "-ano", "-p", "TCP"]


def test_windows_terminate_failure_returns_false(monkeypatch):
    fake = FakeRun({"taskkill": (1, "")})
    monkeypatch.setattr(lan_redirect.subprocess, "run", fake)
    assert WindowsProcessDirectory().terminate(4321) is False


def test_posix_find_owner_with_lsof(monkeypatch):
    fake = FakeRun({"lsof": (0, "4321\n")})
    monkeypatch.setattr(lan_redirect.subprocess, "run", fake)
    monkeypatch.setattr(lan_redirect.shutil, "which", lambda name: "/usr/bin/" + name)
    assert PosixProcessDirectory().find_listening_owner(9099) == 4321
    assert fake.calls[0][0] == "lsof"
    assert "-iTCP:9099" in fake.calls[0]


def test_posix_lsof_no_match_is_none(monkeypatch):
    fake = FakeRun({"lsof": (1, "")})
    monkeypatch.setattr(lan_redirect.subprocess, "run", fake)
    monkeypatch.setattr(lan_redirect.shutil, "which", lambda name: "/usr/bin/" + name)
    assert PosixProcessDirectory().find_listening_owner(9099) is None


def test_posix_falls_back_to_ss_on_linux(monkeypatch):
    fake = FakeRun({"ss": (0, 'LISTEN 0 128 *:9099 *:* users:(("java",pid=77,fd=9))\n')})
    monkeypatch.setattr(lan_redirect.subprocess, "run", fake)
    monkeypatch.setattr(lan_redirect.shutil, "which", lambda name: None)
    monkeypatch.setattr(lan_redirect.sys, "platform", "linux")
    assert PosixProcessDirectory().find_listening_owner(9099) == 77
    assert fake.calls[0][0] == "ss"


def test_missing_tool_degrades_to_none(monkeypatch):
    fake = FakeRun({"lsof": FileNotFoundError("lsof"), "ps": FileNotFoundError("ps")})
    monkeypatch.setattr(lan_redirect.subprocess, "run", fake)
    monkeypatch.setattr(lan_redirect.shutil, "which", lambda name: "/usr/bin/" + name)
    d = PosixProcessDirectory()
    assert d.find_listening_owner(9099) is None
    assert d.describe(4321) is None


def test_command_timeout_degrades_to_none(monkeypatch):
    fake = FakeRun({"ps": subprocess.TimeoutExpired(["ps"], 5.0)})
    monkeypatch.setattr(lan_redirect.subprocess, "run", fake)
    assert PosixProcessDirectory().describe(4321) is None


def test_posix_describe(monkeypatch):
    fake = FakeRun({"ps": (0, "python3 python3 -m lan_redirect\n")})
    monkeypatch.setattr(lan_redirect.subprocess, "run", fake)
    rec = PosixProcessDirectory().describe(4321)
    assert rec.pid == 4321
    assert rec.executable_name == "python3"
    assert fake.calls[0] == ["ps", "-p", "4321", "-o", "comm=", "-o", "args="]


def test_posix_terminate(monkeypatch):
    killed = []
    monkeypatch.setattr(lan_redirect.os, "kill", lambda pid, sig: killed.append((pid, sig)))
    assert PosixProcessDirectory().terminate(4321) is True
    assert killed == [(4321, signal.SIGKILL)]


def test_posix_terminate_permission_denied(monkeypatch):
    def deny(pid, sig):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(lan_redirect.os, "kill", deny)
    assert PosixProcessDirectory().terminate(4321) is False


@pytest.mark.parametrize(
    "name,cmdline,expected",
    [
        ("python3", "python3 /home/u/lan_redirect.py", True),
        ("python.exe", "C:\\Python\\python.exe -m lan_redirect", True),
        ("pythonw3.12", "pythonw3.12 lan-redirect --config c.yaml", True),
        ("lan-redirect", "/usr/local/bin/lan-redirect", True),
        ("python3", "python3 -m http.server 9099", False),
        ("java", "java -jar minecraft-lan-redirect.jar", False),
        ("nginx", "nginx: master process lan_redirect", False),
    ],
)
def test_is_likely_self(name, cmdline, expected):
    rec = ProcessRecord(pid=1, executable_name=name, command_line=cmdline)
    assert PosixProcessDirectory().is_likely_self(rec) is expected


def test_short_command_line_truncates():
    rec = ProcessRecord(pid=1, executable_name="python3", command_line="x" * 300)
    assert len(rec.short_command_line()) == 203
    assert rec.short_command_line().endswith("...")
