#!/usr/bin/env python3
"""
lan_redirect.py

Makes a remote game server look like a server on the local network.

Key features:
- Listens on a local TCP port and forwards every byte, unmodified, to a fixed
  remote host:port (one relay session per accepted connection).
- IP/CIDR allow-list for inbound connections ("any" / "*" disables it).
- Periodic UDP broadcast beacon so LAN clients list the forwarded endpoint:
      [MOTD]<motd>[/MOTD][AD]<listenPort>[/AD]
- Bind arbitration: when the listen port is still held (typically by a crashed
  or forgotten earlier run), the owning process is looked up; if it is a prior
  instance of this program it is killed, then the bind is retried with backoff.

Shutdown:
- Ctrl+C / SIGTERM closes the listener (bounded by a 5 s grace window for
  in-flight sessions) and stops the beacon.

Usage:
  python3 lan_redirect.py
  python3 lan_redirect.py --config config.yaml --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import errno
import ipaddress
import json
import logging
import os
import re
import shutil
import signal
import socket
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import yaml


# =============================================================================
# Small utilities
# =============================================================================

def monotime() -> float:
    return time.monotonic()


def utc_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def get_path(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        if part not in cur:
            return default
        cur = cur[part]
    return cur


def parse_level(s: Any, default: int) -> int:
    if not s:
        return default
    name = str(s).strip().upper()
    level = getattr(logging, name, default)
    return level if isinstance(level, int) else default


def format_peer(peer: Any) -> str:
    if isinstance(peer, tuple) and len(peer) >= 2:
        host = str(peer[0])
        if ":" in host:
            return f"[{host}]:{peer[1]}"
        return f"{host}:{peer[1]}"
    return str(peer)


async def close_writer(writer: asyncio.StreamWriter, timeout: float = 0.25) -> None:
    try:
        writer.close()
    except Exception:
        return
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
    except (asyncio.TimeoutError, Exception):
        pass


def set_nodelay(writer: asyncio.StreamWriter) -> None:
    sock = writer.get_extra_info("socket")
    if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
        return
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError:
        pass


# =============================================================================
# Errors
# =============================================================================

class LanRedirectError(Exception):
    """Base class for everything this program raises on purpose."""


class ConfigError(LanRedirectError):
    pass


class IllegalState(LanRedirectError, RuntimeError):
    """A lifecycle operation was called from a state that does not allow it."""


class BindFailure(LanRedirectError):
    """The listen port is in use. Recoverable: drives bind arbitration."""

    def __init__(self, port: int, cause: OSError) -> None:
        super().__init__(f"port {port} is already in use: {cause}")
        self.port = port
        self.cause = cause


class BindExhausted(LanRedirectError):
    """Bind arbitration gave up. Terminal for startup."""

    def __init__(self, port: int, remediation: str) -> None:
        super().__init__(f"cannot bind port {port}: address already in use\n{remediation}")
        self.port = port
        self.remediation = remediation


class ConnectTimeout(LanRedirectError):
    def __init__(self, host: str, port: int, timeout: float) -> None:
        super().__init__(f"connect to {host}:{port} timed out after {timeout:.1f}s")
        self.host = host
        self.port = port
        self.timeout = timeout


class RelayIOError(LanRedirectError):
    """I/O failure in one relay direction. Recorded, never raised out of the relay."""


class WhitelistParseError(LanRedirectError, ValueError):
    pass


class BeaconSendError(LanRedirectError):
    pass


class ProcessInspectionError(LanRedirectError):
    """A platform command failed, timed out, or is missing."""


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_REMOTE_HOST = "localhost"
DEFAULT_PORT = 25565
DEFAULT_MOTD = "Minecraft Proxy"
DEFAULT_VERSION = "1.20.x"
DEFAULT_MAX_PLAYERS = 20
DEFAULT_ANNOUNCE_INTERVAL_MS = 1000
DEFAULT_BROADCAST_PORT = 4445
DEFAULT_BROADCAST_ADDRESS = "255.255.255.255"
DEFAULT_LOG_FILE = "lan_redirect.log"

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def _jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)

    def _repl(m: re.Match) -> str:
        prefix, key, suffix = m.group(1), m.group(2), m.group(3)
        return f'{prefix}"{key}"{suffix}:'

    text = _KEY_RE.sub(_repl, text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def load_config(path: str) -> Dict[str, Any]:
    """
    Read a YAML (.yaml/.yml) or JSON / json-ish config file into a dict.
    A document that is not a mapping yields {} so every section falls back
    to its defaults.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e

    if path.lower().endswith((".yaml", ".yml")):
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigError(f"Config parse error for {path}:\n{e}") from e
    else:
        try:
            data = json.loads(raw)
        except ValueError:
            norm = _jsonish_to_json(raw)
            try:
                data = json.loads(norm)
            except ValueError as e:
                raise ConfigError(f"Config parse error for {path}:\n{e}\n\nNormalized text:\n{norm}") from e

    return data if isinstance(data, dict) else {}


def _as_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    return v if isinstance(v, str) else str(v)


def _as_int(v: Any) -> Optional[int]:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return int(v)
    if isinstance(v, str):
        try:
            return int(v.strip())
        except ValueError:
            return None
    return None


def _as_port(v: Any) -> Optional[int]:
    n = _as_int(v)
    if n is None or n < 0 or n > 65535:
        return None
    return n


def _as_bool(v: Any) -> Optional[bool]:
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() == "true"
    return None


def _as_str_list(v: Any) -> Optional[List[str]]:
    if isinstance(v, list):
        out: List[str] = []
        for item in v:
            s = _as_str(item)
            if s is not None and s.strip():
                out.append(s.strip())
        return out
    if isinstance(v, str):
        s = v.strip()
        return [s] if s else None
    return None


def _section(raw: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    v = raw.get(key)
    return v if isinstance(v, dict) else None


@dataclass(frozen=True)
class RemoteEndpoint:
    host: str = DEFAULT_REMOTE_HOST
    port: int = DEFAULT_PORT


@dataclass(frozen=True)
class LocalEndpoint:
    listen_port: int = DEFAULT_PORT
    bind_address: str = ""  # "" => every interface


@dataclass(frozen=True)
class BeaconConfig:
    motd: str
    broadcast_address: str
    broadcast_port: int
    interval_millis: int

    @classmethod
    def create(
        cls,
        motd: Optional[str],
        broadcast_address: Optional[str] = None,
        broadcast_port: int = DEFAULT_BROADCAST_PORT,
        interval_millis: Optional[int] = None,
    ) -> "BeaconConfig":
        if interval_millis is None or interval_millis <= 0:
            interval_millis = DEFAULT_ANNOUNCE_INTERVAL_MS
        if broadcast_address is None or not broadcast_address.strip():
            broadcast_address = DEFAULT_BROADCAST_ADDRESS
        return cls(
            motd=motd if motd is not None else DEFAULT_MOTD,
            broadcast_address=broadcast_address.strip(),
            broadcast_port=int(broadcast_port),
            interval_millis=int(interval_millis),
        )

    @property
    def interval_sec(self) -> float:
        return self.interval_millis / 1000.0


@dataclass(frozen=True)
class LanConfig:
    motd: str = DEFAULT_MOTD
    # version / max_players are reported at startup only; the beacon never sends them.
    version: str = DEFAULT_VERSION
    max_players: int = DEFAULT_MAX_PLAYERS
    announce_interval_ms: int = DEFAULT_ANNOUNCE_INTERVAL_MS
    broadcast_port: int = DEFAULT_BROADCAST_PORT
    broadcast_address: str = DEFAULT_BROADCAST_ADDRESS

    def beacon(self) -> BeaconConfig:
        return BeaconConfig.create(
            motd=self.motd,
            broadcast_address=self.broadcast_address,
            broadcast_port=self.broadcast_port,
            interval_millis=self.announce_interval_ms,
        )


@dataclass(frozen=True)
class SecurityConfig:
    whitelist: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CredentialsConfig:
    enabled: bool = False
    token: str = ""


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file_enabled: bool = False
    file_path: str = DEFAULT_LOG_FILE
    file_verbosity: str = "INFO"


@dataclass(frozen=True)
class AppConfig:
    remote: RemoteEndpoint = field(default_factory=RemoteEndpoint)
    local: LocalEndpoint = field(default_factory=LocalEndpoint)
    lan: LanConfig = field(default_factory=LanConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AppConfig":
        if not isinstance(raw, dict):
            return cls()
        return cls(
            remote=_parse_remote(_section(raw, "remote")),
            local=_parse_local(_section(raw, "local")),
            lan=_parse_lan(_section(raw, "lan")),
            security=_parse_security(_section(raw, "security")),
            credentials=_parse_credentials(_section(raw, "credentials")),
            logging=_parse_logging(_section(raw, "logging")),
        )


def _parse_remote(m: Optional[Dict[str, Any]]) -> RemoteEndpoint:
    if m is None:
        return RemoteEndpoint()
    host = _as_str(m.get("host"))
    port = _as_port(m.get("port"))
    return RemoteEndpoint(
        host=host.strip() if host and host.strip() else DEFAULT_REMOTE_HOST,
        port=port if port is not None else DEFAULT_PORT,
    )


def _parse_local(m: Optional[Dict[str, Any]]) -> LocalEndpoint:
    if m is None:
        return LocalEndpoint()
    listen = _as_port(m.get("listenPort"))
    bind = _as_str(m.get("bindAddress")) or ""
    return LocalEndpoint(
        listen_port=listen if listen is not None else DEFAULT_PORT,
        bind_address=bind.strip(),
    )


def _parse_lan(m: Optional[Dict[str, Any]]) -> LanConfig:
    if m is None:
        return LanConfig()
    motd = _as_str(m.get("motd"))
    version = _as_str(m.get("version"))
    max_players = _as_int(m.get("maxPlayers"))
    interval = _as_int(m.get("announceIntervalMs"))
    bport = _as_port(m.get("broadcastPort"))
    baddr = _as_str(m.get("broadcastAddress"))
    return LanConfig(
        motd=motd if motd is not None else DEFAULT_MOTD,
        version=version if version is not None else DEFAULT_VERSION,
        max_players=max_players if max_players is not None else DEFAULT_MAX_PLAYERS,
        announce_interval_ms=interval if interval is not None and interval > 0 else DEFAULT_ANNOUNCE_INTERVAL_MS,
        broadcast_port=bport if bport is not None else DEFAULT_BROADCAST_PORT,
        broadcast_address=baddr.strip() if baddr and baddr.strip() else DEFAULT_BROADCAST_ADDRESS,
    )


def _parse_security(m: Optional[Dict[str, Any]]) -> SecurityConfig:
    if m is None:
        return SecurityConfig()
    return SecurityConfig(whitelist=tuple(_as_str_list(m.get("whitelist")) or ()))


def _parse_credentials(m: Optional[Dict[str, Any]]) -> CredentialsConfig:
    if m is None:
        return CredentialsConfig()
    return CredentialsConfig(
        enabled=bool(_as_bool(m.get("enabled"))),
        token=_as_str(m.get("token")) or "",
    )


def _parse_logging(m: Optional[Dict[str, Any]]) -> LoggingConfig:
    if m is None:
        return LoggingConfig()
    return LoggingConfig(
        level=_as_str(m.get("level")) or "INFO",
        file_enabled=bool(_as_bool(get_path(m, "file.enabled", False))),
        file_path=_as_str(get_path(m, "file.path")) or DEFAULT_LOG_FILE,
        file_verbosity=_as_str(get_path(m, "file.verbosity")) or "INFO",
    )


def load_app_config(path: str) -> AppConfig:
    return AppConfig.from_dict(load_config(path))


CONFIG_TEMPLATE = """\
remote:
  host: proxy.example.com
  port: 25565

local:
  listenPort: 9099
  # bindAddress: 0.0.0.0

lan:
  motd: "&aRemote Velocity proxy"
  version: "1.21.10"
  maxPlayers: 20
  announceIntervalMs: 1000
  broadcastPort: 4445
  broadcastAddress: 255.255.255.255

security:
  # whitelist:
  #   - 192.168.0.0/24
  #   - fd00::/8

credentials:
  enabled: false
  token: ""

logging:
  level: INFO
  # file:
  #   enabled: true
  #   path: lan_redirect.log
  #   verbosity: DEBUG
"""


def resolve_config_path(explicit: Optional[str]) -> str:
    """
    Explicit path wins (even if missing, so the template lands there).
    Otherwise ./config.yaml, then config.yaml next to this module; if neither
    exists the template goes to ./config.yaml.
    """
    if explicit:
        return explicit
    cwd_cfg = os.path.join(os.getcwd(), "config.yaml")
    if os.path.exists(cwd_cfg):
        return cwd_cfg
    here_cfg = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.yaml")
    if os.path.exists(here_cfg):
        return here_cfg
    return cwd_cfg


def write_config_template(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(CONFIG_TEMPLATE)


# =============================================================================
# Lifecycle state
# =============================================================================

class ListenerState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CLOSED = "closed"


class StateCell:
    """Lifecycle flag owned by one component; mutated only via compare-and-set."""

    def __init__(self, initial: ListenerState = ListenerState.STOPPED) -> None:
        self._value = initial
        self._lock = threading.Lock()

    @property
    def value(self) -> ListenerState:
        return self._value

    def compare_and_set(self, expected: ListenerState, new: ListenerState) -> bool:
        with self._lock:
            if self._value is not expected:
                return False
            self._value = new
            return True

    def transition(self, allowed: Iterable[ListenerState], new: ListenerState) -> Optional[ListenerState]:
        """Move to `new` if the current state is in `allowed`; return the previous state, or None."""
        with self._lock:
            prev = self._value
            if prev not in allowed:
                return None
            self._value = new
            return prev


# =============================================================================
# Address whitelist
# =============================================================================

WILDCARD_TOKENS = ("any", "*")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def coerce_address(value: Any) -> Optional[IPAddress]:
    """
    Accepts an ipaddress object, a literal string, or a socket peername tuple.
    IPv4-mapped IPv6 addresses (dual-stack listeners) come back as IPv4.
    """
    if isinstance(value, tuple):
        value = value[0] if value else None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        addr: IPAddress = value
    elif isinstance(value, str):
        try:
            addr = ipaddress.ip_address(value.strip())
        except ValueError:
            return None
    else:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


@dataclass(frozen=True)
class WhitelistRule:
    network: IPNetwork

    @classmethod
    def parse(cls, cidr: str) -> "WhitelistRule":
        parts = cidr.split("/")
        if len(parts) != 2:
            raise WhitelistParseError(f"expected address/prefix, got {cidr!r}")
        try:
            base = ipaddress.ip_address(parts[0].strip())
            prefix = int(parts[1].strip())
        except ValueError as e:
            raise WhitelistParseError(f"bad CIDR {cidr!r}: {e}") from e
        if prefix < 0 or prefix > base.max_prefixlen:
            raise WhitelistParseError(f"prefix out of range in {cidr!r}: {prefix}")
        return cls(network=ipaddress.ip_network((base, prefix), strict=False))

    @property
    def base_address_bytes(self) -> bytes:
        return self.network.network_address.packed

    @property
    def prefix_mask_bytes(self) -> bytes:
        return self.network.netmask.packed

    def matches(self, address: IPAddress) -> bool:
        if address.version != self.network.version:
            return False
        return address in self.network


class AddressWhitelist:
    """
    Immutable allow-list of CIDR ranges. No rules means allow-all.
    """

    def __init__(self, cidrs: Optional[Sequence[str]] = None, *, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logging.getLogger("lan_redirect.whitelist")
        self._rules: Tuple[WhitelistRule, ...] = self._build(cidrs or ())

    def _build(self, cidrs: Sequence[str]) -> Tuple[WhitelistRule, ...]:
        rules: List[WhitelistRule] = []
        for entry in cidrs:
            if entry is None:
                continue
            normalized = str(entry).strip().lower()
            if not normalized:
                continue
            if normalized in WILDCARD_TOKENS:
                return ()
            try:
                rules.append(WhitelistRule.parse(normalized))
            except WhitelistParseError as e:
                self.log.warning("skipping whitelist entry %r: %s", entry, e)
        return tuple(rules)

    @property
    def rules(self) -> Tuple[WhitelistRule, ...]:
        return self._rules

    @property
    def allow_all(self) -> bool:
        return not self._rules

    def is_allowed(self, address: Any) -> bool:
        if not self._rules:
            return True
        ip = coerce_address(address)
        if ip is None:
            return False
        for rule in self._rules:
            if rule.matches(ip):
                return True
        return False


# =============================================================================
# Process directory (platform boundary)
# =============================================================================

# Lowercased command-line substrings that identify this program.
SELF_FINGERPRINTS = ("lan_redirect", "lan-redirect", "minecraft-lan-redirect", "minecraftlanredirect")
SCRIPT_NAME = "lan-redirect"

_PYTHON_NAME_RE = re.compile(r"^pythonw?(\d+(\.\d+)*)?$")
_SS_PID_RE = re.compile(r"pid=(\d+)")


def _normalize_exe_name(name: str) -> str:
    name = os.path.basename(name.strip().replace("\\", "/")).lower()
    if name.endswith(".exe"):
        name = name[:-4]
    return name


@dataclass(frozen=True)
class ProcessRecord:
    pid: int
    executable_name: str
    command_line: str

    def short_command_line(self, limit: int = 200) -> str:
        if len(self.command_line) <= limit:
            return self.command_line
        return self.command_line[:limit] + "..."


def parse_lsof_pid(output: str) -> Optional[int]:
    for line in output.splitlines():
        line = line.strip()
        if line.isdigit():
            return int(line)
    return None


def parse_ss_pid(output: str) -> Optional[int]:
    for line in output.splitlines():
        if not line.strip().upper().startswith("LISTEN"):
            continue
        m = _SS_PID_RE.search(line)
        if m:
            return int(m.group(1))
    return None


def parse_netstat_listening(output: str, port: int) -> Optional[int]:
    """
    netstat -ano rows look like:
      TCP    0.0.0.0:9099     0.0.0.0:0     LISTENING     12345
      TCP    [::]:9099        [::]:0        LISTENING     12345
    Only the local endpoint is matched, only LISTENING rows count.
    """
    suffix = f":{port}"
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5 or not parts[0].upper().startswith("TCP"):
            continue
        local, state, pid_s = parts[1], parts[3], parts[-1]
        if not local.endswith(suffix) or state.upper() != "LISTENING":
            continue
        try:
            return int(pid_s)
        except ValueError:
            continue
    return None


def parse_ps_line(pid: int, output: str) -> Optional[ProcessRecord]:
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(None, 1)
        return ProcessRecord(pid=pid, executable_name=parts[0], command_line=parts[1] if len(parts) > 1 else "")
    return None


def parse_name_commandline(pid: int, output: str) -> Optional[ProcessRecord]:
    name: Optional[str] = None
    cmdline = ""
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Name="):
            name = line[len("Name="):].strip()
        elif line.startswith("CommandLine="):
            cmdline = line[len("CommandLine="):].strip()
    if not name:
        return None
    return ProcessRecord(pid=pid, executable_name=name, command_line=cmdline)


class ProcessDirectory:
    """
    Who owns a listening port, what is that process, and how to kill it.
    Every operation degrades to None/False when the platform command fails.
    """

    command_timeout = 5.0

    def __init__(self, *, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logging.getLogger("lan_redirect.process")
        self._self_names: Set[str] = {SCRIPT_NAME}
        exe = _normalize_exe_name(sys.executable or "")
        if exe:
            self._self_names.add(exe)

    def find_listening_owner(self, port: int) -> Optional[int]:
        raise NotImplementedError

    def describe(self, pid: int) -> Optional[ProcessRecord]:
        raise NotImplementedError

    def terminate(self, pid: int) -> bool:
        raise NotImplementedError

    def is_likely_self(self, record: ProcessRecord) -> bool:
        name = _normalize_exe_name(record.executable_name)
        if not (_PYTHON_NAME_RE.match(name) or name in self._self_names):
            self.log.debug("process name %r is not a python runtime or %s", record.executable_name, SCRIPT_NAME)
            return False
        cmd = record.command_line.lower()
        if any(fp in cmd for fp in SELF_FINGERPRINTS):
            return True
        self.log.debug("command line does not look like this program: %s", record.short_command_line(100))
        return False

    def _run(self, cmd: Sequence[str], *, ok_codes: Tuple[int, ...] = (0,)) -> str:
        try:
            proc = subprocess.run(
                list(cmd),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                timeout=self.command_timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ProcessInspectionError(f"{cmd[0]} not found in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise ProcessInspectionError(f"{cmd[0]} did not finish within {self.command_timeout:.0f}s") from e
        except OSError as e:
            raise ProcessInspectionError(f"{cmd[0]} could not be started: {e}") from e

        if proc.returncode not in ok_codes:
            raise ProcessInspectionError(
                f"{' '.join(cmd)} exited with {proc.returncode}: {(proc.stderr or '').strip()}"
            )
        return proc.stdout or ""


class PosixProcessDirectory(ProcessDirectory):
    """lsof (or ss on Linux without lsof), ps, and SIGKILL."""

    def find_listening_owner(self, port: int) -> Optional[int]:
        try:
            if shutil.which("lsof") or not sys.platform.startswith("linux"):
                # lsof exits 1 when nothing matches
                out = self._run(["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"], ok_codes=(0, 1))
                return parse_lsof_pid(out)
            out = self._run(["ss", "-Htlnp", f"sport = :{port}"])
            return parse_ss_pid(out)
        except ProcessInspectionError as e:
            self.log.warning("could not look up the owner of port %d: %s", port, e)
            return None

    def describe(self, pid: int) -> Optional[ProcessRecord]:
        try:
            out = self._run(["ps", "-p", str(pid), "-o", "comm=", "-o", "args="])
        except ProcessInspectionError as e:
            self.log.debug("ps for pid %d failed (process gone?): %s", pid, e)
            return None
        return parse_ps_line(pid, out)

    def terminate(self, pid: int) -> bool:
        try:
            os.kill(pid, signal.SIGKILL)
        except OSError as e:
            self.log.warning("kill -9 %d failed: %s", pid, e)
            return False
        return True


class WindowsProcessDirectory(ProcessDirectory):
    """netstat -ano -p TCP, CIM Win32_Process via PowerShell, taskkill."""

    def find_listening_owner(self, port: int) -> Optional[int]:
        try:
            out = self._run(["netstat", "-ano", "-p", "TCP"])
        except ProcessInspectionError as e:
            self.log.warning("could not look up the owner of port %d: %s", port, e)
            return None
        return parse_netstat_listening(out, port)

    def describe(self, pid: int) -> Optional[ProcessRecord]:
        script = (
            f"Get-CimInstance Win32_Process -Filter 'ProcessId={int(pid)}' | "
            "ForEach-Object { 'Name=' + $_.Name; 'CommandLine=' + $_.CommandLine }"
        )
        try:
            out = self._run(["powershell", "-NoProfile", "-NonInteractive", "-Command", script])
        except ProcessInspectionError as e:
            self.log.debug("process query for pid %d failed: %s", pid, e)
            return None
        return parse_name_commandline(pid, out)

    def terminate(self, pid: int) -> bool:
        try:
            self._run(["taskkill", "/F", "/PID", str(pid)])
        except ProcessInspectionError as e:
            self.log.warning("taskkill of pid %d failed (administrator rights needed?): %s", pid, e)
            return False
        return True


def process_directory_for_platform(log: Optional[logging.Logger] = None) -> ProcessDirectory:
    if os.name == "nt":
        return WindowsProcessDirectory(log=log)
    return PosixProcessDirectory(log=log)


# =============================================================================
# Bind arbitration
# =============================================================================

TERMINATED_RETRIES = 3
TERMINATED_SETTLE_SEC = 1.0
RELEASE_RETRIES = 5
RELEASE_SETTLE_SEC = 2.0

_WSAEADDRINUSE = 10048


def is_address_in_use(err: OSError) -> bool:
    return err.errno == errno.EADDRINUSE or getattr(err, "winerror", None) == _WSAEADDRINUSE


def create_listen_socket(host: str, port: int, backlog: int = 128) -> socket.socket:
    """
    host "" binds every interface: dual-stack [::] where supported, else 0.0.0.0.
    """
    if not host:
        if socket.has_dualstack_ipv6():
            sock = socket.create_server(("", port), family=socket.AF_INET6, backlog=backlog, dualstack_ipv6=True)
        else:
            sock = socket.create_server(("0.0.0.0", port), family=socket.AF_INET, backlog=backlog)
    else:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.create_server((host, port), family=family, backlog=backlog)
    sock.setblocking(False)
    return sock


def bind_remediation(port: int) -> str:
    if os.name == "nt":
        find_cmd = f"netstat -ano | findstr :{port}"
        kill_cmd = "taskkill /F /PID <pid>"
    else:
        find_cmd = f"lsof -nP -iTCP:{port} -sTCP:LISTEN"
        kill_cmd = "kill <pid>"
    return (
        "How to fix:\n"
        f"1. Find the process holding the port: {find_cmd}\n"
        f"2. Stop it ({kill_cmd}), or set local.listenPort in the config file to a free port\n"
        f"3. Check whether an earlier {SCRIPT_NAME} instance is still running\n"
        "4. If the port is only waiting to be released (TIME_WAIT), retry in 2-4 minutes"
    )


class BindArbiter:
    """
    Acquires the listening socket. On "address in use" it asks the process
    directory who holds the port, kills it only if it is a prior instance of
    this program, then retries with a fixed delay.
    """

    def __init__(
        self,
        directory: ProcessDirectory,
        *,
        host: str = "",
        backlog: int = 128,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.directory = directory
        self.host = host
        self.backlog = backlog
        self._sleep = sleep
        self.log = log or logging.getLogger("lan_redirect.bind")

    def try_bind(self, port: int) -> socket.socket:
        try:
            return create_listen_socket(self.host, port, self.backlog)
        except OSError as e:
            if is_address_in_use(e):
                raise BindFailure(port, e) from e
            raise

    async def acquire(self, port: int) -> socket.socket:
        try:
            return self.try_bind(port)
        except BindFailure:
            self.log.info("port %d is in use, trying to resolve", port)

        terminated = await asyncio.to_thread(self._evict_prior_instance, port)
        if terminated:
            retries, delay = TERMINATED_RETRIES, TERMINATED_SETTLE_SEC
            self.log.info("prior instance terminated, waiting for port %d to be released", port)
        else:
            retries, delay = RELEASE_RETRIES, RELEASE_SETTLE_SEC
            self.log.info("no prior instance to terminate, port %d may be in TIME_WAIT; waiting", port)

        for attempt in range(1, retries + 1):
            await self._sleep(delay)
            self.log.info("retrying bind on port %d (attempt %d/%d)", port, attempt, retries)
            try:
                sock = self.try_bind(port)
            except BindFailure as e:
                self.log.debug("bind attempt %d/%d on port %d failed: %s", attempt, retries, port, e.cause)
                continue
            self.log.info("bound port %d", port)
            return sock

        self.log.warning("giving up on port %d after %d retries", port, retries)
        raise BindExhausted(port, bind_remediation(port))

    def _evict_prior_instance(self, port: int) -> bool:
        """Blocking. Returns True when termination of a prior instance was attempted."""
        pid = self.directory.find_listening_owner(port)
        if pid is None:
            self.log.info("no listening owner found for port %d", port)
            return False
        if pid == os.getpid():
            self.log.warning("port %d is held by this very process (pid %d)", port, pid)
            return False

        record = self.directory.describe(pid)
        if record is None:
            self.log.warning("cannot describe pid %d holding port %d, it may have exited", pid, port)
            return False

        self.log.info(
            "port %d held by pid %d (%s): %s",
            port, pid, record.executable_name, record.short_command_line(),
        )
        if not self.directory.is_likely_self(record):
            self.log.warning(
                "port %d is held by another program (pid %d, %s); not terminating it",
                port, pid, record.executable_name,
            )
            return False

        self.log.info("terminating prior instance pid %d", pid)
        if self.directory.terminate(pid):
            self.log.info("terminated pid %d", pid)
        else:
            self.log.warning("could not terminate pid %d, it may need elevated rights", pid)
        return True


# =============================================================================
# Stream relay
# =============================================================================

RELAY_BUFFER_SIZE = 16 * 1024


@dataclass
class DirectionResult:
    direction: str  # c2s|s2c
    bytes_copied: int = 0
    error: Optional[RelayIOError] = None

    @property
    def reached_eof(self) -> bool:
        return self.error is None


@dataclass
class ConnectionSession:
    session_id: int
    peer: str
    client_reader: asyncio.StreamReader
    client_writer: asyncio.StreamWriter
    upstream_reader: asyncio.StreamReader
    upstream_writer: asyncio.StreamWriter
    opened_ts: float = field(default_factory=monotime)
    _closed: bool = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await close_writer(self.client_writer)
        await close_writer(self.upstream_writer)

    def abort(self) -> None:
        for w in (self.client_writer, self.upstream_writer):
            tr = w.transport
            if tr is not None:
                tr.abort()


class StreamRelay:
    """
    Copies both directions of a session concurrently. A direction ends on EOF
    or an I/O error; that is a half-close, forwarded as EOF to the other side.
    Both endpoints are closed once both directions are done.
    """

    def __init__(self, *, buffer_size: int = RELAY_BUFFER_SIZE, log: Optional[logging.Logger] = None) -> None:
        self.buffer_size = buffer_size
        self.log = log or logging.getLogger("lan_redirect.relay")

    async def run(self, session: ConnectionSession) -> Tuple[DirectionResult, DirectionResult]:
        try:
            up, down = await asyncio.gather(
                self._pump(session.client_reader, session.upstream_writer, "c2s"),
                self._pump(session.upstream_reader, session.client_writer, "s2c"),
            )
        finally:
            await session.close()

        for r in (up, down):
            if r.error is not None:
                self.log.debug("session %d %s ended with error: %s", session.session_id, r.direction, r.error)
        self.log.debug(
            "session %d done: c2s=%d bytes s2c=%d bytes",
            session.session_id, up.bytes_copied, down.bytes_copied,
        )
        return up, down

    async def _pump(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, direction: str) -> DirectionResult:
        result = DirectionResult(direction=direction)
        while True:
            try:
                data = await reader.read(self.buffer_size)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
            except OSError as e:
                result.error = RelayIOError(f"{direction}: {e!r}")
                break
            result.bytes_copied += len(data)
        self._forward_eof(writer)
        return result

    def _forward_eof(self, writer: asyncio.StreamWriter) -> None:
        if writer.is_closing():
            return
        try:
            if writer.can_write_eof():
                writer.write_eof()
        except OSError as e:
            self.log.debug("write_eof failed: %r", e)


# =============================================================================
# Forwarding listener
# =============================================================================

CONNECT_TIMEOUT_SEC = 10.0
SHUTDOWN_GRACE_SEC = 5.0


class ForwardingListener:
    """
    Owns the listening socket. Each accepted, whitelisted connection gets an
    outbound connection to the remote endpoint and a relay task. Concurrent
    sessions are not capped.
    """

    def __init__(
        self,
        remote: RemoteEndpoint,
        local: LocalEndpoint,
        whitelist: AddressWhitelist,
        arbiter: BindArbiter,
        *,
        relay: Optional[StreamRelay] = None,
        connect_timeout: float = CONNECT_TIMEOUT_SEC,
        grace_sec: float = SHUTDOWN_GRACE_SEC,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.remote = remote
        self.local = local
        self.whitelist = whitelist
        self.arbiter = arbiter
        self.log = log or logging.getLogger("lan_redirect.listener")
        self.relay = relay or StreamRelay(log=self.log.getChild("relay"))
        self.connect_timeout = connect_timeout
        self.grace_sec = grace_sec

        self._state = StateCell(ListenerState.STOPPED)
        self._server: Optional[asyncio.base_events.Server] = None
        self._port: Optional[int] = None
        self._tasks: Set[asyncio.Task] = set()
        self._sessions: Dict[int, ConnectionSession] = {}
        self._next_sid = 0

        self.accepted = 0
        self.rejected = 0
        self.connect_failures = 0
        self.bytes_upstream = 0
        self.bytes_downstream = 0

    @property
    def state(self) -> ListenerState:
        return self._state.value

    @property
    def bound_port(self) -> Optional[int]:
        return self._port

    def stats_snapshot(self) -> Dict[str, Any]:
        return {
            "ts": utc_iso(),
            "state": self.state.value,
            "port": self._port,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "connect_failures": self.connect_failures,
            "active_sessions": len(self._tasks),
            "bytes_upstream": self.bytes_upstream,
            "bytes_downstream": self.bytes_downstream,
        }

    async def start(self) -> None:
        if not self._state.compare_and_set(ListenerState.STOPPED, ListenerState.STARTING):
            raise IllegalState(f"listener cannot start while {self.state.value}")

        port = self.local.listen_port
        try:
            sock = await self.arbiter.acquire(port)
        except BaseException:
            self._state.compare_and_set(ListenerState.STARTING, ListenerState.STOPPED)
            raise

        try:
            server = await asyncio.start_server(self._on_connect, sock=sock)
        except BaseException:
            sock.close()
            self._state.compare_and_set(ListenerState.STARTING, ListenerState.STOPPED)
            raise

        self._server = server
        self._port = sock.getsockname()[1]
        if not self._state.compare_and_set(ListenerState.STARTING, ListenerState.RUNNING):
            # close() won the race while we were binding
            self._server = None
            server.close()
            raise IllegalState(f"listener on port {self._port} was closed while starting")

        self.log.info(
            "TCP forwarding started: port %d -> %s:%d",
            self._port, self.remote.host, self.remote.port,
        )

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        if self.state is not ListenerState.RUNNING:
            writer.close()
            return
        if not self.whitelist.is_allowed(peer):
            self.rejected += 1
            self.log.warning("rejected connection from %s: not whitelisted", format_peer(peer))
            writer.close()
            return

        self.accepted += 1
        self._next_sid += 1
        sid = self._next_sid
        t = asyncio.create_task(self._handle_client(sid, reader, writer, peer), name=f"relay-{sid}")
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)

    async def _open_upstream(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(host=self.remote.host, port=self.remote.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConnectTimeout(self.remote.host, self.remote.port, self.connect_timeout) from e

    async def _handle_client(
        self,
        sid: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: Any,
    ) -> None:
        label = format_peer(peer)
        self.log.info("client connected: %s", label)
        try:
            try:
                up_reader, up_writer = await self._open_upstream()
            except (ConnectTimeout, OSError) as e:
                self.connect_failures += 1
                self.log.warning(
                    "cannot reach %s:%d for %s: %s",
                    self.remote.host, self.remote.port, label, e,
                )
                return

            set_nodelay(writer)
            set_nodelay(up_writer)
            session = ConnectionSession(
                session_id=sid,
                peer=label,
                client_reader=reader,
                client_writer=writer,
                upstream_reader=up_reader,
                upstream_writer=up_writer,
            )
            self._sessions[sid] = session
            try:
                up, down = await self.relay.run(session)
            finally:
                self._sessions.pop(sid, None)
            self.bytes_upstream += up.bytes_copied
            self.bytes_downstream += down.bytes_copied
        except Exception:
            self.log.exception("relay session %d for %s failed", sid, label)
        finally:
            if not writer.is_closing():
                writer.close()
            self.log.info("client disconnected: %s", label)

    async def close(self) -> None:
        prev = self._state.transition((ListenerState.STARTING, ListenerState.RUNNING), ListenerState.CLOSED)
        if prev is None:
            self.log.debug("listener already closed or never started")
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.grace_sec
        self.log.info("closing TCP forwarder, releasing port %s", self._port)

        server, self._server = self._server, None
        if server is not None:
            server.close()

        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=self.grace_sec)
            if pending:
                self.log.warning(
                    "%d relay session(s) still running after %.1fs, force-cancelling",
                    len(pending), self.grace_sec,
                )
                for session in list(self._sessions.values()):
                    session.abort()
                for t in pending:
                    t.cancel()

        if server is not None:
            remaining = deadline - loop.time()
            if remaining > 0:
                try:
                    await asyncio.wait_for(server.wait_closed(), timeout=min(remaining, 0.5))
                except (asyncio.TimeoutError, Exception):
                    pass

        self.log.info("TCP forwarder closed, port %s released", self._port)


# =============================================================================
# LAN beacon
# =============================================================================

def build_beacon_payload(motd: str, listen_port: int) -> str:
    return f"[MOTD]{motd}[/MOTD][AD]{listen_port}[/AD]"


class LanBeacon:
    """
    Broadcasts one discovery datagram immediately and then every
    interval_millis until closed. A failed send only costs that tick.
    """

    def __init__(self, config: BeaconConfig, listen_port: int, *, log: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.listen_port = listen_port
        self.log = log or logging.getLogger("lan_redirect.beacon")
        self.payload_text = build_beacon_payload(config.motd, listen_port)
        self.payload = self.payload_text.encode("utf-8")

        self._state = StateCell(ListenerState.STOPPED)
        self._sock: Optional[socket.socket] = None
        self._task: Optional[asyncio.Task] = None
        self.sent = 0
        self.send_errors = 0

    @property
    def state(self) -> ListenerState:
        return self._state.value

    async def start(self) -> None:
        if not self._state.compare_and_set(ListenerState.STOPPED, ListenerState.RUNNING):
            raise IllegalState(f"beacon cannot start while {self.state.value}")
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
        except OSError:
            sock.close()
            self._state.compare_and_set(ListenerState.RUNNING, ListenerState.STOPPED)
            raise
        self._sock = sock
        self._task = asyncio.create_task(self._run(), name="lan-beacon")
        self.log.info(
            "LAN beacon started: %s:%d every %d ms",
            self.config.broadcast_address, self.config.broadcast_port, self.config.interval_millis,
        )

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.interval_sec
        next_at = loop.time()
        while True:
            self._tick()
            next_at += interval
            now = loop.time()
            while next_at <= now:
                next_at += interval
            await asyncio.sleep(next_at - now)

    def _tick(self) -> None:
        try:
            self.send_once()
        except BeaconSendError as e:
            self.send_errors += 1
            self.log.error("LAN broadcast failed: %s", e)

    def send_once(self) -> int:
        sock = self._sock
        if sock is None:
            raise BeaconSendError("beacon socket is not open")
        target = (self.config.broadcast_address, self.config.broadcast_port)
        try:
            n = sock.sendto(self.payload, target)
        except (OSError, OverflowError, ValueError) as e:
            # ValueError covers UnicodeError from an unencodable host name
            raise BeaconSendError(f"sendto {target[0]}:{target[1]} failed: {e}") from e
        self.sent += 1
        self.log.debug("broadcast LAN beacon: %s", self.payload_text)
        return n

    async def close(self) -> None:
        if self._state.transition((ListenerState.RUNNING,), ListenerState.CLOSED) is None:
            return
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.wait({task}, timeout=1.0)
        sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()
        self.log.info("LAN beacon closed")


# =============================================================================
# Service (lifecycle boundary)
# =============================================================================

class Redirector:
    def __init__(
        self,
        cfg: AppConfig,
        log: Optional[logging.Logger] = None,
        *,
        directory: Optional[ProcessDirectory] = None,
    ) -> None:
        self.cfg = cfg
        self.log = log or logging.getLogger("lan_redirect")

        self.whitelist = AddressWhitelist(cfg.security.whitelist, log=self.log.getChild("whitelist"))
        self.directory = directory or process_directory_for_platform(log=self.log.getChild("process"))
        self.arbiter = BindArbiter(self.directory, host=cfg.local.bind_address, log=self.log.getChild("bind"))
        self.listener = ForwardingListener(
            cfg.remote,
            cfg.local,
            self.whitelist,
            self.arbiter,
            relay=StreamRelay(log=self.log.getChild("relay")),
            log=self.log.getChild("listener"),
        )
        self.beacon = LanBeacon(cfg.lan.beacon(), cfg.local.listen_port, log=self.log.getChild("beacon"))

    async def start(self) -> None:
        self.log.info("starting TCP forwarder...")
        await self.listener.start()
        try:
            self.log.info("starting LAN beacon...")
            await self.beacon.start()
        except BaseException:
            await self.listener.close()
            raise
        self.log.info("running; LAN clients should now list the server")

    async def stop(self) -> None:
        await self.listener.close()
        await self.beacon.close()


def log_startup_hints(log: logging.Logger, cfg: AppConfig, whitelist: AddressWhitelist) -> None:
    log.info(
        "forwarding local port %d to remote %s:%d",
        cfg.local.listen_port, cfg.remote.host, cfg.remote.port,
    )
    beacon = cfg.lan.beacon()
    log.info(
        "LAN beacon: MOTD=%r version=%r maxPlayers=%d target=%s:%d every %dms",
        beacon.motd, cfg.lan.version, cfg.lan.max_players,
        beacon.broadcast_address, beacon.broadcast_port, beacon.interval_millis,
    )
    if not whitelist.allow_all:
        log.info("IP whitelist active: %s", ", ".join(str(r.network) for r in whitelist.rules))
    elif cfg.security.whitelist:
        log.warning("IP whitelist has a wildcard or no usable entries, every client on the network may connect")
    else:
        log.warning("no IP whitelist configured, every client on the network may connect")
    if cfg.credentials.enabled:
        log.info("remote credentials enabled, token present")
    else:
        log.info("no remote credentials configured; enable them under 'credentials' if the remote needs auth")
    log.info("edit config.yaml (or pass --config PATH) to change settings")


# =============================================================================
# Logging setup
# =============================================================================

class ConditionalFormatter(logging.Formatter):
    """INFO and above: "[HH:MM:SS LEVEL] msg". DEBUG: timestamp, thread and logger name."""

    def __init__(self) -> None:
        super().__init__()
        self._brief = logging.Formatter("[%(asctime)s %(levelname)s] %(message)s", datefmt="%H:%M:%S")
        self._detailed = logging.Formatter("%(asctime)s [%(threadName)s] %(levelname)s %(name)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.INFO:
            return self._brief.format(record)
        return self._detailed.format(record)


def setup_logging(cfg: AppConfig, override_level: Optional[str] = None) -> logging.Logger:
    log = logging.getLogger("lan_redirect")
    log.propagate = False
    log.handlers.clear()
    log.setLevel(logging.DEBUG)  # handlers gate output

    lc = cfg.logging
    console_level = parse_level(override_level or lc.level, logging.INFO)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(ConditionalFormatter())
    log.addHandler(ch)

    if lc.file_enabled:
        fh = logging.FileHandler(lc.file_path, encoding="utf-8")
        fh.setLevel(parse_level(lc.file_verbosity, logging.INFO))
        fh.setFormatter(ConditionalFormatter())
        log.addHandler(fh)

    return log


# =============================================================================
# CLI + entrypoint
# =============================================================================

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=SCRIPT_NAME,
        description="Forward a remote game server to a local port and announce it on the LAN",
    )
    p.add_argument("--config", default=None, help="Path to YAML or JSON (json-ish) config file (default: ./config.yaml)")
    p.add_argument("--log-level", default=None, help="Optional console override: DEBUG/INFO/WARNING/ERROR")
    return p


async def amain(args: argparse.Namespace) -> int:
    path = resolve_config_path(args.config)
    if not os.path.exists(path):
        write_config_template(path)
        print(f"No config file found. A template was written to {os.path.abspath(path)}")
        print("Edit it and run again.")
        return 0

    try:
        cfg = load_app_config(path)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2

    log = setup_logging(cfg, args.log_level)
    log.info("loaded config from %s", os.path.abspath(path))
    svc = Redirector(cfg, log)
    log_startup_hints(log, cfg, svc.whitelist)

    stop_ev = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        if not stop_ev.is_set():
            stop_ev.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            pass

    try:
        await svc.start()
    except BindExhausted as e:
        log.error("%s", e)
        return 1
    except (LanRedirectError, OSError, OverflowError) as e:
        log.error("startup failed: %s", e)
        return 1

    log.info("press Ctrl+C to exit")
    await stop_ev.wait()

    log.info("shutdown requested, releasing resources...")
    try:
        await asyncio.wait_for(svc.stop(), timeout=SHUTDOWN_GRACE_SEC + 2.0)
    except asyncio.TimeoutError:
        log.warning("shutdown did not finish in time, exiting anyway")

    await asyncio.sleep(0)
    return 0


def main() -> None:
    args = build_argparser().parse_args()
    try:
        rc = asyncio.run(amain(args))
    except KeyboardInterrupt:
        rc = 130
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
