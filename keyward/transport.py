"""
keyward - transport

Runs one `ssh` process per agent call and turns what comes back into a typed
result. Connectivity problems (unreachable, auth rejected, host key mismatch,
timeout, cancelled) raise ConnectivityError; anything the agent says that we
cannot make sense of raises ProtocolError.

Jump hosts are chained with explicit ProxyCommand options rather than -J so
every hop gets its own host key policy. Hosts with a recorded fingerprint are
pinned: their keys are scanned (from the jump host when there is one), checked
against the fingerprint and written to a known_hosts file that only lives for
the duration of one call.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import shlex
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

from keyward import agent
from keyward.config import AgentSettings, SSHSettings
from keyward.errors import ConnectivityError, ProtocolError
from keyward.inventory import Host, Inventory
from keyward.keyfile import fingerprint, same_fingerprint
from keyward.reconcile import KeyfileReport

log = logging.getLogger(__name__)

SSH_ERROR = 255


def shell_escape(s: str) -> str:
    return shlex.quote(s)


def host_port(address: str, port: int) -> str:
    if ":" in address and not address.startswith("["):
        return f"[{address}]:{port}"
    return f"{address}:{port}"


# -------------------------
# Agent results
# -------------------------


@dataclasses.dataclass(frozen=True)
class Ok:
    output: str


@dataclasses.dataclass(frozen=True)
class Blocked:
    reason: str


@dataclasses.dataclass(frozen=True)
class NotFound:
    message: str


@dataclasses.dataclass(frozen=True)
class UsageError:
    message: str


AgentResult = Union[Ok, Blocked, NotFound, UsageError]


class AgentMissing(ProtocolError):
    """The agent program is not installed (or not runnable) on the host."""


# -------------------------
# SSH runner
# -------------------------


class SSHTransport:
    def __init__(self, settings: SSHSettings, inventory: Inventory) -> None:
        self.settings = settings
        self.inventory = inventory
        self._lock = threading.Lock()
        self._procs: Dict[str, Set[subprocess.Popen]] = {}
        self._cancelled: Set[str] = set()
        self._cancel_all = False
        self._pins: Dict[str, List[Tuple[str, str]]] = {}

    # ---- cancellation

    def cancel(self, host_name: Optional[str] = None) -> None:
        """Terminate in-flight ssh processes (of one host, or all of them)."""
        with self._lock:
            if host_name is None:
                self._cancel_all = True
                targets = [p for ps in self._procs.values() for p in ps]
            else:
                self._cancelled.add(host_name)
                targets = list(self._procs.get(host_name, ()))
        for proc in targets:
            proc.terminate()

    def _is_cancelled(self, host_name: str) -> bool:
        return self._cancel_all or host_name in self._cancelled

    def _spawn(
        self, host: Host, argv: List[str], stdin: Optional[bytes], timeout: int
    ) -> Tuple[int, str, str]:
        with self._lock:
            if self._is_cancelled(host.name):
                raise ConnectivityError("cancelled", host=host.name)
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except OSError as ex:
                raise ConnectivityError(
                    f"cannot run {argv[0]}: {ex}", host=host.name
                ) from ex
            self._procs.setdefault(host.name, set()).add(proc)
        try:
            out, err = proc.communicate(stdin or b"", timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            raise ConnectivityError(f"timeout after {timeout}s", host=host.name)
        finally:
            with self._lock:
                self._procs.get(host.name, set()).discard(proc)

        if self._is_cancelled(host.name):
            raise ConnectivityError("cancelled", host=host.name)
        return (
            proc.returncode,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace").strip(),
        )

    # ---- host keys

    def scan(self, host: Host) -> List[Tuple[str, str]]:
        """Host keys of `host` as (key_type, key_base64), scanned from the
        controller or, behind a jump host, from the last hop."""
        chain = self.inventory.jump_chain(host.name)
        scan_cmd = ["ssh-keyscan", "-T", str(self.settings.connect_timeout)]
        scan_cmd += ["-p", str(host.port), host.address]
        if chain:
            rc, out, err = self.exec(chain[-1], " ".join(map(shell_escape, scan_cmd)))
        else:
            rc, out, err = self._spawn(
                host, scan_cmd, None, self.settings.connect_timeout + 5
            )
        keys = []
        for line in out.splitlines():
            parts = line.split()
            if len(parts) >= 3 and not line.startswith("#"):
                keys.append((parts[1], parts[2]))
        if not keys:
            raise ConnectivityError(
                f"unreachable: no host keys from ssh-keyscan (rc={rc}) {err}".strip(),
                host=host.name,
            )
        return keys

    def pinned_keys(self, host: Host) -> List[Tuple[str, str]]:
        with self._lock:
            cached = self._pins.get(host.name)
        if cached is not None:
            return cached
        want = host.key_fingerprint or ""
        keys = [k for k in self.scan(host) if same_fingerprint(fingerprint(k[1]), want)]
        if not keys:
            raise ConnectivityError(
                f"host key mismatch: no key matches {host.key_fingerprint}",
                host=host.name,
            )
        with self._lock:
            self._pins[host.name] = keys
        return keys

    # ---- command construction

    def _alias(self, host: Host) -> str:
        return f"keyward.{host.name}"

    def cmd_base(self, host: Host, known_hosts: Optional[Path]) -> List[str]:
        s = self.settings
        cmd = [
            "ssh",
            "-p",
            str(host.port),
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={s.connect_timeout}",
        ]
        if s.identity_file:
            cmd += ["-i", s.identity_file, "-o", "IdentitiesOnly=yes"]
        if host.key_fingerprint and known_hosts is not None:
            cmd += [
                "-o",
                "StrictHostKeyChecking=yes",
                "-o",
                f"UserKnownHostsFile={known_hosts}",
                "-o",
                f"HostKeyAlias={self._alias(host)}",
            ]
        else:
            cmd += ["-o", f"StrictHostKeyChecking={s.strict_host_key_checking}"]

        chain = self.inventory.jump_chain(host.name)
        if chain:
            hop = chain[-1]
            proxy = self.cmd_base(hop, known_hosts) + [
                "-W",
                host_port(host.address, host.port),
                f"{hop.username}@{hop.address}",
            ]
            cmd += ["-o", "ProxyCommand=" + " ".join(map(shell_escape, proxy))]
        return cmd

    def _write_known_hosts(self, host: Host, path: Path) -> None:
        lines = []
        for h in self.inventory.jump_chain(host.name) + [host]:
            if h.key_fingerprint:
                for key_type, b64 in self.pinned_keys(h):
                    lines.append(f"{self._alias(h)} {key_type} {b64}")
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    def exec(
        self,
        host: Host,
        remote_cmd: str,
        stdin: Optional[bytes] = None,
        timeout: Optional[int] = None,
    ) -> Tuple[int, str, str]:
        timeout = timeout or self.settings.command_timeout
        chain = self.inventory.jump_chain(host.name)
        via = " via " + ",".join(h.name for h in chain) if chain else ""
        target = host_port(host.address, host.port)
        log.debug("%s: %s@%s%s: %s", host.name, host.username, target, via, remote_cmd)

        with tempfile.TemporaryDirectory(prefix="keyward-") as tmp:
            known_hosts: Optional[Path] = None
            if any(h.key_fingerprint for h in chain + [host]):
                known_hosts = Path(tmp) / "known_hosts"
                self._write_known_hosts(host, known_hosts)
            full = self.cmd_base(host, known_hosts) + [
                f"{host.username}@{host.address}",
                remote_cmd,
            ]
            rc, out, err = self._spawn(host, full, stdin, timeout)

        log.debug("%s: exit %s", host.name, rc)
        if rc == SSH_ERROR:
            if "Permission denied" in err:
                detail = f"authentication rejected: {err}"
            elif "Host key verification failed" in err:
                detail = f"host key mismatch: {err}"
            else:
                detail = f"unreachable: {err or 'ssh exited 255'}"
            raise ConnectivityError(detail, host=host.name)
        return rc, out, err


# -------------------------
# Agent protocol client
# -------------------------


def bundled_agent() -> bytes:
    return Path(agent.__file__).read_bytes()


def bundled_sha256() -> str:
    return hashlib.sha256(bundled_agent()).hexdigest()


def parse_keyfiles(raw: str, host: str) -> List[KeyfileReport]:
    try:
        data = json.loads(raw)
    except ValueError as ex:
        raise ProtocolError(
            f"get_ssh_keyfiles: malformed JSON: {ex}", host=host
        ) from ex
    if not isinstance(data, list):
        raise ProtocolError("get_ssh_keyfiles: expected a JSON array", host=host)

    out = []
    for item in data:
        if not isinstance(item, dict):
            raise ProtocolError(f"get_ssh_keyfiles: bad entry {item!r}", host=host)
        login = item.get("login")
        has_pragma = item.get("has_pragma")
        readonly = item.get("readonly_condition")
        keyfile = item.get("keyfile")
        if not (
            isinstance(login, str)
            and login
            and isinstance(has_pragma, bool)
            and isinstance(readonly, str)
            and isinstance(keyfile, str)
        ):
            raise ProtocolError(f"get_ssh_keyfiles: bad entry {item!r}", host=host)
        out.append(KeyfileReport(login, has_pragma, readonly, keyfile))
    return out


class AgentClient:
    """The four agent commands over any transport with an `exec` method."""

    def __init__(self, transport, settings: AgentSettings) -> None:
        self.transport = transport
        self.settings = settings

    def command(self, name: str, *args: str) -> str:
        parts = [self.settings.interpreter, self.settings.path, name, *args]
        return " ".join(shell_escape(p) for p in parts)

    def call(
        self, host: Host, name: str, *args: str, stdin: Optional[bytes] = None
    ) -> AgentResult:
        rc, out, err = self.transport.exec(host, self.command(name, *args), stdin)
        if rc == 0:
            return Ok(out)
        if rc == 127 or (rc == 2 and "can't open file" in err):
            raise AgentMissing(
                f"agent not runnable at {self.settings.path}: {err}", host=host.name
            )
        if rc == 2:
            return UsageError(err or out)
        if rc == 1:
            try:
                payload = json.loads(out)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                kind = payload.get("error")
                if kind == "blocked":
                    return Blocked(str(payload.get("reason", "")))
                if kind == "not_found":
                    return NotFound(str(payload.get("message", "")))
                if kind == "hash_mismatch":
                    raise ProtocolError(
                        f"agent rejected update: {payload.get('message')}",
                        host=host.name,
                    )
        raise ProtocolError(
            f"{name}: unexpected exit code {rc}: {(err or out).strip()}",
            host=host.name,
        )

    def _expect_ok(self, host: Host, result: AgentResult, name: str) -> str:
        if isinstance(result, Ok):
            return result.output
        raise ProtocolError(f"{name}: {result!r}", host=host.name)

    # ---- commands

    def get_ssh_keyfiles(self, host: Host) -> List[KeyfileReport]:
        result = self.call(host, "get_ssh_keyfiles")
        out = self._expect_ok(host, result, "get_ssh_keyfiles")
        return parse_keyfiles(out, host.name)

    def set_authorized_keyfile(self, host: Host, login: str, body: str) -> AgentResult:
        result = self.call(
            host, "set_authorized_keyfile", login, stdin=body.encode("utf-8")
        )
        if isinstance(result, UsageError):
            raise ProtocolError(
                f"set_authorized_keyfile: usage error: {result.message}",
                host=host.name,
                login=login,
            )
        return result

    def version(self, host: Host) -> Dict[str, str]:
        out = self._expect_ok(host, self.call(host, "version"), "version")
        try:
            data = json.loads(out)
        except ValueError as ex:
            raise ProtocolError(
                f"version: malformed JSON: {ex}", host=host.name
            ) from ex
        if not isinstance(data, dict) or not all(
            isinstance(data.get(k), str) for k in ("version", "sha256")
        ):
            raise ProtocolError(f"version: unexpected response {out!r}", host=host.name)
        return data

    def update(self, host: Host, source: bytes) -> None:
        digest = hashlib.sha256(source).hexdigest()
        result = self.call(host, "update", "--sha256", digest, stdin=source)
        self._expect_ok(host, result, "update")

    def bootstrap(self, host: Host, source: bytes) -> None:
        """First install, when there is no agent yet to update itself."""
        path = shell_escape(self.settings.path)
        tmp = shell_escape(self.settings.path + ".new")
        cmd = (
            f'mkdir -p "$(dirname {path})" && cat > {tmp} && '
            f"chmod 500 {tmp} && mv -f {tmp} {path}"
        )
        rc, out, err = self.transport.exec(host, cmd, source)
        if rc != 0:
            raise ProtocolError(
                f"agent install failed (rc={rc}): {(err or out).strip()}", host=host.name
            )

    def ensure_agent(self, host: Host) -> Dict[str, str]:
        """Make sure the host runs exactly the bundled agent before trusting it."""
        source = bundled_agent()
        want = hashlib.sha256(source).hexdigest()
        try:
            info = self.version(host)
        except AgentMissing:
            if not self.settings.auto_update:
                raise
            log.info("%s: installing agent at %s", host.name, self.settings.path)
            self.bootstrap(host, source)
        else:
            if info["sha256"] == want:
                return info
            if not self.settings.auto_update:
                raise ProtocolError(
                    f"stale agent: {info['version']} sha256 {info['sha256']}, "
                    f"expected {want}",
                    host=host.name,
                )
            log.info("%s: updating agent (%s)", host.name, info["version"])
            self.update(host, source)

        info = self.version(host)
        if info["sha256"] != want:
            raise ProtocolError(
                f"agent still reports sha256 {info['sha256']} after install",
                host=host.name,
            )
        return info
