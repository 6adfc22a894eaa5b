#!/usr/bin/env python3
"""
keyward - agent

Host-resident half of keyward. Installed on every managed host (by default at
~/.ssh/keyward_agent.py) and invoked over ssh by the controller, one command
per connection. Stdlib only: this file is shipped verbatim and self-updates.

Commands:
  get_ssh_keyfiles                 JSON array describing every key file
  set_authorized_keyfile <login>   replace <login>'s key file with stdin
  update [--sha256 HEX]            replace this program with stdin
  version                          {"version": ..., "sha256": ...}

Exit codes:
  0 = success
  1 = operation failed (blocked, not found, hash mismatch)
  2 = usage error
"""

from __future__ import annotations

import argparse
import dataclasses
import hashlib
import json
import os
import pwd
import sys
import tempfile
from pathlib import Path
from typing import (
    BinaryIO,
    Callable,
    Iterable,
    List,
    Optional,
    TextIO,
    Tuple,
    Union,
)

VERSION = "keyward agent v1.0"
MARKER = "# Auto-generated by keyward. DO NOT EDIT!"
KEYFILE = ".ssh/authorized_keys"
SYSTEM_READONLY = ".ssh/system_readonly"
USER_READONLY = ".ssh/user_readonly"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


# -------------------------
# Restriction variants
# -------------------------


@dataclasses.dataclass(frozen=True)
class Unrestricted:
    def __bool__(self) -> bool:
        return False

    @property
    def reason(self) -> str:
        return ""


@dataclasses.dataclass(frozen=True)
class Restricted:
    reason: str

    def __bool__(self) -> bool:
        return True


Restriction = Union[Unrestricted, Restricted]


@dataclasses.dataclass(frozen=True)
class Account:
    login: str
    uid: int
    gid: int
    home: str


class AgentFailure(Exception):
    """Operation-specific failure, reported on stdout with exit code 1."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    def payload(self) -> str:
        key = "reason" if self.kind == "blocked" else "message"
        return json.dumps({"error": self.kind, key: str(self)})


# -------------------------
# Host environment
# -------------------------


def passwd_accounts() -> List[Account]:
    return [Account(p.pw_name, p.pw_uid, p.pw_gid, p.pw_dir) for p in pwd.getpwall()]


def read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def read_bytes(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except OSError:
        return None


def exists(path: Path) -> Optional[bool]:
    """Whether `path` exists, or None when the agent is not allowed to look."""
    try:
        os.stat(path)
    except (FileNotFoundError, NotADirectoryError):
        return False
    except OSError:
        return None
    return True


def agent_user() -> str:
    uid = os.geteuid()
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return f"uid {uid}"


def not_accessible(path: Path) -> Restricted:
    return Restricted(f"'{path}' is not accessible by {agent_user()}")


class Host:
    """What the agent can see of the machine it runs on.

    Everything the agent reads outside account homes goes through here so the
    agent can be exercised against a scratch directory.
    """

    def __init__(
        self,
        *,
        home: Optional[str] = None,
        accounts: Optional[Callable[[], List[Account]]] = None,
        root: str = "/",
        uname: Optional[str] = None,
        program: Optional[str] = None,
    ) -> None:
        self.home = Path(home if home is not None else os.path.expanduser("~"))
        self._accounts = accounts or passwd_accounts
        self.root = Path(root)
        self._uname = uname
        self.program = Path(program) if program else self_path()

    def accounts(self) -> List[Account]:
        return self._accounts()

    def account(self, login: str) -> Optional[Account]:
        for acc in self.accounts():
            if acc.login == login:
                return acc
        return None

    def etc(self, name: str) -> Path:
        return self.root / "etc" / name

    def uname(self) -> str:
        if self._uname is None:
            u = os.uname()
            self._uname = " ".join(
                [u.sysname, u.nodename, u.release, u.version, u.machine]
            )
        return self._uname


# -------------------------
# Readonly conditions
# -------------------------


def override_file(path: Path, generic: str) -> Restriction:
    present = exists(path)
    if present is None:
        return not_accessible(path)
    if not present or not path.is_file():
        return Unrestricted()
    content = (read_text(path) or "").strip()
    # An empty override still restricts; only the reason is generated.
    return Restricted(content if content else generic.format(path=path))


def file_contains(name: str, needle: str) -> Callable[[Host], bool]:
    def check(host: Host) -> bool:
        return needle in (read_text(host.etc(name)) or "")

    return check


def uname_contains(needle: str) -> Callable[[Host], bool]:
    def check(host: Host) -> bool:
        return needle in host.uname()

    return check


# Platforms that manage key files themselves. Extend by appending.
SIGNATURES: List[Tuple[Callable[[Host], bool], str]] = [
    (file_contains("platform", "pfSense"), "Product is pfSense"),
    (uname_contains("TRUENAS"), "Product is Truenas Core"),
    (uname_contains("+truenas "), "Product is Truenas Scale"),
    (file_contains("product", "Sophos UTM"), "Product is Sophos UTM"),
]


def readonly_condition(host: Host, account: Account) -> Restriction:
    r = override_file(host.home / SYSTEM_READONLY, "Global override '{path}' exists")
    if r:
        return r
    r = override_file(
        Path(account.home) / USER_READONLY, "Local override '{path}' exists"
    )
    if r:
        return r
    for predicate, reason in SIGNATURES:
        if predicate(host):
            return Restricted(reason)
    return Unrestricted()


# -------------------------
# Commands
# -------------------------


def keyfile_path(account: Account) -> Path:
    return Path(account.home) / KEYFILE


def first_line(content: str) -> str:
    return content.split("\n", 1)[0].rstrip("\r")


def accounts_with_keyfiles(host: Host) -> Iterable[Account]:
    """Accounts whose key file exists, or might exist behind a home the agent
    cannot enter."""
    seen = set()
    for acc in host.accounts():
        if acc.home in seen:
            continue
        if exists(keyfile_path(acc)) is not False:
            seen.add(acc.home)
            yield acc


def get_ssh_keyfiles(host: Host) -> List[dict]:
    out = []
    for acc in accounts_with_keyfiles(host):
        path = keyfile_path(acc)
        raw = read_bytes(path)
        restriction = readonly_condition(host, acc)
        if raw is None and not restriction:
            # Unknown content must never look like an empty file.
            restriction = not_accessible(path)
        content = (raw or b"").decode("utf-8", errors="replace").replace("\r", "")
        # A restricted file is never written, so its marker is irrelevant.
        has_pragma = bool(restriction) or first_line(content) == MARKER
        out.append(
            {
                "login": acc.login,
                "has_pragma": has_pragma,
                "readonly_condition": restriction.reason,
                "keyfile": content,
            }
        )
    return out


def atomic_write(
    path: Path, data: bytes, mode: int = 0o600, owner: Optional[Account] = None
) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        if owner is not None and os.geteuid() == 0:
            os.chown(tmp, owner.uid, owner.gid)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def render_managed(body: str) -> str:
    lines = body.replace("\r", "").split("\n")
    if lines and lines[0] == MARKER:
        lines = lines[1:]
    text = "\n".join(lines).rstrip("\n")
    return f"{MARKER}\n{text}\n" if text else f"{MARKER}\n"


def set_authorized_keyfile(host: Host, login: str, body: str) -> None:
    acc = host.account(login)
    if acc is None:
        raise AgentFailure("not_found", f"No such login: {login}")

    restriction = readonly_condition(host, acc)
    if restriction:
        raise AgentFailure("blocked", restriction.reason)

    path = keyfile_path(acc)
    present = exists(path)
    if present is False:
        raise AgentFailure(
            "not_found", f"Couldn't find authorized_keys for this login. Tried: {path}"
        )
    previous = read_bytes(path) if present else None
    if previous is None:
        raise AgentFailure("blocked", not_accessible(path).reason)

    if first_line(previous.decode("utf-8", errors="replace")) != MARKER:
        mode = path.stat().st_mode & 0o777
        atomic_write(path.with_name(path.name + ".backup"), previous, mode, acc)

    atomic_write(path, render_managed(body).encode("utf-8"), 0o600, acc)


def self_path() -> Path:
    return Path(os.path.abspath(__file__))


def sha256_of(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def update(host: Host, body: bytes, expected_sha256: Optional[str]) -> None:
    if expected_sha256 is not None:
        actual = hashlib.sha256(body).hexdigest()
        if actual != expected_sha256.strip().lower():
            raise AgentFailure(
                "hash_mismatch", f"expected sha256 {expected_sha256}, got {actual}"
            )
    atomic_write(host.program, body, 0o500)


def version(host: Host) -> dict:
    return {"version": VERSION, "sha256": sha256_of(host.program)}


# -------------------------
# Main
# -------------------------


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="keyward-agent", description="keyward host agent")
    sub = ap.add_subparsers(dest="command", metavar="command")
    sub.required = True
    sub.add_parser("get_ssh_keyfiles")
    p = sub.add_parser("set_authorized_keyfile")
    p.add_argument("login")
    p = sub.add_parser("update")
    p.add_argument("--sha256", default=None)
    sub.add_parser("version")
    return ap


def main(
    argv: Optional[List[str]] = None,
    host: Optional[Host] = None,
    stdin: Optional[BinaryIO] = None,
    stdout: Optional[TextIO] = None,
) -> int:
    # argparse exits with 2 on unknown or missing commands.
    args = build_parser().parse_args(argv)
    host = host or Host()
    stdin = stdin or sys.stdin.buffer
    stdout = stdout or sys.stdout
    try:
        if args.command == "get_ssh_keyfiles":
            stdout.write(json.dumps(get_ssh_keyfiles(host)) + "\n")
        elif args.command == "set_authorized_keyfile":
            body = stdin.read().decode("utf-8")
            set_authorized_keyfile(host, args.login, body)
        elif args.command == "update":
            update(host, stdin.read(), args.sha256)
        elif args.command == "version":
            stdout.write(json.dumps(version(host)) + "\n")
    except AgentFailure as ex:
        stdout.write(ex.payload() + "\n")
        return EXIT_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
