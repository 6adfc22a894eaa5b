from __future__ import annotations

import base64
import copy
import hashlib
import io
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from keyward import agent
from keyward.config import Settings, SSHSettings
from keyward.errors import ConnectivityError
from keyward.inventory import Inventory, inventory_from_dict
from keyward.transport import bundled_agent


def make_key(seed: str) -> str:
    """A well-formed ssh-ed25519 public key blob, base64 encoded."""
    blob = b"\x00\x00\x00\x0bssh-ed25519\x00\x00\x00\x20"
    blob += hashlib.sha256(seed.encode("utf-8")).digest()
    return base64.b64encode(blob).decode("ascii")


ALICE_KEY = make_key("alice")
BOB_KEY = make_key("bob")
CAROL_KEY = make_key("carol")
STRANGER_KEY = make_key("stranger")
MANAGER_KEY = make_key("manager")


class Sandbox:
    """A scratch machine for the agent: homes, /etc and uname under tmp."""

    def __init__(self, root: Path, uname: str = "Linux test 6.1.0 #1 SMP x86_64") -> None:
        self.root = root
        self.uname = uname
        self.accounts: List[agent.Account] = []
        (root / "etc").mkdir(parents=True, exist_ok=True)
        self.manager_home = root / "home" / "keyward"
        (self.manager_home / ".ssh").mkdir(parents=True, exist_ok=True)
        self.program = self.manager_home / ".ssh" / "keyward_agent.py"
        self.program.write_bytes(bundled_agent())

    def add_account(
        self, login: str, keyfile: Optional[str] = None, home: Optional[Path] = None
    ) -> Path:
        home = home or self.root / "home" / login
        (home / ".ssh").mkdir(parents=True, exist_ok=True)
        self.accounts.append(agent.Account(login, os.getuid(), os.getgid(), str(home)))
        path = home / ".ssh" / "authorized_keys"
        if keyfile is not None:
            path.write_text(keyfile, encoding="utf-8")
        return path

    def keyfile(self, login: str) -> Path:
        acc = next(a for a in self.accounts if a.login == login)
        return Path(acc.home) / ".ssh" / "authorized_keys"

    def host(self) -> agent.Host:
        return agent.Host(
            home=str(self.manager_home),
            accounts=lambda: list(self.accounts),
            root=str(self.root),
            uname=self.uname,
            program=str(self.program),
        )

    def run(self, argv: List[str], stdin: bytes = b"") -> Tuple[int, str]:
        out = io.StringIO()
        try:
            rc = agent.main(argv, host=self.host(), stdin=io.BytesIO(stdin), stdout=out)
        except SystemExit as ex:
            rc = ex.code
        return rc, out.getvalue()


class FakeTransport:
    """Runs agent commands in-process against one Sandbox per host name."""

    def __init__(self, machines: Dict[str, Sandbox]) -> None:
        self.machines = machines
        self.down: set = set()
        self.calls: List[Tuple[str, str]] = []
        self.cancelled: List[Optional[str]] = []

    def cancel(self, host_name: Optional[str] = None) -> None:
        self.cancelled.append(host_name)

    def commands(self, host_name: str) -> List[str]:
        return [cmd for name, cmd in self.calls if name == host_name]

    def exec(self, host, remote_cmd, stdin=None, timeout=None):
        self.calls.append((host.name, remote_cmd))
        if host.name in self.down:
            raise ConnectivityError("unreachable: connection refused", host=host.name)
        box = self.machines[host.name]
        if remote_cmd.startswith("mkdir "):
            box.program.write_bytes(stdin or b"")
            return 0, "", ""
        argv = shlex.split(remote_cmd)
        if not box.program.exists():
            return 2, "", f"python3: can't open file '{argv[1]}': [Errno 2] No such file"
        rc, out = box.run(argv[2:], stdin or b"")
        err = "usage: keyward-agent" if rc == 2 else ""
        return rc, out, err


def base_inventory() -> Dict[str, Any]:
    return {
        "hosts": [
            {"name": "bastion", "address": "192.0.2.1", "username": "keyward"},
            {
                "name": "web01",
                "address": "10.0.0.11",
                "username": "keyward",
                "jump_via": "bastion",
            },
            {"name": "fw01", "address": "10.0.0.1", "username": "root"},
        ],
        "users": [
            {"username": "alice", "keys": [f"ssh-ed25519 {ALICE_KEY} alice@laptop"]},
            {
                "username": "bob",
                "keys": [{"type": "ssh-ed25519", "base64": BOB_KEY, "comment": "bob"}],
            },
            {"username": "carol", "enabled": False, "keys": [f"ssh-ed25519 {CAROL_KEY}"]},
        ],
        "authorizations": [
            {"host": "web01", "login": "deploy", "user": "alice", "options": "no-pty"},
            {"host": "web01", "login": "deploy", "user": "bob"},
            {"host": "web01", "login": "root", "user": "alice"},
        ],
    }


class InventoryState:
    """Mutable desired state; every load returns a fresh snapshot."""

    def __init__(self, data: Dict[str, Any]) -> None:
        self.data = data

    def __call__(self) -> Inventory:
        return inventory_from_dict(copy.deepcopy(self.data))

    def drop_grants(self, host: str, login: str) -> None:
        self.data["authorizations"] = [
            a
            for a in self.data["authorizations"]
            if not (a["host"] == host and a["login"] == login)
        ]


@pytest.fixture
def sandbox(tmp_path: Path) -> Sandbox:
    return Sandbox(tmp_path / "machine")


@pytest.fixture
def inventory_state() -> InventoryState:
    return InventoryState(base_inventory())


@pytest.fixture
def settings() -> Settings:
    return Settings(inventory="unused.yml", concurrency=4, ssh=SSHSettings())


@pytest.fixture
def fleet(tmp_path: Path) -> Dict[str, Sandbox]:
    machines = {}
    for name in ("bastion", "web01", "fw01"):
        machines[name] = Sandbox(tmp_path / name)
    return machines
