"""
keyward - inventory

Read-only view of the desired-state graph: hosts, users, their public keys
and the grants (authorizations) tying them together.

Two sources are supported:
  - a YAML inventory file (hosts / users / authorizations lists)
  - an existing SQLite database using the host / user / user_key /
    authorization tables, opened read-only

Each load returns a fresh, validated Inventory snapshot; callers that need
current desired state simply load again.
"""

from __future__ import annotations

import dataclasses
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from keyward.config import load_yaml
from keyward.errors import InventoryError
from keyward.keyfile import parse_line


@dataclasses.dataclass(frozen=True)
class Host:
    name: str
    address: str
    port: int
    username: str
    key_fingerprint: Optional[str] = None
    jump_via: Optional[str] = None
    disabled: bool = False
    comment: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class User:
    username: str
    enabled: bool = True
    comment: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class PublicKey:
    id: int
    username: str
    key_type: str
    key_base64: str
    comment: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class Authorization:
    id: int
    host: str
    login: str
    username: str
    options: Optional[str] = None
    comment: Optional[str] = None


class Inventory:
    def __init__(
        self,
        hosts: List[Host],
        users: List[User],
        keys: List[PublicKey],
        authorizations: List[Authorization],
    ) -> None:
        self._hosts: Dict[str, Host] = {}
        for h in hosts:
            if h.name in self._hosts:
                raise InventoryError(f"Duplicate host name: {h.name}", host=h.name)
            self._hosts[h.name] = h
        self._users: Dict[str, User] = {}
        for u in users:
            if u.username in self._users:
                raise InventoryError(f"Duplicate username: {u.username}")
            self._users[u.username] = u
        self.keys = sorted(keys, key=lambda k: k.id)
        self.authorizations = sorted(authorizations, key=lambda a: a.id)
        self.validate()

    # -------------------------
    # Queries
    # -------------------------

    def hosts(self) -> List[Host]:
        return list(self._hosts.values())

    def host(self, name: str) -> Optional[Host]:
        return self._hosts.get(name)

    def users(self) -> List[User]:
        return list(self._users.values())

    def user(self, username: str) -> Optional[User]:
        return self._users.get(username)

    def keys_of(self, username: str) -> List[PublicKey]:
        return [k for k in self.keys if k.username == username]

    def grants_for(self, host: str) -> List[Authorization]:
        return [a for a in self.authorizations if a.host == host]

    def jump_chain(self, name: str) -> List[Host]:
        """Jump hosts needed to reach `name`, outermost first."""
        chain: List[Host] = []
        cur = self._hosts[name].jump_via
        while cur is not None:
            hop = self._hosts[cur]
            chain.insert(0, hop)
            cur = hop.jump_via
        return chain

    # -------------------------
    # Invariants
    # -------------------------

    def validate(self) -> None:
        seen_addr: Dict[Tuple[str, int], str] = {}
        for h in self._hosts.values():
            addr = (h.address.lower(), h.port)
            if addr in seen_addr:
                raise InventoryError(
                    f"{h.name} and {seen_addr[addr]} share address {h.address}:{h.port}",
                    host=h.name,
                )
            seen_addr[addr] = h.name
            if h.jump_via is not None and h.jump_via not in self._hosts:
                raise InventoryError(
                    f"jump_via refers to unknown host {h.jump_via!r}", host=h.name
                )

        for h in self._hosts.values():
            visited = [h.name]
            cur = h.jump_via
            while cur is not None:
                if cur in visited:
                    raise InventoryError(
                        "jump_via cycle: " + " -> ".join(visited + [cur]), host=h.name
                    )
                visited.append(cur)
                cur = self._hosts[cur].jump_via

        for k in self.keys:
            if k.username not in self._users:
                raise InventoryError(f"key {k.id} belongs to unknown user {k.username!r}")

        seen_grants = set()
        for a in self.authorizations:
            if a.host not in self._hosts:
                raise InventoryError(f"grant {a.id} refers to unknown host {a.host!r}")
            if a.username not in self._users:
                raise InventoryError(
                    f"grant {a.id} refers to unknown user {a.username!r}", host=a.host
                )
            if not a.login:
                raise InventoryError(f"grant {a.id} has no login", host=a.host)
            ident = (a.host, a.username, a.login)
            if ident in seen_grants:
                raise InventoryError(
                    f"duplicate grant for {a.username} as {a.login}",
                    host=a.host,
                    login=a.login,
                )
            seen_grants.add(ident)


# -------------------------
# YAML source
# -------------------------


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v)
    return s if s != "" else None


def _parse_key(entry: Any, username: str, key_id: int) -> PublicKey:
    if isinstance(entry, str):
        try:
            kl = parse_line(entry)
        except ValueError as ex:
            raise InventoryError(f"user {username}: {ex}") from ex
        if kl.options:
            raise InventoryError(
                f"user {username}: key lines must not carry options ({kl.options})"
            )
        return PublicKey(key_id, username, kl.key_type, kl.key_base64, kl.comment)
    if isinstance(entry, dict):
        return PublicKey(
            key_id,
            username,
            str(entry.get("type") or entry.get("key_type") or ""),
            str(entry.get("base64") or entry.get("key_base64") or ""),
            _opt_str(entry.get("comment")),
        )
    raise InventoryError(f"user {username}: invalid key entry {entry!r}")


def inventory_from_dict(data: Dict[str, Any]) -> Inventory:
    hosts: List[Host] = []
    for h in data.get("hosts", []) or []:
        if not isinstance(h, dict) or "name" not in h:
            raise InventoryError(f"Invalid host entry: {h!r}")
        for field in ("address", "username"):
            if not h.get(field):
                raise InventoryError(f"host {h['name']}: missing {field}", host=h["name"])
        hosts.append(
            Host(
                name=str(h["name"]),
                address=str(h["address"]),
                port=int(h.get("port", 22)),
                username=str(h["username"]),
                key_fingerprint=_opt_str(h.get("key_fingerprint")),
                jump_via=_opt_str(h.get("jump_via")),
                disabled=bool(h.get("disabled", False)),
                comment=_opt_str(h.get("comment")),
            )
        )

    users: List[User] = []
    keys: List[PublicKey] = []
    for u in data.get("users", []) or []:
        if not isinstance(u, dict) or "username" not in u:
            raise InventoryError(f"Invalid user entry: {u!r}")
        name = str(u["username"])
        users.append(
            User(name, bool(u.get("enabled", True)), _opt_str(u.get("comment")))
        )
        for entry in u.get("keys", []) or []:
            keys.append(_parse_key(entry, name, len(keys) + 1))

    grants: List[Authorization] = []
    for i, a in enumerate(data.get("authorizations", []) or [], start=1):
        if not isinstance(a, dict) or not {"host", "user", "login"} <= set(a):
            raise InventoryError(f"Invalid authorization entry: {a!r}")
        grants.append(
            Authorization(
                id=i,
                host=str(a["host"]),
                login=str(a["login"]),
                username=str(a["user"]),
                options=_opt_str(a.get("options")),
                comment=_opt_str(a.get("comment")),
            )
        )

    return Inventory(hosts, users, keys, grants)


def load_yaml_inventory(path: str) -> Inventory:
    return inventory_from_dict(load_yaml(path))


# -------------------------
# SQLite source
# -------------------------


def load_sqlite_inventory(path: str) -> Inventory:
    if not Path(path).exists():
        raise InventoryError(f"Inventory database not found: {path}")
    conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    try:
        host_rows = conn.execute(
            "SELECT id, name, username, address, port, key_fingerprint, jump_via, "
            "disabled, comment FROM host ORDER BY id"
        ).fetchall()
        names = {r["id"]: r["name"] for r in host_rows}
        hosts = [
            Host(
                name=r["name"],
                address=r["address"],
                port=int(r["port"]),
                username=r["username"],
                key_fingerprint=r["key_fingerprint"] or None,
                jump_via=names.get(r["jump_via"]) if r["jump_via"] is not None else None,
                disabled=bool(r["disabled"]),
                comment=r["comment"],
            )
            for r in host_rows
        ]

        user_rows = conn.execute(
            "SELECT id, username, enabled, comment FROM user ORDER BY id"
        ).fetchall()
        usernames = {r["id"]: r["username"] for r in user_rows}
        users = [User(r["username"], bool(r["enabled"]), r["comment"]) for r in user_rows]

        keys = [
            PublicKey(
                r["id"],
                usernames[r["user_id"]],
                r["key_type"],
                r["key_base64"],
                r["name"],
            )
            for r in conn.execute(
                "SELECT id, key_type, key_base64, name, user_id FROM user_key ORDER BY id"
            )
            if r["user_id"] in usernames
        ]

        grants = [
            Authorization(
                r["id"],
                names[r["host_id"]],
                r["login"],
                usernames[r["user_id"]],
                r["options"] or None,
                r["comment"],
            )
            for r in conn.execute(
                "SELECT id, host_id, user_id, login, options, comment "
                "FROM authorization ORDER BY id"
            )
            if r["host_id"] in names and r["user_id"] in usernames
        ]
    except sqlite3.Error as ex:
        raise InventoryError(f"Cannot read inventory database {path}: {ex}") from ex
    finally:
        conn.close()

    return Inventory(hosts, users, keys, grants)


def open_inventory(location: str) -> Callable[[], Inventory]:
    """Return a loader that reads the inventory afresh on every call."""
    if location.startswith("sqlite://"):
        path = location[len("sqlite://") :]
        return lambda: load_sqlite_inventory(path)
    return lambda: load_yaml_inventory(location)
