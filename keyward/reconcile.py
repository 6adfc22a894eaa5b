"""
keyward - reconcile

Pure comparison of what an agent reported for one host against the projected
desired state. No I/O happens here.

Classification precedence (first match wins):
  blocked_readonly   the agent reports a readonly condition
  projection_error   the desired body could not be rendered
  would_add          keys are expected but the account does not exist remotely
  foreign_unmanaged  the file lacks the managed-by marker (applying backs it up)
  in_sync            bodies are equal after normalization
  would_clear        nothing is expected but the file still has content
  would_modify       bodies differ
"""

from __future__ import annotations

import dataclasses
from typing import Dict, List, Optional

from keyward.errors import DataIntegrityError
from keyward.keyfile import KeyLine, key_lines, normalize_body, parse_line
from keyward.project import Projection

IN_SYNC = "in_sync"
WOULD_MODIFY = "would_modify"
WOULD_ADD = "would_add"
WOULD_CLEAR = "would_clear"
BLOCKED_READONLY = "blocked_readonly"
FOREIGN_UNMANAGED = "foreign_unmanaged"
PROJECTION_ERROR = "projection_error"

APPLICABLE = (WOULD_MODIFY, WOULD_CLEAR, FOREIGN_UNMANAGED)


@dataclasses.dataclass(frozen=True)
class KeyfileReport:
    login: str
    has_pragma: bool
    readonly_condition: str
    keyfile: str


@dataclasses.dataclass
class DiffEntry:
    host: str
    login: str
    classification: str
    expected_body: str
    actual_body: Optional[str]
    reason: str
    changes: List[str] = dataclasses.field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return self.classification == IN_SYNC


def _preview(k: KeyLine) -> str:
    return f"{k.key_type} ...{k.key_base64[-5:]}"


def key_changes(
    actual: str,
    expected: str,
    has_pragma: bool,
    known_keys: Optional[Dict[str, str]] = None,
) -> List[str]:
    """Key-level drift between two bodies, for display."""
    known_keys = known_keys or {}
    out: List[str] = []
    if not has_pragma:
        out.append("missing managed-by marker")

    wanted: Dict[str, KeyLine] = {}
    for ln in key_lines(expected):
        k = parse_line(ln)
        wanted.setdefault(k.key_base64, k)

    seen = set()
    for ln in key_lines(actual):
        try:
            k = parse_line(ln)
        except ValueError as ex:
            out.append(f"faulty line: {ex}")
            continue
        owner = known_keys.get(k.key_base64)
        if k.key_base64 in seen:
            out.append(f"duplicate key {_preview(k)}")
        elif k.key_base64 in wanted:
            seen.add(k.key_base64)
            want = wanted[k.key_base64]
            if (want.options or "") != (k.options or ""):
                out.append(
                    f"incorrect options for {owner or _preview(k)}: "
                    f"expected {want.options or '(none)'}, found {k.options or '(none)'}"
                )
        elif owner:
            seen.add(k.key_base64)
            out.append(f"unauthorized key {_preview(k)} (belongs to {owner})")
        else:
            seen.add(k.key_base64)
            out.append(f"unknown key {_preview(k)}")

    for b64, k in wanted.items():
        if b64 not in seen:
            owner = known_keys.get(b64, "unknown owner")
            out.append(f"missing key {_preview(k)} ({owner})")
    return out


def classify(
    host: str,
    login: str,
    report: Optional[KeyfileReport],
    expected: object,
    known_keys: Optional[Dict[str, str]] = None,
) -> DiffEntry:
    actual = report.keyfile if report is not None else None

    def entry(cls: str, want: str, reason: str, changes=None) -> DiffEntry:
        return DiffEntry(host, login, cls, want, actual, reason, changes or [])

    if report is not None and report.readonly_condition:
        want = normalize_body(expected) if isinstance(expected, str) else ""
        return entry(BLOCKED_READONLY, want, report.readonly_condition)

    if isinstance(expected, DataIntegrityError):
        return entry(PROJECTION_ERROR, "", str(expected))

    want = normalize_body(expected or "")
    if report is None:
        if not want:
            return entry(IN_SYNC, want, "nothing expected and no account exists")
        return entry(
            WOULD_ADD, want, f"no account '{login}' with a key file exists on the host"
        )

    have = normalize_body(report.keyfile)
    changes = key_changes(have, want, report.has_pragma, known_keys)

    if not report.has_pragma and (want or have):
        return entry(
            FOREIGN_UNMANAGED,
            want,
            "file is not managed by keyward; applying keeps a .backup copy",
            changes,
        )
    if have == want:
        return entry(IN_SYNC, want, "up to date")
    if not want:
        return entry(WOULD_CLEAR, want, "no grants remain for this login", changes)
    reason = f"{len(changes)} difference(s)" if changes else "content differs"
    return entry(WOULD_MODIFY, want, reason, changes)


def reconcile(
    host: str,
    reports: List[KeyfileReport],
    projection: Projection,
    known_keys: Optional[Dict[str, str]] = None,
) -> List[DiffEntry]:
    by_login = {r.login: r for r in reports}
    logins = [r.login for r in reports]
    logins += [login for login in projection if login not in by_login]
    return [
        classify(
            host, login, by_login.get(login), projection.get(login, ""), known_keys
        )
        for login in logins
    ]
