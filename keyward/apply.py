"""
keyward - apply

Writes operator-selected logins on one host. The body for each login is
projected again from the current inventory at apply time; a diff computed
earlier is only used to pick the logins. Each login succeeds or fails on its
own and nothing is retried: re-running reconciliation is the recovery path.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional

from keyward.errors import DataIntegrityError, KeywardError
from keyward.inventory import Host, Inventory
from keyward.project import project_host
from keyward.transport import AgentClient, Blocked, NotFound, Ok

log = logging.getLogger(__name__)

APPLIED = "applied"
BLOCKED = "blocked"
NOT_FOUND = "not_found"
FAILED = "failed"


@dataclasses.dataclass
class ApplyResult:
    host: str
    login: str
    status: str
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == APPLIED


def unique(logins: List[str]) -> List[str]:
    seen = set()
    out = []
    for login in logins:
        if login not in seen:
            seen.add(login)
            out.append(login)
    return out


def apply_host(
    client: AgentClient,
    inv: Inventory,
    host: Host,
    logins: List[str],
    manager_key: Optional[str] = None,
) -> List[ApplyResult]:
    logins = unique(logins)
    if not logins:
        return []

    try:
        client.ensure_agent(host)
    except KeywardError as ex:
        log.warning("%s: not applying, agent check failed: %s", host.name, ex)
        return [ApplyResult(host.name, login, FAILED, str(ex)) for login in logins]

    projection = project_host(inv, host.name, manager_key)
    results = []
    for login in logins:
        expected = projection.get(login, "")
        if isinstance(expected, DataIntegrityError):
            log.warning("%s: %s: %s", host.name, login, expected)
            results.append(ApplyResult(host.name, login, FAILED, str(expected)))
            continue
        try:
            outcome = client.set_authorized_keyfile(host, login, expected)
        except KeywardError as ex:
            log.warning("%s: %s: apply failed: %s", host.name, login, ex)
            results.append(ApplyResult(host.name, login, FAILED, str(ex)))
            continue

        if isinstance(outcome, Ok):
            n = len(expected.splitlines())
            log.info("%s: %s: wrote %d key line(s)", host.name, login, n)
            results.append(ApplyResult(host.name, login, APPLIED, f"{n} key line(s)"))
        elif isinstance(outcome, Blocked):
            log.warning("%s: %s: blocked: %s", host.name, login, outcome.reason)
            results.append(ApplyResult(host.name, login, BLOCKED, outcome.reason))
        elif isinstance(outcome, NotFound):
            results.append(ApplyResult(host.name, login, NOT_FOUND, outcome.message))
        else:
            results.append(ApplyResult(host.name, login, FAILED, repr(outcome)))
    return results
