"""
keyward - project

Desired-state projection: for one host, the authorized_keys body every login
should have. A login whose grants cannot be rendered maps to the
DataIntegrityError instead of a body; the other logins are unaffected.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from keyward.errors import DataIntegrityError
from keyward.inventory import Inventory
from keyward.keyfile import parse_line, render_line

log = logging.getLogger(__name__)

Expected = Union[str, DataIntegrityError]
Projection = Dict[str, Expected]


def project_host(
    inv: Inventory, host_name: str, manager_key: Optional[str] = None
) -> Projection:
    host = inv.host(host_name)
    if host is None:
        raise KeyError(host_name)

    lines: Dict[str, List[str]] = {}
    errors: Dict[str, DataIntegrityError] = {}

    for grant in inv.grants_for(host_name):
        lines.setdefault(grant.login, [])
        user = inv.user(grant.username)
        if user is None or not user.enabled:
            continue
        for key in inv.keys_of(grant.username):
            try:
                lines[grant.login].append(
                    render_line(key.key_type, key.key_base64, grant.options, key.comment)
                )
            except DataIntegrityError as ex:
                log.debug(
                    "%s: cannot render key %s of %s: %s",
                    host_name,
                    key.id,
                    user.username,
                    ex,
                )
                errors.setdefault(
                    grant.login,
                    DataIntegrityError(
                        f"key {key.id} of {user.username}: {ex}",
                        host=host_name,
                        login=grant.login,
                    ),
                )

    if manager_key:
        try:
            own = parse_line(manager_key).render()
        except ValueError as ex:
            errors[host.username] = DataIntegrityError(
                f"ssh.manager_key: {ex}", host=host_name, login=host.username
            )
        else:
            lines.setdefault(host.username, [])
            if own not in lines[host.username]:
                lines[host.username].insert(0, own)

    out: Projection = {}
    for login, body in lines.items():
        out[login] = errors[login] if login in errors else "\n".join(body)
    for login, err in errors.items():
        out.setdefault(login, err)
    return out
