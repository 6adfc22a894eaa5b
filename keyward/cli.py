"""
keyward - command line

Reconcile authorized_keys files across a fleet against a central inventory.
Runs from a workstation or management host and talks to every target over
ssh through the keyward agent.

Exit codes:
  0 = done, everything in sync / applied
  2 = drift or failures found (some targets need attention)
      logins blocked by a read-only platform are listed but do not count
  3 = runtime/config error
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import textwrap
from typing import Any, List, Optional

from keyward import __version__
from keyward.errors import ConfigError, KeywardError
from keyward.config import Settings, load_settings
from keyward.keyfile import fingerprint, same_fingerprint
from keyward.reconcile import APPLICABLE, BLOCKED_READONLY, FOREIGN_UNMANAGED
from keyward.report import Reporter, add_diff, add_outcome, add_result
from keyward.service import KeyTrust
from keyward.transport import AgentClient, SSHTransport, bundled_sha256

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def setup_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        raise ConfigError(f"Unknown log level: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT, stream=sys.stderr)


def finish(rep: Reporter, *, quiet_info: bool = False) -> int:
    """Exit 2 on drift or failure. Blocked logins (NOTE) never count."""
    rep.print(quiet_info=quiet_info)
    i, w, f = rep.summarize()
    print(f"\nSummary: INFO={i} WARN={w} FAIL={f}")
    return 2 if (f or w) else 0


# -------------------------
# Commands
# -------------------------


def cmd_diff(kt: KeyTrust, args: argparse.Namespace) -> int:
    rep = Reporter()
    for outcome in kt.diff_many(args.host or None):
        add_outcome(rep, outcome, verbose=args.verbose)
    return finish(rep, quiet_info=not args.all_entries)


def confirm(prompt: str) -> bool:
    try:
        return input(f"{prompt} [y/N] ").strip().lower() in ("y", "yes")
    except EOFError:
        return False


def cmd_apply(kt: KeyTrust, args: argparse.Namespace) -> int:
    rep = Reporter()
    try:
        entries = {e.login: e for e in kt.get_diff(args.host)}
    except KeywardError as ex:
        rep.fail(args.host, "host", f"{type(ex).__name__}: {ex}")
        return finish(rep)

    selected: List[str] = []
    for login in dict.fromkeys(args.login):
        entry = entries.get(login)
        if entry is None:
            rep.warn(args.host, login, "not reported by the agent and not in the inventory")
            continue
        add_diff(rep, entry, verbose=True)
        if entry.classification == BLOCKED_READONLY:
            continue
        if entry.classification == FOREIGN_UNMANAGED:
            rep.warn(args.host, login, "existing file will be kept as authorized_keys.backup")
        if entry.classification in APPLICABLE:
            selected.append(login)

    rep.print()
    if not selected:
        print("\nNothing to apply.")
        return 0 if not rep.summarize()[2] else 2

    print(f"\nWill write {', '.join(selected)} on {args.host}.")
    if not args.yes and not confirm("Apply?"):
        print("Aborted.")
        return 2

    rep = Reporter()
    for result in kt.apply(args.host, selected):
        add_result(rep, result)
    return finish(rep)


def cmd_agent(kt: KeyTrust, args: argparse.Namespace) -> int:
    inv = kt.load_inventory()
    host = inv.host(args.host)
    if host is None:
        raise ConfigError(f"Unknown host: {args.host}")
    settings = dataclasses.replace(kt.settings.agent)
    if args.action == "install":
        settings.auto_update = True
    client = AgentClient(kt.make_transport(inv), settings)

    rep = Reporter()
    try:
        info = client.ensure_agent(host) if args.action == "install" else client.version(host)
    except KeywardError as ex:
        rep.fail(host.name, "agent", f"{type(ex).__name__}: {ex}")
        return finish(rep)
    current = info["sha256"] == bundled_sha256()
    msg = f"{info['version']} sha256={info['sha256']}"
    if current:
        rep.info(host.name, "agent", f"{msg} (current)")
    else:
        rep.warn(host.name, "agent", f"{msg} (expected {bundled_sha256()})")
    return finish(rep)


def cmd_fingerprint(kt: KeyTrust, args: argparse.Namespace) -> int:
    inv = kt.load_inventory()
    host = inv.host(args.host)
    if host is None:
        raise ConfigError(f"Unknown host: {args.host}")
    try:
        keys = SSHTransport(kt.settings.ssh, inv).scan(host)
    except KeywardError as ex:
        eprint(f"ERROR: {host.name}: {ex}")
        return 2
    for key_type, b64 in keys:
        mark = ""
        if host.key_fingerprint and same_fingerprint(fingerprint(b64), host.key_fingerprint):
            mark = "  (recorded)"
        print(f"{fingerprint(b64)}  {key_type}{mark}")
    return 0


def cmd_check(kt: KeyTrust, args: argparse.Namespace) -> int:
    inv = kt.load_inventory()
    hosts = inv.hosts()
    disabled = sum(1 for h in hosts if h.disabled)
    print(f"Configuration: {kt.settings.source}")
    print(f"Inventory: {kt.settings.inventory}")
    print(
        f"  hosts={len(hosts)} (disabled={disabled}) users={len(inv.users())} "
        f"keys={len(inv.keys)} authorizations={len(inv.authorizations)}"
    )
    print(f"Bundled agent sha256: {bundled_sha256()}")
    return 0


# -------------------------
# Main
# -------------------------


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="keyward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Reconcile SSH authorized_keys across hosts against an inventory.",
        epilog=textwrap.dedent("""\
        Examples:
          keyward --config keyward.yml check
          keyward --config keyward.yml diff
          keyward --config keyward.yml diff --host web01 --verbose
          keyward --config keyward.yml apply --host web01 --login deploy
          keyward --config keyward.yml agent --host web01 install
          keyward --config keyward.yml fingerprint --host web01
        """),
    )
    ap.add_argument("--config", help="Path to keyward YAML config ($KEYWARD_CONFIG)")
    ap.add_argument("--log-level", help="Override logging.level from the config")
    ap.add_argument("--version", action="version", version=f"keyward {__version__}")
    sub = ap.add_subparsers(dest="command", metavar="command")
    sub.required = True

    p = sub.add_parser("diff", help="Show drift per host and login")
    p.add_argument("--host", action="append", help="Limit to host (repeatable)")
    p.add_argument(
        "--all-entries", action="store_true", help="Also list logins that are in sync"
    )
    p.add_argument(
        "--verbose", action="store_true", help="Print line diffs of changed files"
    )
    p.set_defaults(func=cmd_diff)

    p = sub.add_parser("apply", help="Write selected logins on one host")
    p.add_argument("--host", required=True)
    p.add_argument("--login", action="append", required=True, help="Login (repeatable)")
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(func=cmd_apply)

    p = sub.add_parser("agent", help="Show or install the agent on a host")
    p.add_argument("--host", required=True)
    p.add_argument("action", choices=["version", "install"])
    p.set_defaults(func=cmd_agent)

    p = sub.add_parser("fingerprint", help="Scan a host's SSH host key fingerprints")
    p.add_argument("--host", required=True)
    p.set_defaults(func=cmd_fingerprint)

    p = sub.add_parser("check", help="Validate configuration and inventory")
    p.set_defaults(func=cmd_check)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings: Settings = load_settings(args.config)
        setup_logging(args.log_level or settings.log_level)
        kt = KeyTrust(settings)
        return args.func(kt, args)
    except ConfigError as ex:
        eprint(f"ERROR: {ex}")
        return 3


if __name__ == "__main__":
    sys.exit(main())
