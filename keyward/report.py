"""
keyward - report

Operator-facing findings, grouped per target and printed worst first.
"""

from __future__ import annotations

import dataclasses
import difflib
from typing import Dict, List, Tuple

from keyward.apply import APPLIED, BLOCKED, ApplyResult
from keyward.reconcile import (
    BLOCKED_READONLY,
    IN_SYNC,
    PROJECTION_ERROR,
    WOULD_ADD,
    DiffEntry,
)
from keyward.service import HostOutcome


@dataclasses.dataclass
class Finding:
    target: str
    severity: str  # "INFO" | "NOTE" | "WARN" | "FAIL"
    action: str
    details: str
    extra: List[str] = dataclasses.field(default_factory=list)


PREFIX = {"INFO": "[..] ", "NOTE": "[--] ", "WARN": "[!!] ", "FAIL": "[XX] "}


class Reporter:
    def __init__(self) -> None:
        self.items: List[Finding] = []

    def info(self, target: str, action: str, details: str, extra=None) -> None:
        self.items.append(Finding(target, "INFO", action, details, extra or []))

    def note(self, target: str, action: str, details: str, extra=None) -> None:
        """Shown like a warning but never counted as drift."""
        self.items.append(Finding(target, "NOTE", action, details, extra or []))

    def warn(self, target: str, action: str, details: str, extra=None) -> None:
        self.items.append(Finding(target, "WARN", action, details, extra or []))

    def fail(self, target: str, action: str, details: str, extra=None) -> None:
        self.items.append(Finding(target, "FAIL", action, details, extra or []))

    def summarize(self) -> Tuple[int, int, int]:
        i = sum(1 for x in self.items if x.severity in ("INFO", "NOTE"))
        w = sum(1 for x in self.items if x.severity == "WARN")
        f = sum(1 for x in self.items if x.severity == "FAIL")
        return i, w, f

    def print(self, *, quiet_info: bool = False) -> None:
        by_target: Dict[str, List[Finding]] = {}
        for x in self.items:
            by_target.setdefault(x.target, []).append(x)

        sev_order = {"FAIL": 0, "WARN": 1, "NOTE": 2, "INFO": 3}
        for tgt in sorted(by_target.keys()):
            print(f"\n== {tgt} ==")
            for it in sorted(
                by_target[tgt], key=lambda z: (sev_order.get(z.severity, 9), z.action)
            ):
                if quiet_info and it.severity == "INFO":
                    continue
                prefix = PREFIX.get(it.severity, "[?] ")
                print(f"{prefix}{it.action}: {it.details}")
                for line in it.extra:
                    print(f"       {line}")


# -------------------------
# Outcome -> findings
# -------------------------


def body_diff(entry: DiffEntry) -> List[str]:
    before = (entry.actual_body or "").splitlines()
    after = entry.expected_body.splitlines()
    return [
        ln.rstrip("\n")
        for ln in difflib.unified_diff(before, after, "actual", "expected", lineterm="")
    ]


def add_diff(rep: Reporter, entry: DiffEntry, *, verbose: bool = False) -> None:
    extra = list(entry.changes)
    if verbose and entry.classification not in (IN_SYNC, BLOCKED_READONLY):
        extra += body_diff(entry)
    details = f"{entry.classification} ({entry.reason})"
    if entry.classification == IN_SYNC:
        rep.info(entry.host, entry.login, details)
    elif entry.classification == BLOCKED_READONLY:
        rep.note(entry.host, entry.login, details, extra)
    elif entry.classification in (PROJECTION_ERROR, WOULD_ADD):
        rep.fail(entry.host, entry.login, details, extra)
    else:
        # drift and foreign files need an operator decision
        rep.warn(entry.host, entry.login, details, extra)


def add_result(rep: Reporter, result: ApplyResult) -> None:
    if result.status == APPLIED:
        rep.info(result.host, result.login, f"applied ({result.detail})")
    elif result.status == BLOCKED:
        rep.note(result.host, result.login, f"blocked: {result.detail}")
    else:
        rep.fail(result.host, result.login, f"{result.status}: {result.detail}")


def add_outcome(rep: Reporter, outcome: HostOutcome, *, verbose: bool = False) -> None:
    if outcome.skipped:
        rep.info(outcome.host, "host", f"skipped: {outcome.skipped}")
        return
    if outcome.error is not None:
        kind = type(outcome.error).__name__
        rep.fail(outcome.host, "host", f"{kind}: {outcome.error}")
        return
    for entry in outcome.entries:
        add_diff(rep, entry, verbose=verbose)
    for result in outcome.results:
        add_result(rep, result)
