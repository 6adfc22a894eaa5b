from __future__ import annotations

from keyward.apply import ApplyResult
from keyward.errors import ConnectivityError
from keyward.reconcile import DiffEntry
from keyward.report import Reporter, add_diff, add_outcome, body_diff
from keyward.service import HostOutcome


def entry(classification, expected="b", actual="a", changes=None):
    return DiffEntry("web01", "deploy", classification, expected, actual, "why", changes or [])


def test_severities_follow_classification():
    rep = Reporter()
    add_diff(rep, entry("in_sync"))
    add_diff(rep, entry("would_modify", changes=["unknown key"]))
    add_diff(rep, entry("blocked_readonly"))
    add_diff(rep, entry("would_add", actual=None))
    add_diff(rep, entry("projection_error"))

    assert rep.summarize() == (3, 0, 2)
    assert rep.items[2].severity == "NOTE"
    modify = rep.items[1]
    assert modify.details == "would_modify (why)"
    assert modify.extra == ["unknown key"]


def test_verbose_adds_unified_diff():
    rep = Reporter()
    add_diff(rep, entry("would_modify", expected="x\ny", actual="x\nz\n"), verbose=True)
    lines = rep.items[0].extra
    assert lines[:2] == ["--- actual", "+++ expected"]
    assert "-z" in lines and "+y" in lines


def test_body_diff_of_missing_file():
    assert "+k" in body_diff(entry("would_add", expected="k", actual=None))


def test_outcomes(capsys):
    rep = Reporter()
    add_outcome(rep, HostOutcome("old", skipped="host disabled"))
    add_outcome(rep, HostOutcome("web01", error=ConnectivityError("unreachable: x")))
    add_outcome(
        rep,
        HostOutcome(
            "fw01",
            results=[
                ApplyResult("fw01", "root", "blocked", "Product is pfSense"),
                ApplyResult("fw01", "ops", "applied", "1 key line(s)"),
                ApplyResult("fw01", "bob", "not_found", "No such login: bob"),
            ],
        ),
    )
    assert rep.summarize() == (2, 1, 2)

    rep.print(quiet_info=True)
    out = capsys.readouterr().out
    assert "== web01 ==\n[XX] host: ConnectivityError: unreachable: x" in out
    assert "[--] root: blocked: Product is pfSense" in out
    assert "[XX] bob: not_found: No such login: bob" in out
    assert "applied" not in out
