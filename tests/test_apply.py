from __future__ import annotations

from keyward.agent import MARKER
from keyward.apply import APPLIED, BLOCKED, FAILED, NOT_FOUND, apply_host, unique
from keyward.config import AgentSettings
from keyward.transport import AgentClient
from tests.conftest import ALICE_KEY, BOB_KEY, STRANGER_KEY, FakeTransport

DEPLOY_BODY = f"no-pty ssh-ed25519 {ALICE_KEY} alice@laptop\nssh-ed25519 {BOB_KEY} bob"
ROOT_BODY = f"ssh-ed25519 {ALICE_KEY} alice@laptop"


def setup(fleet, inventory_state):
    fake = FakeTransport(fleet)
    return AgentClient(fake, AgentSettings()), inventory_state(), fake


def test_unique_keeps_first_occurrence():
    assert unique(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


def test_apply_writes_projected_bodies(fleet, inventory_state):
    web = fleet["web01"]
    deploy = web.add_account("deploy", keyfile=f"ssh-ed25519 {STRANGER_KEY}\n")
    root = web.add_account("root", keyfile=f"{MARKER}\n")
    client, inv, _ = setup(fleet, inventory_state)

    results = apply_host(client, inv, inv.host("web01"), ["deploy", "root", "deploy"])

    assert [(r.login, r.status) for r in results] == [("deploy", APPLIED), ("root", APPLIED)]
    assert all(r.ok for r in results)
    assert results[0].detail == "2 key line(s)"
    assert deploy.read_text() == f"{MARKER}\n{DEPLOY_BODY}\n"
    assert root.read_text() == f"{MARKER}\n{ROOT_BODY}\n"
    assert deploy.with_name("authorized_keys.backup").read_text() == (
        f"ssh-ed25519 {STRANGER_KEY}\n"
    )


def test_login_without_grants_is_cleared(fleet, inventory_state):
    path = fleet["web01"].add_account("backup", keyfile=f"{MARKER}\nssh-ed25519 {BOB_KEY}\n")
    client, inv, _ = setup(fleet, inventory_state)

    [result] = apply_host(client, inv, inv.host("web01"), ["backup"])
    assert result.status == APPLIED
    assert path.read_text() == f"{MARKER}\n"


def test_each_login_gets_its_own_status(fleet, inventory_state):
    inventory_state.data["users"][1]["keys"][0]["base64"] = "broken*"
    web = fleet["web01"]
    web.add_account("root", keyfile="")
    web.add_account("nokeys")
    client, inv, _ = setup(fleet, inventory_state)

    results = apply_host(client, inv, inv.host("web01"), ["deploy", "root", "nokeys", "ghost"])
    assert [(r.login, r.status) for r in results] == [
        ("deploy", FAILED),
        ("root", APPLIED),
        ("nokeys", NOT_FOUND),
        ("ghost", NOT_FOUND),
    ]
    assert "key 2 of bob" in results[0].detail


def test_readonly_host_reports_blocked(fleet, inventory_state):
    fw = fleet["fw01"]
    (fw.root / "etc" / "platform").write_text("pfSense")
    path = fw.add_account("root", keyfile=f"ssh-ed25519 {STRANGER_KEY}\n")
    client, inv, _ = setup(fleet, inventory_state)

    [result] = apply_host(client, inv, inv.host("fw01"), ["root"])
    assert (result.status, result.detail) == (BLOCKED, "Product is pfSense")
    assert path.read_text() == f"ssh-ed25519 {STRANGER_KEY}\n"


def test_unreachable_host_fails_every_login(fleet, inventory_state):
    client, inv, fake = setup(fleet, inventory_state)
    fake.down.add("web01")

    results = apply_host(client, inv, inv.host("web01"), ["deploy", "root"])
    assert [r.status for r in results] == [FAILED, FAILED]
    assert "unreachable" in results[0].detail


def test_nothing_to_apply_contacts_nobody(fleet, inventory_state):
    client, inv, fake = setup(fleet, inventory_state)
    assert apply_host(client, inv, inv.host("web01"), []) == []
    assert fake.calls == []
