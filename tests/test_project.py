from __future__ import annotations

from keyward.errors import DataIntegrityError
from keyward.inventory import inventory_from_dict
from keyward.project import project_host
from tests.conftest import ALICE_KEY, BOB_KEY, CAROL_KEY, MANAGER_KEY, base_inventory


def test_grants_project_in_order():
    projection = project_host(inventory_from_dict(base_inventory()), "web01")

    assert projection == {
        "deploy": (
            f"no-pty ssh-ed25519 {ALICE_KEY} alice@laptop\n"
            f"ssh-ed25519 {BOB_KEY} bob"
        ),
        "root": f"ssh-ed25519 {ALICE_KEY} alice@laptop",
    }


def test_host_without_grants_projects_nothing():
    assert project_host(inventory_from_dict(base_inventory()), "fw01") == {}


def test_disabled_user_keeps_the_login_but_contributes_no_keys():
    data = base_inventory()
    data["authorizations"] = [{"host": "web01", "login": "ops", "user": "carol"}]

    projection = project_host(inventory_from_dict(data), "web01")
    assert projection == {"ops": ""}
    assert CAROL_KEY not in projection["ops"]


def test_bad_key_fails_only_its_login():
    data = base_inventory()
    data["users"][1]["keys"][0]["base64"] = "not*base64"

    projection = project_host(inventory_from_dict(data), "web01")
    assert isinstance(projection["deploy"], DataIntegrityError)
    assert "of bob" in str(projection["deploy"])
    assert projection["deploy"].login == "deploy"
    assert projection["root"] == f"ssh-ed25519 {ALICE_KEY} alice@laptop"


def test_bad_grant_options_fail_their_login():
    data = base_inventory()
    data["authorizations"][2]["options"] = "no-pty no-X11"

    projection = project_host(inventory_from_dict(data), "web01")
    assert isinstance(projection["root"], DataIntegrityError)
    assert isinstance(projection["deploy"], str)


def test_manager_key_leads_the_connection_login():
    data = base_inventory()
    data["authorizations"].append({"host": "web01", "login": "keyward", "user": "alice"})
    manager = f"ssh-ed25519 {MANAGER_KEY} keyward"

    projection = project_host(inventory_from_dict(data), "web01", manager)
    assert projection["keyward"].splitlines() == [
        manager,
        f"ssh-ed25519 {ALICE_KEY} alice@laptop",
    ]
    assert manager not in projection["deploy"]

    # hosts without grants for the connection login still get the manager key
    assert project_host(inventory_from_dict(data), "bastion", manager) == {
        "keyward": manager
    }


def test_unparsable_manager_key_fails_the_connection_login():
    projection = project_host(
        inventory_from_dict(base_inventory()), "bastion", "ssh-ed25519 ???"
    )
    assert isinstance(projection["keyward"], DataIntegrityError)
    assert "manager_key" in str(projection["keyward"])
