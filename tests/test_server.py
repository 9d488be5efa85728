"""Tests for server/app.py endpoints."""

import sys, os, json
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from starlette.testclient import TestClient
from server.app import create_app
from crypto import sign_request
from protocol import to_units
from conftest import (
    signed_post, FakeClock, make_ledger, make_manager, loser_of,
    OWNER, OWNER_PRIV, HOST, HOST_PRIV, GUEST, GUEST_PRIV, OTHER_PRIV,
    JOIN_WINDOW, MIN_AMOUNT,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(clock):
    """Fresh app around an in-memory manager for each test."""
    return create_app(make_manager(make_ledger(), clock))


@pytest.fixture
def client(app):
    return TestClient(app)


def _create(client, amount="10", priv=HOST_PRIV, account=HOST):
    resp = signed_post(client, "/duels", {"account": account, "amount": str(to_units(amount))}, priv)
    assert resp.status_code == 200, resp.text
    return resp.json()


def _join(client, idx, amount="10", priv=GUEST_PRIV, account=GUEST):
    resp = signed_post(client, f"/duels/{idx}/join",
                       {"account": account, "amount": str(to_units(amount))}, priv)
    assert resp.status_code == 200, resp.text
    return resp.json()


def _priv_for(account):
    return {HOST: HOST_PRIV, GUEST: GUEST_PRIV, OWNER: OWNER_PRIV}[account]


# --- POST /duels ---

def test_create_duel(client):
    data = _create(client, "10")
    assert data["index"] == 0
    assert data["status"] == "awaiting_guest"
    assert data["host"] == HOST
    assert data["host_stake"] == str(to_units("10"))
    assert data["pool"] == str(to_units("10"))
    assert data["join_min"] == str(to_units("7"))
    assert data["join_max"] == str(to_units("13"))


def test_create_below_minimum(client):
    resp = signed_post(client, "/duels", {"account": HOST, "amount": str(MIN_AMOUNT - 1)}, HOST_PRIV)
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidStake"


def test_create_garbage_amount(client):
    resp = signed_post(client, "/duels", {"account": HOST, "amount": "ten"}, HOST_PRIV)
    assert resp.status_code == 400


def test_create_without_funds(client):
    resp = signed_post(client, "/duels", {"account": HOST, "amount": str(to_units("5000"))}, HOST_PRIV)
    assert resp.status_code == 402
    assert resp.json()["error"] == "TransferFailed"
    assert client.get("/duels/count").json()["count"] == 0


# --- Authentication ---

def test_unsigned_request_rejected(client):
    resp = client.post("/duels", json={"account": HOST, "amount": str(to_units("10"))})
    assert resp.status_code == 401


def test_signed_by_someone_else_rejected(client):
    """Valid signature, but not from the account named in the body."""
    resp = signed_post(client, "/duels", {"account": HOST, "amount": str(to_units("10"))}, OTHER_PRIV)
    assert resp.status_code == 401
    assert "mismatch" in resp.json()["detail"]


def test_malformed_account_rejected(client):
    resp = signed_post(client, "/duels", {"account": "acct_nothex", "amount": "1"}, HOST_PRIV)
    assert resp.status_code == 400


def test_tampered_body_rejected(client):
    body = json.dumps({"account": HOST, "amount": str(to_units("10"))})
    headers = sign_request(HOST_PRIV, "POST", "/duels", body)
    tampered = json.dumps({"account": HOST, "amount": str(to_units("999"))})
    resp = client.post("/duels", content=tampered, headers={"Content-Type": "application/json", **headers})
    assert resp.status_code == 401


def test_signature_for_other_path_rejected(client):
    _create(client)
    body = json.dumps({"account": GUEST, "amount": str(to_units("10"))})
    headers = sign_request(GUEST_PRIV, "POST", "/duels/1/join", body)
    resp = client.post("/duels/0/join", content=body, headers={"Content-Type": "application/json", **headers})
    assert resp.status_code == 401


def test_stale_timestamp_rejected(client):
    body = json.dumps({"account": HOST, "amount": str(to_units("10"))})
    headers = sign_request(HOST_PRIV, "POST", "/duels", body, timestamp=1_000_000)
    resp = client.post("/duels", content=body, headers={"Content-Type": "application/json", **headers})
    assert resp.status_code == 401
    assert "expired" in resp.json()["detail"]


def test_replay_rejected(client):
    body = json.dumps({"account": HOST, "amount": str(to_units("10"))})
    headers = {"Content-Type": "application/json", **sign_request(HOST_PRIV, "POST", "/duels", body)}
    assert client.post("/duels", content=body, headers=headers).status_code == 200
    resp = client.post("/duels", content=body, headers=headers)
    assert resp.status_code == 401
    assert "Replay" in resp.json()["detail"]
    assert client.get("/duels/count").json()["count"] == 1


# --- POST /duels/{idx}/join ---

def test_join_settles(client):
    _create(client, "10")
    data = _join(client, 0, "12")
    assert data["status"] == "withdraw_available"
    assert data["guest"] == GUEST
    assert data["pool"] == str(to_units("22"))
    assert data["winner"] in (HOST, GUEST)


def test_join_out_of_range(client):
    _create(client, "10")
    resp = signed_post(client, "/duels/0/join", {"account": GUEST, "amount": str(to_units("13.01"))}, GUEST_PRIV)
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidJoinStake"


def test_host_cannot_join(client):
    _create(client, "10")
    resp = signed_post(client, "/duels/0/join", {"account": HOST, "amount": str(to_units("10"))}, HOST_PRIV)
    assert resp.status_code == 403
    assert resp.json() == {"error": "SelfJoin", "detail": "Host cannot join as guest"}


def test_join_twice(client):
    _create(client, "10")
    _join(client, 0)
    resp = signed_post(client, "/duels/0/join", {"account": GUEST, "amount": str(to_units("10"))}, GUEST_PRIV)
    assert resp.status_code == 409
    assert resp.json()["error"] == "DuelAlreadyPlayed"


def test_join_after_window(client, clock):
    _create(client, "10")
    clock.advance(JOIN_WINDOW)
    resp = signed_post(client, "/duels/0/join", {"account": GUEST, "amount": str(to_units("10"))}, GUEST_PRIV)
    assert resp.status_code == 410
    assert resp.json()["error"] == "DuelExpired"


def test_join_missing_duel(client):
    resp = signed_post(client, "/duels/5/join", {"account": GUEST, "amount": str(to_units("10"))}, GUEST_PRIV)
    assert resp.status_code == 404


# --- POST /duels/{idx}/withdraw ---

def test_withdraw_by_winner(client, app):
    _create(client, "10")
    duel = _join(client, 0, "10")
    winner = duel["winner"]
    resp = signed_post(client, "/duels/0/withdraw", {"account": winner}, _priv_for(winner))
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["payout"] == str(to_units("19"))
    assert data["fee"] == str(to_units("1"))
    assert data["duel"]["status"] == "withdrawn"
    assert data["duel"]["pool"] == "0"
    ledger = app.state.manager.custodian.token
    assert ledger.balance_of(OWNER) == to_units("1")
    assert ledger.balance_of(winner) == to_units("1009")


def test_withdraw_by_loser(client):
    _create(client, "10")
    duel = _join(client, 0, "10")
    loser = loser_of(duel)
    resp = signed_post(client, "/duels/0/withdraw", {"account": loser}, _priv_for(loser))
    assert resp.status_code == 403
    assert resp.json()["error"] == "NotWinner"


def test_withdraw_twice(client):
    _create(client, "10")
    winner = _join(client, 0, "10")["winner"]
    signed_post(client, "/duels/0/withdraw", {"account": winner}, _priv_for(winner))
    resp = signed_post(client, "/duels/0/withdraw", {"account": winner}, _priv_for(winner))
    assert resp.status_code == 409
    assert resp.json()["error"] == "NotWithdrawable"


# --- POST /duels/{idx}/expire ---

def test_expire_by_owner(client, clock, app):
    _create(client, "10")
    clock.advance(JOIN_WINDOW)
    resp = signed_post(client, "/duels/0/expire", {"account": OWNER}, OWNER_PRIV)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "expired"
    assert app.state.manager.custodian.token.balance_of(HOST) == to_units("1000")


def test_expire_too_early(client, clock):
    _create(client, "10")
    clock.advance(JOIN_WINDOW - 1)
    resp = signed_post(client, "/duels/0/expire", {"account": OWNER}, OWNER_PRIV)
    assert resp.status_code == 409
    assert resp.json() == {"error": "NotYetExpired", "detail": "Duel is not expired yet"}


def test_expire_by_non_owner(client, clock):
    _create(client, "10")
    clock.advance(JOIN_WINDOW)
    resp = signed_post(client, "/duels/0/expire", {"account": HOST}, HOST_PRIV)
    assert resp.status_code == 403
    assert resp.json()["error"] == "NotOwner"


# --- Queries ---

def test_get_duel(client):
    _create(client, "10")
    resp = client.get("/duels/0")
    assert resp.status_code == 200
    assert resp.json()["host"] == HOST
    assert resp.json()["expires_at"] == resp.json()["created_at"] + JOIN_WINDOW


def test_get_missing_duel(client):
    resp = client.get("/duels/3")
    assert resp.status_code == 404
    assert resp.json()["error"] == "DuelNotFound"


def test_get_duel_index_beyond_storage_range(client):
    resp = client.get("/duels/9223372036854775808")
    assert resp.status_code == 404
    assert resp.json()["error"] == "DuelNotFound"


def test_join_duel_index_beyond_storage_range(client):
    _create(client, "10")
    resp = signed_post(client, "/duels/9223372036854775808/join",
                       {"account": GUEST, "amount": str(to_units("10"))}, GUEST_PRIV)
    assert resp.status_code == 404
    assert resp.json()["error"] == "DuelNotFound"


def test_list_duels_filter(client):
    _create(client, "10")
    _create(client, "20")
    _join(client, 0, "10")
    data = client.get("/duels", params={"status": "awaiting_guest"}).json()
    assert [d["index"] for d in data["duels"]] == [1]
    assert data["count"] == 2
    assert len(client.get("/duels").json()["duels"]) == 2


def test_list_duels_unknown_status(client):
    assert client.get("/duels", params={"status": "bogus"}).status_code == 400


def test_platform_info(client):
    info = client.get("/platform_info").json()
    assert info["owner"] == OWNER
    assert info["token"] == "sim_token"
    assert info["min_amount"] == str(MIN_AMOUNT)
    assert info["fee_rate"] == 5
    assert info["fee_denominator"] == 100
    assert info["join_window"] == JOIN_WINDOW


def test_stats(client):
    _create(client, "10")
    _create(client, "10")
    _join(client, 1, "10")
    stats = client.get("/stats").json()
    assert stats["awaiting_guest"] == 1
    assert stats["withdraw_available"] == 1
    assert stats["total"] == 2


def test_custody_audit_tracks_pools(client):
    _create(client, "10")
    _join(client, 0, "12")
    audit = client.get("/custody").json()
    assert audit["held"] == str(to_units("22"))
    assert audit["owed"] == str(to_units("22"))
    assert audit["solvent"] is True
