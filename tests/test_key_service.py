import json

import httpx
import pytest
from fastapi.testclient import TestClient

import key_service


@pytest.fixture
def client():
    with TestClient(key_service.app) as c:
        yield c


def _ok(data=None):
    return httpx.Response(200, json={"status": "success", "data": data})


def test_create_key_deducts_credits_and_stores_pending_row(client, fake_store, make_user, authtool):
    profile, headers = make_user(credits=10)
    stub = authtool(lambda request: _ok(["KEY-ABC-123"]))

    resp = client.post("/keys/create", json={"duration": "1week"}, headers=headers)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body == {"success": True, "key_code": "KEY-ABC-123", "status": "pending",
                    "credits_remaining": 7}
    assert fake_store.profiles[profile["id"]]["credits"] == 7
    [key] = fake_store.list_keys(profile["id"])
    assert key["key_code"] == "KEY-ABC-123"
    assert key["duration"] == "1week"
    assert key["package_ids"] == [3915]

    [request] = stub.requests
    assert request.url.path.endswith("/key/single-activate")
    assert request.headers["X-API-Key"] == "authtool-test-key"
    assert json.loads(request.content)["duration"] == 7


@pytest.mark.parametrize("duration,cost", [("1day", 1), ("1week", 3), ("25days", 5)])
def test_credit_costs(duration, cost):
    assert key_service.credit_cost(duration) == cost


def test_insufficient_credits_never_calls_authtool(client, fake_store, make_user, authtool):
    profile, headers = make_user(credits=4)
    stub = authtool(lambda request: _ok(["NEVER"]))

    resp = client.post("/keys/create", json={"duration": "25days"}, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["kind"] == "insufficient_credits"
    assert resp.json()["error"] == "Insufficient credits. You need 5 credits for this duration."
    assert stub.requests == []
    assert fake_store.profiles[profile["id"]]["credits"] == 4
    assert fake_store.keys == {}


def test_pending_account_cannot_create(client, fake_store, make_user, authtool):
    _, headers = make_user(credits=10, approval_status="pending")
    stub = authtool(lambda request: _ok(["NEVER"]))

    resp = client.post("/keys/create", json={"duration": "1day"}, headers=headers)

    assert resp.status_code == 403
    assert resp.json()["kind"] == "pending_approval"
    assert stub.requests == []


def test_invalid_duration(client, fake_store, make_user, authtool):
    _, headers = make_user(credits=10)
    authtool(lambda request: _ok(["NEVER"]))

    resp = client.post("/keys/create", json={"duration": "forever"}, headers=headers)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid duration", "kind": "invalid_request"}


def test_authtool_failure_refunds_reserved_credits(client, fake_store, make_user, authtool):
    profile, headers = make_user(credits=10)
    authtool(lambda request: httpx.Response(500, json={"message": "package disabled"}))

    resp = client.post("/keys/create", json={"duration": "1day"}, headers=headers)

    assert resp.status_code == 502
    assert resp.json() == {"error": "package disabled", "kind": "external_failure"}
    assert fake_store.profiles[profile["id"]]["credits"] == 10
    assert fake_store.keys == {}


def test_embedded_error_status_is_a_failure(client, fake_store, make_user, authtool):
    profile, headers = make_user(credits=10)
    authtool(lambda request: httpx.Response(200, json={"status": "error", "message": "quota"}))

    resp = client.post("/keys/create", json={"duration": "1day"}, headers=headers)

    assert resp.status_code == 502
    assert fake_store.profiles[profile["id"]]["credits"] == 10


def test_missing_api_key_is_misconfigured(client, fake_store, make_user, monkeypatch):
    import config
    monkeypatch.setattr(config, "AUTHTOOL_API_KEY", None)
    profile, headers = make_user(credits=10)

    resp = client.post("/keys/create", json={"duration": "1day"}, headers=headers)

    assert resp.status_code == 500
    assert resp.json()["kind"] == "misconfigured"
    assert fake_store.profiles[profile["id"]]["credits"] == 10


def test_actions_on_someone_elses_key_are_not_found(client, fake_store, make_user, authtool):
    owner, _ = make_user(username="owner1")
    _, intruder_headers = make_user(username="intruder")
    fake_store.insert_key(owner["id"], "OWNED-KEY", "1day", [3915], None)
    stub = authtool(lambda request: _ok())

    for path in ("/keys/reset", "/keys/block", "/keys/unblock", "/keys/delete", "/keys/details"):
        resp = client.post(path, json={"key_code": "OWNED-KEY"}, headers=intruder_headers)
        assert resp.status_code == 404, path
        assert resp.json()["error"] == "Key not found or unauthorized"
    assert stub.requests == []


def test_block_and_unblock_mirror_status(client, fake_store, make_user, authtool):
    profile, headers = make_user()
    key = fake_store.insert_key(profile["id"], "K1", "1day", [3915], None, status="active")
    stub = authtool(lambda request: _ok())

    resp = client.post("/keys/block", json={"key_code": "K1"}, headers=headers)
    assert resp.json()["status"] == "blocked"
    assert fake_store.keys[key["id"]]["status"] == "blocked"

    resp = client.post("/keys/unblock", json={"key_code": "K1"}, headers=headers)
    assert resp.json()["status"] == "active"
    assert fake_store.keys[key["id"]]["status"] == "active"

    bodies = [json.loads(r.content) for r in stub.requests]
    assert bodies == [{"status": 0}, {"status": 1}]
    assert stub.paths[0] == ("PATCH", "/public/v1/key/K1/change-status")


def test_block_failure_leaves_row_untouched(client, fake_store, make_user, authtool):
    profile, headers = make_user()
    key = fake_store.insert_key(profile["id"], "K1", "1day", [3915], None, status="active")
    authtool(lambda request: httpx.Response(200, json={"success": False, "message": "nope"}))

    resp = client.post("/keys/block", json={"key_code": "K1"}, headers=headers)

    assert resp.status_code == 502
    assert fake_store.keys[key["id"]]["status"] == "active"


def test_reset_clears_activation_count(client, fake_store, make_user, authtool):
    profile, headers = make_user()
    key = fake_store.insert_key(profile["id"], "K1", "1day", [3915], None,
                                status="active", activate_count=1)
    stub = authtool(lambda request: _ok())

    resp = client.post("/keys/reset", json={"key_code": "K1"}, headers=headers)

    assert resp.status_code == 200
    assert fake_store.keys[key["id"]]["activate_count"] == 0
    assert stub.paths == [("POST", "/public/v1/key/K1/reset")]


def test_delete_removes_local_row(client, fake_store, make_user, authtool):
    profile, headers = make_user()
    fake_store.insert_key(profile["id"], "K1", "1day", [3915], None)
    stub = authtool(lambda request: _ok())

    resp = client.post("/keys/delete", json={"key_code": "K1"}, headers=headers)

    assert resp.status_code == 200
    assert fake_store.keys == {}
    assert stub.paths == [("DELETE", "/public/v1/key/K1")]


def test_ban_device_sends_udid(client, fake_store, make_user, authtool):
    profile, headers = make_user()
    fake_store.insert_key(profile["id"], "K1", "1day", [3915], None)
    stub = authtool(lambda request: _ok())

    resp = client.post("/keys/ban-device", json={"key_code": "K1", "udid": "UDID-9"}, headers=headers)

    assert resp.status_code == 200
    assert json.loads(stub.requests[0].content) == {"udid": "UDID-9"}


def test_details_mirror_activation_count(client, fake_store, make_user, authtool):
    profile, headers = make_user()
    key = fake_store.insert_key(profile["id"], "K1", "1day", [3915], None, status="active")
    authtool(lambda request: _ok({"key": {"activateCount": 2}, "devices": [{"udid": "A"}]}))

    resp = client.post("/keys/details", json={"key_code": "K1"}, headers=headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["devices"] == [{"udid": "A"}]
    assert body["key"]["activateCount"] == 2
    assert fake_store.keys[key["id"]]["activate_count"] == 2


def test_banned_user_is_refused(client, fake_store, make_user, authtool):
    from datetime import timedelta
    from db import utcnow

    profile, headers = make_user(credits=10)
    fake_store.update_profile(profile["id"], ban_until=utcnow() + timedelta(days=1),
                              ban_message="Cool off")

    resp = client.post("/keys/create", json={"duration": "1day"}, headers=headers)

    assert resp.status_code == 403
    assert resp.json() == {"error": "Cool off", "kind": "banned"}


def test_internal_reconcile_requires_key(client, fake_store):
    assert client.post("/internal/reconcile").status_code == 403
    resp = client.post("/internal/reconcile", headers={"X-Internal-Key": "internal-test-key"})
    assert resp.status_code == 200
    assert set(resp.json()) == {"sweep", "pending"}


def test_no_token_is_unauthorized(client, fake_store):
    resp = client.get("/keys")
    assert resp.status_code == 401
    assert resp.json()["kind"] == "unauthorized"


def test_parallel_spend_during_create_loses_nothing(client, fake_store, make_user, authtool):
    profile, headers = make_user(credits=1)
    competing = []

    def spend_then_answer(request):
        # Another request tries to spend the same credit while AuthTool is busy.
        competing.append(fake_store.deduct_credits(profile["id"], 1))
        return _ok(["KEY-RACE"])

    authtool(spend_then_answer)

    resp = client.post("/keys/create", json={"duration": "1day"}, headers=headers)

    assert resp.status_code == 200, resp.text
    assert resp.json()["credits_remaining"] == 0
    assert competing == [None]
    assert fake_store.profiles[profile["id"]]["credits"] == 0
    assert len(fake_store.keys) == 1


def test_balance_spent_before_debit_is_refused(client, fake_store, make_user, authtool, monkeypatch):
    profile, headers = make_user(credits=1)
    stub = authtool(lambda request: _ok(["NEVER"]))
    monkeypatch.setattr(key_service.store, "deduct_credits", lambda user_id, amount: None)

    resp = client.post("/keys/create", json={"duration": "1day"}, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["kind"] == "insufficient_credits"
    assert stub.requests == []
    assert fake_store.keys == {}


def test_keys_need_an_approved_device_token(client, fake_store, make_user, authtool):
    from sessions import issue_device_token, issue_session_token

    profile, headers = make_user(credits=10)
    stub = authtool(lambda request: _ok(["KEY-DEV"]))
    fake_store.insert_device_session(profile["id"], "fp-laptop", {}, "1.2.3.4", False)
    session = {"Authorization": f"Bearer {issue_session_token(profile['id'])}"}

    no_device = client.post("/keys/create", json={"duration": "1day"}, headers=session)
    unapproved = client.post("/keys/create", json={"duration": "1day"},
                             headers=dict(session, **{"X-Device-Token":
                                                      issue_device_token(profile["id"], "fp-laptop")}))
    forged = client.post("/keys/create", json={"duration": "1day"},
                         headers=dict(session, **{"X-Device-Token": "not-a-token"}))

    for resp in (no_device, unapproved, forged):
        assert resp.status_code == 403
        assert resp.json()["kind"] == "device_not_approved"
    assert stub.requests == []
    assert fake_store.profiles[profile["id"]]["credits"] == 10

    approved = client.post("/keys/create", json={"duration": "1day"},
                           headers=dict(session, **{"X-Device-Token": headers["X-Device-Token"]}))
    assert approved.status_code == 200


def test_device_token_for_another_user_is_refused(client, fake_store, make_user):
    _, first_headers = make_user(username="first")
    _, second_headers = make_user(username="second")

    resp = client.get("/keys", headers=dict(second_headers,
                                            **{"X-Device-Token": first_headers["X-Device-Token"]}))

    assert resp.status_code == 403
    assert resp.json()["kind"] == "device_not_approved"


def test_sync_endpoint_mirrors_authtool(client, fake_store, make_user, authtool):
    profile, headers = make_user()
    gone = fake_store.insert_key(profile["id"], "GONE", "1day", [3915], None, status="active")
    live = fake_store.insert_key(profile["id"], "LIVE", "1day", [3915], None, status="pending")
    fake_store.insert_key("someone-else", "OTHER", "1day", [3915], None, status="active")

    def handler(request):
        if request.url.path.endswith("/GONE"):
            return httpx.Response(404, json={"message": "Key not found"})
        return _ok({"key": {"activateCount": 1}})

    stub = authtool(handler)

    resp = client.post("/keys/sync", headers=headers)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["checked"] == 2
    assert body["deleted"] == 1
    assert body["activated"] == 1
    assert gone["id"] not in fake_store.keys
    assert fake_store.keys[live["id"]]["status"] == "active"
    assert len(stub.requests) == 2
