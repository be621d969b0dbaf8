import asyncio
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from paygate.admission.polling import PollStatus
from paygate.admission.repository import AdmissionRecord
from paygate.deps import disconnect_event, watch_disconnect
from paygate.main import create_app
from paygate.payment.routes import AwaitRequest, await_payment
from paygate.payment.errors import ChainUnavailableError

from conftest import MERCHANT, hex_reference, run

PAYER = "0x2222222222222222222222222222222222222222"
ADMIN = {"Authorization": "Bearer admintoken"}


@pytest.fixture
def client(test_config, repositories, facilitator):
    app = create_app(test_config, repositories, facilitator, run_background_tasks=False)
    with TestClient(app) as client:
        yield client


def listing_body(reference, **overrides):
    body = {
        "building_name": "Ashton Asoke",
        "coordinates": "13.7384, 100.5604",
        "floor": "12",
        "sqm": 35,
        "cost": 25000,
        "description": "One bedroom",
        "reference": reference,
        "payment_network": "base",
    }
    body.update(overrides)
    return body


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.json()["networks"] == ["base", "aptos"]
    assert resp.json()["rpc"] == {}


# --- Payment ----------------------------------------------------------------------------

def test_new_reference(client):
    resp = client.post("/api/payment/reference", json={"network": "base"})
    assert resp.status_code == 200
    assert resp.json()["network"] == "base"
    assert len(resp.json()["reference"]) == 66


def test_unknown_network_is_a_400(client):
    resp = client.post("/api/payment/reference", json={"network": "dogecoin"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Unsupported payment network: 'dogecoin'"}


def test_build_transaction(client):
    resp = client.post(
        "/api/tx/base",
        json={"payer": PAYER, "amount": "1", "reference": hex_reference(1)},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["base_units"] == "1000000"
    assert body["network"] == "base"
    assert body["transaction"]


def test_build_rejects_bad_payer_and_unconfigured_network(client):
    bad = client.post("/api/tx/base", json={"payer": "nope", "amount": "1", "reference": hex_reference(1)})
    assert bad.status_code == 400

    solana = client.post("/api/tx/usdc", json={"payer": PAYER, "amount": "1", "reference": hex_reference(1)})
    assert solana.status_code == 400
    assert solana.json()["error"] == "Payment network not configured: solana"


def test_build_chain_fault_is_retryable(client, fake_chain, monkeypatch):
    def down(payer):
        raise ChainUnavailableError("node unavailable")

    monkeypatch.setattr(fake_chain, "latest_checkpoint", down)
    resp = client.post("/api/tx/base", json={"payer": PAYER, "amount": "1", "reference": hex_reference(1)})
    assert resp.status_code == 500
    assert resp.json() == {"error": "node unavailable", "retryable": True}


def test_check_and_verify(client, fake_chain):
    reference = hex_reference(1)
    assert client.get(f"/api/payment/check/base/{reference}").json()["status"] == "not_found"

    txid = fake_chain.pay(reference, 1_000_000)
    assert client.get(f"/api/payment/check/base/{reference}").json() == {
        "confirmed": True,
        "status": "confirmed",
        "transaction_id": txid,
    }

    resp = client.post("/api/payment/verify", json={"network": "base", "reference": reference, "amount": "2"})
    assert resp.json()["status"] == "mismatch"

    bad = client.post("/api/payment/verify", json={"network": "base", "reference": reference, "purpose": "lunch"})
    assert bad.status_code == 400


def test_await_times_out(client):
    resp = client.post("/api/payment/await", json={"network": "base", "reference": hex_reference(3)})
    assert resp.status_code == 200
    assert resp.json() == {"confirmed": False, "status": "timeout", "transaction_id": None, "attempts": 3}


def test_await_confirms(client, fake_chain):
    reference = hex_reference(4)
    fake_chain.pay(reference, 1_000_000)
    resp = client.post("/api/payment/await", json={"network": "base", "reference": reference})
    assert resp.json()["confirmed"] is True
    assert resp.json()["attempts"] == 1


class LeavingRequest:
    """Request whose client disconnects after ``stays`` checks."""

    def __init__(self, stays=0):
        self.stays = stays
        self.checks = 0
        self.url = SimpleNamespace(path="/api/payment/await")

    async def is_disconnected(self):
        self.checks += 1
        return self.checks > self.stays


def test_watch_disconnect_sets_the_cancel_event():
    request = LeavingRequest(stays=2)

    async def scenario():
        cancel = asyncio.Event()
        await watch_disconnect(request, cancel, interval=0)
        return cancel.is_set()

    assert run(scenario())
    assert request.checks == 3


def test_await_ends_when_the_client_leaves(facilitator, gate, test_config):
    async def scenario():
        events = disconnect_event(LeavingRequest())
        cancel = await events.__anext__()
        try:
            return await await_payment(
                AwaitRequest(network="base", reference=hex_reference(5)),
                facilitator=facilitator,
                config=test_config,
                gate=gate,
                cancel_event=cancel,
            )
        finally:
            await events.aclose()

    resp = run(scenario())
    assert resp.status == PollStatus.CANCELLED.value
    assert resp.confirmed is False
    assert resp.attempts < gate.poller.max_attempts


def test_networks_and_config(client):
    networks = client.get("/api/payment/networks").json()["supported_networks"]
    assert [n["network"] for n in networks] == ["base", "aptos"]

    config = client.get("/api/config").json()
    assert config == {"recipient": MERCHANT, "listing_price_usdc": "1", "subscription_price_usdc": "1"}
    assert client.get("/api/config/merchant-addresses").json()["base"] == MERCHANT


# --- Listings ---------------------------------------------------------------------------

def test_paid_listing_flow(client, fake_chain):
    reference = hex_reference(10)
    fake_chain.pay(reference, 1_000_000)

    created = client.post("/api/listings", json=listing_body(reference))
    assert created.status_code == 200
    listing = created.json()
    assert listing["latitude"] == 13.7384
    assert listing["reference"] == reference

    again = client.post("/api/listings", json=listing_body(reference))
    assert again.json()["id"] == listing["id"]

    grouped = client.get("/api/listings").json()
    assert [l["id"] for l in grouped["Ashton Asoke"]] == [listing["id"]]
    assert len(client.get("/api/listings/Ashton Asoke").json()) == 1
    assert client.get("/api/listings/Nowhere").json() == []


def test_replayed_reference_of_a_deleted_listing(client, fake_chain):
    reference = hex_reference(77)
    fake_chain.pay(reference, 1_000_000)
    listing = client.post("/api/listings", json=listing_body(reference)).json()
    assert client.delete(f"/api/listings/{listing['id']}", headers=ADMIN).status_code == 200

    resp = client.post("/api/listings", json=listing_body(reference))
    assert resp.status_code == 404
    assert resp.json() == {"error": "Listing no longer exists"}


def test_listing_can_wait_for_confirmation(client, fake_chain):
    paid = hex_reference(15)
    fake_chain.pay(paid, 1_000_000)
    fake_chain.failures = 1
    resp = client.post("/api/listings", json=listing_body(paid, await_confirmation=True))
    assert resp.status_code == 200
    assert resp.json()["reference"] == paid

    unpaid = client.post("/api/listings", json=listing_body(hex_reference(16), await_confirmation=True))
    assert unpaid.status_code == 400
    assert unpaid.json() == {"error": "Invalid payment"}


def test_unpaid_listing_is_rejected(client):
    resp = client.post("/api/listings", json=listing_body(hex_reference(11)))
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid payment"}


def test_listing_on_unverified_network_is_rejected(client):
    resp = client.post("/api/listings", json=listing_body(hex_reference(12), payment_network="aptos"))
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid payment"}


def test_listing_in_flight_conflict(client, repositories):
    reference = hex_reference(13)
    run(repositories.admissions.claim(AdmissionRecord(reference=reference, purpose="listing")))
    resp = client.post("/api/listings", json=listing_body(reference))
    assert resp.status_code == 409


def test_listing_validation_errors(client):
    resp = client.post("/api/listings", json={"building_name": "x"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request"

    bad_coords = client.post("/api/listings", json=listing_body(hex_reference(14), coordinates="north"))
    assert bad_coords.status_code == 400


def test_promo_listing(client, promo_store):
    run(promo_store.create("launch", 1))
    first = client.post("/api/listings", json=listing_body("promo-ref-1", promo_code="LAUNCH"))
    assert first.status_code == 200

    second = client.post("/api/listings", json=listing_body("promo-ref-2", promo_code="launch"))
    assert second.json() == {"error": "Promo exhausted"}

    unknown = client.post("/api/listings", json=listing_body("promo-ref-3", promo_code="nope"))
    assert unknown.json() == {"error": "Invalid promo"}


def test_subscription(client, fake_chain):
    reference = hex_reference(20)
    fake_chain.pay(reference, 1_000_000)
    resp = client.post(
        "/api/subscriptions",
        json={"email": "buyer@example.com", "reference": reference, "payment_network": "base"},
    )
    assert resp.status_code == 200
    assert resp.json()["email"] == "buyer@example.com"

    bad = client.post("/api/subscriptions", json={"email": "nope", "reference": reference})
    assert bad.status_code == 400

    status = client.get("/api/subscriptions/Buyer@Example.com").json()
    assert status["email"] == "buyer@example.com"
    assert status["active"] is True
    assert [s["reference"] for s in status["subscriptions"]] == [reference]

    assert client.get("/api/subscriptions/nobody@example.com").json()["active"] is False
    assert client.get("/api/subscriptions/not-an-email").status_code == 400


# --- Admin ------------------------------------------------------------------------------

def test_login(client):
    ok = client.post("/api/auth/login", json={"username": "admin", "password": "secret"})
    assert ok.json() == {"success": True, "token": "admintoken"}

    bad = client.post("/api/auth/login", json={"username": "admin", "password": "guess"})
    assert bad.status_code == 401
    assert bad.json() == {"error": "Invalid credentials"}


def test_admin_routes_need_the_token(client):
    assert client.get("/api/listings/dashboard").status_code == 401
    assert client.get("/api/listings/dashboard", headers={"Authorization": "Bearer wrong"}).status_code == 403
    assert client.get("/api/promo/list").json() == {"error": "Access token required"}


def test_dashboard_and_admin_delete(client, fake_chain):
    reference = hex_reference(30)
    fake_chain.pay(reference, 1_000_000)
    listing = client.post("/api/listings", json=listing_body(reference)).json()

    dashboard = client.get("/api/listings/dashboard", headers=ADMIN).json()
    assert (dashboard["total"], dashboard["active"], dashboard["expired"]) == (1, 1, 0)
    assert dashboard["listings"][0]["is_expired"] is False

    assert client.post("/api/listings/expired/purge", headers=ADMIN).json() == {"deleted": 0}
    assert client.delete(f"/api/listings/{listing['id']}", headers=ADMIN).json() == {"success": True}
    assert client.delete(f"/api/listings/{listing['id']}", headers=ADMIN).status_code == 404


def test_promo_administration(client):
    generated = client.post("/api/promo/generate", json={"max_uses": 5}, headers=ADMIN).json()
    assert len(generated["code"]) == 8
    assert generated["remaining_uses"] == 5

    free = client.post("/api/promo/free", headers=ADMIN).json()
    assert (free["code"], free["remaining_uses"]) == ("free", 1000)

    codes = {p["code"] for p in client.get("/api/promo/list", headers=ADMIN).json()}
    assert codes == {generated["code"], "free"}

    reset = client.post(f"/api/promo/{generated['id']}/reset", json={"remaining_uses": 0}, headers=ADMIN)
    assert reset.json()["remaining_uses"] == 0
    assert client.post("/api/promo/generate", json={"max_uses": 0}, headers=ADMIN).status_code == 400

    assert client.delete(f"/api/promo/{free['id']}", headers=ADMIN).json() == {"success": True}
    assert client.delete(f"/api/promo/{free['id']}", headers=ADMIN).status_code == 404
