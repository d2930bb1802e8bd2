import threading

import pytest
from fastapi.testclient import TestClient

from services.api.app import ApiConfig, create_app
from services.crypto_core.commitments import NATIVE_RAIL, address_for, make_bid_commitment, new_nonce
from services.market.listings import MIN_AUCTION_DURATION

TOKEN = "s3cret"
SELLER = address_for("seller")
ALICE = address_for("alice")
BOB = address_for("bob")
CREATOR = address_for("creator")
COLLECTION = address_for("collection")


@pytest.fixture
def config(tmp_path):
    return ApiConfig(
        events_db_path=str(tmp_path / "events.db"),
        state_path=str(tmp_path / "market_state.json"),
        admin_token=TOKEN,
        address=address_for("marketplace"),
        fee_recipient=address_for("fee-recipient"),
        fee_bps=250,
        royalty_registry_url="",
        sandbox=True,
    )


@pytest.fixture
def client(config, clock):
    return TestClient(create_app(config, clock=clock))


def _asset(client, token_id, owner=SELLER):
    r = client.post("/sandbox/assets/mint", json={"contract": COLLECTION, "token_id": token_id, "owner": owner})
    assert r.status_code == 200, r.text
    r = client.post("/sandbox/assets/approve", json={"contract": COLLECTION, "token_id": token_id, "owner": owner})
    assert r.status_code == 200, r.text


def _fund(client, who, amount=10_000):
    r = client.post("/sandbox/fund", json={"account": who, "amount": amount})
    assert r.status_code == 200, r.text
    return r.json()["balance"]


def _list(client, token_id=1, price=1000, **kw):
    _asset(client, token_id)
    r = client.post("/listings", json={"caller": SELLER, "contract": COLLECTION, "token_id": token_id, "price": price, **kw})
    assert r.status_code == 200, r.text
    return r.json()["listing"]


def _balance(client, who):
    return client.get(f"/sandbox/balances/{who}").json()


def test_config(client):
    cfg = client.get("/config").json()
    assert cfg["address"] == address_for("marketplace")
    assert cfg["native_rail"] == NATIVE_RAIL
    assert cfg["fee_bps"] == 250
    assert cfg["min_auction_duration"] == MIN_AUCTION_DURATION
    assert cfg["min_bid_increment_pct"] == 5


def test_fixed_price_flow(client):
    _fund(client, ALICE)
    listing = _list(client)
    assert listing["listing_id"] == 1 and listing["phase"] == "created_fixed"
    assert client.get("/listings/1/quote").json()["seller_amount"] == 975

    r = client.post("/listings/1/buy", json={"caller": ALICE, "value": 1000})
    assert r.status_code == 200, r.text
    assert r.json()["split"] == {
        "sale_amount": 1000,
        "marketplace_fee": 25,
        "royalty_amount": 0,
        "royalty_receiver": None,
        "seller_amount": 975,
    }
    assert _balance(client, SELLER)["balance"] == 975
    assert _balance(client, ALICE)["assets"] == [{"contract": COLLECTION, "token_id": 1}]
    assert client.get("/listings/1").json()["state"] == "sold"
    assert client.get("/listings", params={"active_only": True}).json()["items"] == []

    kinds = [e["kind"] for e in client.get("/events").json()]
    assert kinds == ["ListingCreated", "PurchaseMade"]
    metrics = {m["kind"]: m["count"] for m in client.get("/metrics").json()}
    assert metrics == {"ListingCreated": 1, "PurchaseMade": 1}


def test_royalty_through_sandbox_registry(client):
    r = client.post("/sandbox/royalty", json={"contract": COLLECTION, "receiver": CREATOR, "bps": 500})
    assert r.status_code == 200
    _fund(client, ALICE)
    _list(client)
    split = client.post("/listings/1/buy", json={"caller": ALICE, "value": 1000}).json()["split"]
    assert (split["royalty_amount"], split["royalty_receiver"], split["seller_amount"]) == (50, CREATOR, 925)


def test_errors_are_mapped(client):
    r = client.get("/listings/42")
    assert r.status_code == 404
    assert r.json()["error"] == "LISTING_NOT_FOUND"

    _fund(client, ALICE)
    _list(client)
    r = client.post("/listings/1/buy", json={"caller": ALICE, "value": 999})
    assert r.status_code == 400 and r.json()["error"] == "INCORRECT_PAYMENT"

    _asset(client, 2)
    r = client.post("/listings", json={"caller": ALICE, "contract": COLLECTION, "token_id": 2, "price": 10})
    assert r.status_code == 403 and r.json()["error"] == "NOT_OWNER"

    r = client.post("/listings/1/buy", json={"caller": "not-an-address", "value": 1000})
    assert r.status_code == 422

    r = client.post("/listings/1/cancel", json={"caller": ALICE})
    assert r.status_code == 403 and r.json()["error"] == "NOT_SELLER"


def test_auction_flow(client, clock):
    _fund(client, ALICE)
    _fund(client, BOB)
    _list(client, is_auction=True, auction_duration=MIN_AUCTION_DURATION)

    def bid(who, amount):
        nonce = new_nonce()
        r = client.post("/listings/1/bids/commit", json={"caller": who, "commitment": make_bid_commitment(who, amount, nonce)})
        assert r.status_code == 200, r.text
        return client.post("/listings/1/bids/reveal", json={"caller": who, "amount": amount, "nonce": nonce, "value": amount})

    r = bid(ALICE, 1000)
    assert r.status_code == 200 and r.json()["highest_bidder"] == ALICE
    assert client.get(f"/escrow/{ALICE}").json() == {
        "account": ALICE, "payment_rail": NATIVE_RAIL, "pending": 0, "held": 1000,
    }

    r = client.post("/listings/1/bids/commit", json={"caller": BOB, "commitment": "ab" * 32})
    assert r.status_code == 429 and r.json()["error"] == "BID_TOO_SOON"

    clock.advance(180)
    r = bid(BOB, 1030)
    assert r.status_code == 400 and r.json()["error"] == "BID_INCREMENT_TOO_LOW"
    r = bid(BOB, 1050)
    assert r.status_code == 200 and r.json()["highest_bid"] == 1050
    assert _balance(client, ALICE)["balance"] == 10_000

    r = client.post("/listings/1/end", json={"caller": ALICE})
    assert r.status_code == 409 and r.json()["error"] == "AUCTION_NOT_ENDED"
    clock.advance(MIN_AUCTION_DURATION)
    r = client.post("/listings/1/end", json={"caller": ALICE})
    assert r.status_code == 200
    assert r.json()["split"]["seller_amount"] == 1024
    assert _balance(client, BOB)["assets"] == [{"contract": COLLECTION, "token_id": 1}]


def test_cancel_then_withdraw(client):
    _fund(client, ALICE)
    _list(client, is_auction=True, auction_duration=MIN_AUCTION_DURATION)
    nonce = new_nonce()
    client.post("/listings/1/bids/commit", json={"caller": ALICE, "commitment": make_bid_commitment(ALICE, 1000, nonce)})
    client.post("/listings/1/bids/reveal", json={"caller": ALICE, "amount": 1000, "nonce": nonce, "value": 1000})

    r = client.post("/listings/1/cancel", json={"caller": SELLER})
    assert r.status_code == 200 and r.json()["state"] == "cancelled"
    assert client.get(f"/escrow/{ALICE}").json()["pending"] == 1000

    r = client.post("/escrow/withdraw", json={"caller": ALICE})
    assert r.status_code == 200 and r.json()["amount"] == 1000
    assert _balance(client, ALICE)["balance"] == 10_000
    r = client.post("/escrow/withdraw", json={"caller": ALICE})
    assert r.status_code == 400 and r.json()["error"] == "NO_FUNDS_TO_WITHDRAW"


def test_admin_requires_token(client):
    r = client.post("/admin/fee", json={"fee_bps": 500})
    assert r.status_code == 403 and r.json()["error"] == "UNAUTHORIZED"
    r = client.post("/admin/fee", json={"fee_bps": 500}, headers={"X-Admin-Token": "wrong"})
    assert r.status_code == 403

    r = client.post("/admin/fee", json={"fee_bps": 500}, headers={"X-Admin-Token": TOKEN})
    assert r.status_code == 200
    assert client.get("/config").json()["fee_bps"] == 500

    r = client.post("/admin/fee", json={"fee_bps": 20_000}, headers={"X-Admin-Token": TOKEN})
    assert r.status_code == 400 and r.json()["error"] == "FEE_TOO_HIGH"
    r = client.post("/admin/fee-recipient", json={"fee_recipient": NATIVE_RAIL}, headers={"X-Admin-Token": TOKEN})
    assert r.status_code == 400 and r.json()["error"] == "INVALID_RECIPIENT"
    r = client.post("/admin/fee-recipient", json={"fee_recipient": BOB}, headers={"X-Admin-Token": TOKEN})
    assert r.status_code == 200
    assert client.get("/config").json()["fee_recipient"] == BOB

    kinds = [e["kind"] for e in client.get("/events").json()]
    assert kinds == ["MarketplaceFeeUpdated", "FeeRecipientUpdated"]


def test_replay_endpoint(client):
    _fund(client, ALICE)
    _list(client)
    client.post("/listings/1/buy", json={"caller": ALICE, "value": 1000})
    assert client.post("/admin/replay").status_code == 403
    r = client.post("/admin/replay", headers={"X-Admin-Token": TOKEN})
    assert r.status_code == 200 and r.json()["replayed"] == 2


def test_state_survives_restart(config, clock):
    first = TestClient(create_app(config, clock=clock))
    _fund(first, ALICE)
    _list(first)

    second = TestClient(create_app(config, clock=clock))
    assert second.get("/listings/1").json()["is_active"] is True
    assert _balance(second, ALICE)["balance"] == 10_000
    listing = _list(second, token_id=2)
    assert listing["listing_id"] == 2
    seqs = [e["seq"] for e in second.get("/events").json()]
    assert seqs == [1, 2]


def test_sandbox_can_be_disabled(config, clock):
    config.sandbox = False
    client = TestClient(create_app(config, clock=clock))
    r = client.post("/sandbox/fund", json={"account": ALICE, "amount": 1})
    assert r.status_code == 404


def test_health(client):
    _fund(client, ALICE)
    _list(client)
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["checks"]["eventlog"]["status"] == "healthy"
    assert body["checks"]["royalty_registry"]["status"] == "not_configured"
    assert body["checks"]["market"]["active_fixed"] == 1
    assert body["checks"]["market"]["escrow"] == {NATIVE_RAIL: 0}
    assert client.get("/health/live").json() == {"status": "alive"}
    assert client.get("/health/ready").json() == {"status": "ready"}


def test_concurrent_writes_all_commit_and_persist(config, clock, tmp_path):
    client = TestClient(create_app(config, clock=clock))
    workers, rounds = 8, 10
    statuses = []

    def fund():
        for _ in range(rounds):
            statuses.append(client.post("/sandbox/fund", json={"account": ALICE, "amount": 1}).status_code)

    threads = [threading.Thread(target=fund) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert statuses == [200] * (workers * rounds)
    assert _balance(client, ALICE)["balance"] == workers * rounds
    assert list(tmp_path.glob("*.tmp")) == []
    restarted = TestClient(create_app(config, clock=clock))
    assert _balance(restarted, ALICE)["balance"] == workers * rounds
