#!/usr/bin/env python3
# clients/cli/market_cli.py
# Interactive client for the sealed-bid marketplace API.
# Nonces and commitments are computed locally; the server only ever sees the hash
# until the reveal.

from __future__ import annotations

import json
import os
import sys
import time
from typing import Any, Dict, List, Optional

import requests

from services.crypto_core.commitments import (
    NATIVE_RAIL,
    address_for,
    is_account,
    make_bid_commitment,
    new_nonce,
)


# ======== Color accents (no deps) ========
class C:
    OK   = "\033[92m"
    WARN = "\033[93m"
    ERR  = "\033[91m"
    DIM  = "\033[2m"
    BOLD = "\033[1m"
    RST  = "\033[0m"


def _short(pk: Optional[str]) -> str:
    return f"{pk[:4]}…{pk[-5:]}" if pk and len(pk) > 10 else (pk or "-")


# ======== Local config ========
API_URL: str = os.getenv("API_URL", "http://127.0.0.1:8000")
ADMIN_TOKEN: str = os.getenv("MARKET_ADMIN_TOKEN", "")
RECEIPTS_DIR: str = os.getenv("RECEIPTS_DIR", "receipts")
BIDS_PATH: str = os.path.join(RECEIPTS_DIR, "pending_bids.json")
HTTP_TIMEOUT: float = 10.0

# Sandbox accounts are derived from labels, so every client agrees on them.
USERS: List[str] = ["alice", "bob", "carol", "dave"]


class MarketCLIError(RuntimeError):
    """API call failed; message carries the server's error code and detail."""


# ======== HTTP helpers ========
def _api(method: str, path: str, **kw: Any) -> Any:
    headers = kw.pop("headers", {})
    if ADMIN_TOKEN:
        headers.setdefault("X-Admin-Token", ADMIN_TOKEN)
    try:
        r = requests.request(method, f"{API_URL}{path}", headers=headers, timeout=HTTP_TIMEOUT, **kw)
    except requests.RequestException as e:
        raise MarketCLIError(f"API unreachable at {API_URL}: {e}") from e
    if r.status_code >= 400:
        try:
            body = r.json()
        except ValueError:
            body = {"detail": r.text}
        code = body.get("error") or r.status_code
        raise MarketCLIError(f"[{code}] {body.get('detail')}")
    return r.json()


def _get(path: str, **params: Any) -> Any:
    return _api("GET", path, params={k: v for k, v in params.items() if v is not None})


def _post(path: str, payload: Optional[dict] = None) -> Any:
    return _api("POST", path, json=payload or {})


# ======== Receipts ========
def _write_receipt(kind: str, payload: dict) -> None:
    os.makedirs(RECEIPTS_DIR, exist_ok=True)
    ts = int(time.time())
    fname = os.path.join(RECEIPTS_DIR, f"{ts}_{kind}.json")
    with open(fname, "w") as f:
        json.dump(payload, f, indent=2)
    print(f"{C.DIM}(receipt saved → {fname}){C.RST}")


def _load_bids() -> List[Dict[str, Any]]:
    if os.path.exists(BIDS_PATH):
        with open(BIDS_PATH) as f:
            return json.load(f)
    return []


def _save_bids(bids: List[Dict[str, Any]]) -> None:
    os.makedirs(RECEIPTS_DIR, exist_ok=True)
    with open(BIDS_PATH, "w") as f:
        json.dump(bids, f, indent=2)


# ======== Prompts ========
def select_from_list(prompt: str, items: List[str]) -> int:
    if not items:
        raise MarketCLIError("No items to select from.")
    print(f"\n{prompt}")
    for i, it in enumerate(items, 1):
        print(f"{i}. {it}")
    choice = input("Enter number: ").strip()
    if not choice.isdigit():
        raise MarketCLIError("Invalid choice: expected a number.")
    idx = int(choice) - 1
    if not (0 <= idx < len(items)):
        raise MarketCLIError("Selected index out of range.")
    return idx


def _select_account(prompt: str = "Select account:") -> str:
    labels = [f"{u}  ({_short(address_for(u))})" for u in USERS] + ["other (enter base58)"]
    idx = select_from_list(prompt, labels)
    if idx < len(USERS):
        return address_for(USERS[idx])
    addr = input("Account (base58): ").strip()
    if not is_account(addr):
        raise MarketCLIError("Not a valid account address.")
    return addr


def _ask_int(prompt: str, default: Optional[int] = None) -> int:
    suffix = f" (default {default})" if default is not None else ""
    raw = input(f"{prompt}{suffix}: ").strip()
    if not raw and default is not None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise MarketCLIError(f"Expected an integer, got {raw!r}")


def _ask_rail() -> str:
    raw = input(f"Payment rail (blank = native {_short(NATIVE_RAIL)}): ").strip()
    return raw or NATIVE_RAIL


def _print_listing(l: Dict[str, Any]) -> None:
    kind = "auction" if l["is_auction"] else "fixed"
    line = (
        f"#{l['listing_id']:<4} {kind:<7} {l['phase']:<15} price={l['price']:<10} "
        f"seller={_short(l['seller'])} asset={_short(l['asset']['contract'])}:{l['asset']['token_id']}"
    )
    if l["is_auction"]:
        line += f" top={l['highest_bid']} by {_short(l['highest_bidder'])} ends={l['auction_end_time']}"
    print(line)


# ======== Flows ========
def flow_status() -> None:
    cfg = _get("/config")
    print(f"\n{C.BOLD}Marketplace{C.RST} {cfg['address']}")
    print(f"fee: {cfg['fee_bps']} bps → {_short(cfg['fee_recipient'])}   sandbox: {cfg['sandbox']}")
    items = _get("/listings")["items"]
    if not items:
        print(f"{C.DIM}(no listings){C.RST}")
    for l in items:
        _print_listing(l)


def flow_sandbox_setup() -> None:
    """Mint an asset to an account, approve the marketplace and fund the account."""
    cfg = _get("/config")
    owner = _select_account("Asset owner:")
    contract = input("Asset contract (blank = sandbox collection): ").strip() or address_for("collection")
    token_id = _ask_int("Token id")
    _post("/sandbox/assets/mint", {"contract": contract, "token_id": token_id, "owner": owner})
    _post("/sandbox/assets/approve", {
        "contract": contract, "token_id": token_id, "owner": owner, "operator": cfg["address"],
    })
    print(f"{C.OK}Minted {_short(contract)}:{token_id} to {_short(owner)} and approved the marketplace.{C.RST}")

    amount = _ask_int("Fund an account with (0 = skip)", 0)
    if amount > 0:
        who = _select_account("Account to fund:")
        res = _post("/sandbox/fund", {"account": who, "amount": amount, "payment_rail": _ask_rail()})
        print(f"{C.OK}{_short(who)} balance: {res['balance']}{C.RST}")


def flow_create_listing() -> None:
    seller = _select_account("Seller:")
    contract = input("Asset contract (blank = sandbox collection): ").strip() or address_for("collection")
    payload = {
        "caller": seller,
        "contract": contract,
        "token_id": _ask_int("Token id"),
        "price": _ask_int("Price (smallest units)"),
        "payment_rail": _ask_rail(),
        "is_auction": input("Auction? [y/N]: ").strip().lower() == "y",
    }
    if payload["is_auction"]:
        hours = _ask_int("Duration in hours", 24)
        payload["auction_duration"] = hours * 3600
    res = _post("/listings", payload)
    _print_listing(res["listing"])
    _write_receipt("listing", res)


def flow_buy() -> None:
    lid = _ask_int("Listing id")
    listing = _get(f"/listings/{lid}")
    buyer = _select_account("Buyer:")
    value = listing["price"] if listing["payment_rail"] == NATIVE_RAIL else 0
    res = _post(f"/listings/{lid}/buy", {"caller": buyer, "value": value})
    split = res["split"]
    print(
        f"{C.OK}Bought #{lid} for {split['sale_amount']}: seller {split['seller_amount']}, "
        f"fee {split['marketplace_fee']}, royalty {split['royalty_amount']}{C.RST}"
    )
    _write_receipt("purchase", res)


def flow_commit_bid() -> None:
    lid = _ask_int("Listing id")
    listing = _get(f"/listings/{lid}")
    bidder = _select_account("Bidder:")
    minimum = listing["highest_bid"] + listing["min_bid_increment"]
    amount = _ask_int(f"Bid amount (minimum {minimum})")
    nonce = new_nonce()
    commitment = make_bid_commitment(bidder, amount, nonce)
    _post(f"/listings/{lid}/bids/commit", {"caller": bidder, "commitment": commitment})

    bid = {
        "listing_id": lid,
        "bidder": bidder,
        "amount": amount,
        "nonce": nonce,
        "commitment": commitment,
        "payment_rail": listing["payment_rail"],
        "committed_at": int(time.time()),
    }
    bids = [b for b in _load_bids() if not (b["listing_id"] == lid and b["bidder"] == bidder)]
    bids.append(bid)
    _save_bids(bids)
    _write_receipt("bid_commit", bid)
    print(f"{C.OK}Committed. Reveal within 10 minutes (menu 5).{C.RST}")


def flow_reveal_bid() -> None:
    bids = _load_bids()
    if not bids:
        print(f"{C.WARN}No pending bids in {BIDS_PATH}.{C.RST}")
        return
    labels = [f"#{b['listing_id']} {_short(b['bidder'])} amount={b['amount']}" for b in bids]
    bid = bids[select_from_list("Bid to reveal:", labels)]
    value = bid["amount"] if bid["payment_rail"] == NATIVE_RAIL else 0
    try:
        res = _post(f"/listings/{bid['listing_id']}/bids/reveal", {
            "caller": bid["bidder"], "amount": bid["amount"], "nonce": bid["nonce"], "value": value,
        })
    except MarketCLIError as e:
        # A stale commitment can never be revealed again.
        if "NO_BID_COMMITTED" in str(e) or "REVEAL_WINDOW_EXPIRED" in str(e):
            _save_bids([b for b in bids if b is not bid])
        raise
    _save_bids([b for b in bids if b is not bid])
    print(f"{C.OK}Revealed. Highest bid is now {res['highest_bid']} by {_short(res['highest_bidder'])}.{C.RST}")
    _write_receipt("bid_reveal", {**bid, "listing": res})


def flow_end_auction() -> None:
    lid = _ask_int("Listing id")
    caller = _select_account("Caller (anyone may end an auction):")
    res = _post(f"/listings/{lid}/end", {"caller": caller})
    print(f"{C.OK}Auction #{lid} settled for {res['split']['sale_amount']}.{C.RST}")
    _write_receipt("auction_end", res)


def flow_cancel() -> None:
    lid = _ask_int("Listing id")
    seller = _select_account("Seller:")
    res = _post(f"/listings/{lid}/cancel", {"caller": seller})
    print(f"{C.OK}Listing #{lid} is now {res['state']}.{C.RST}")


def flow_escrow() -> None:
    who = _select_account("Account:")
    rail = _ask_rail()
    pos = _get(f"/escrow/{who}", payment_rail=rail)
    print(f"pending: {pos['pending']}   held: {pos['held']}")
    if pos["pending"] > 0 and input("Withdraw now? [y/N]: ").strip().lower() == "y":
        res = _post("/escrow/withdraw", {"caller": who, "payment_rail": rail})
        print(f"{C.OK}Withdrew {res['amount']}.{C.RST}")
        _write_receipt("withdraw", res)


def flow_events() -> None:
    raw = input("Listing id (blank = all): ").strip()
    rows = _get("/events", listing_id=int(raw) if raw else None, limit=50)
    for r in rows:
        extra = {k: v for k, v in r.items() if k not in ("event_id", "seq", "kind", "ts")}
        print(f"{C.DIM}{r['seq']:>5}{C.RST} {r['kind']:<22} {json.dumps(extra, separators=(',', ':'))}")


def flow_replay() -> None:
    res = _post("/admin/replay")
    print(f"{C.OK}Replayed {res['replayed']} events and rebuilt projections from tx_log.{C.RST}")


# ======== CLI main ========
def main() -> None:
    print(f"{C.DIM}API: {API_URL}   receipts: {os.path.abspath(RECEIPTS_DIR)}{C.RST}")
    flows = {
        "1": flow_status,
        "2": flow_sandbox_setup,
        "3": flow_create_listing,
        "4": flow_commit_bid,
        "5": flow_reveal_bid,
        "6": flow_buy,
        "7": flow_end_auction,
        "8": flow_cancel,
        "9": flow_escrow,
        "e": flow_events,
        "r": flow_replay,
    }
    while True:
        print("\n=== SEALED-BID MARKETPLACE ===")
        print("1. Status (config & listings)")
        print("2. Sandbox: mint asset / fund account")
        print("3. Create listing")
        print("4. Commit sealed bid")
        print("5. Reveal bid")
        print("6. Buy fixed-price listing")
        print("7. End auction")
        print("8. Cancel listing")
        print("9. Escrow balance / withdraw")
        print("e. Event log")
        print("r. Replay projections (admin)")
        print("q. Quit")
        choice = input("> ").strip().lower()

        if choice == "q":
            print("Bye.")
            break
        flow = flows.get(choice)
        if flow is None:
            print("Invalid choice.")
            continue
        try:
            flow()
        except MarketCLIError as e:
            print(f"{C.ERR}{e}{C.RST}")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nInterrupted by user."); sys.exit(130)
