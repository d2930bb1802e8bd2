import os
import sys
import time
import pathlib
from typing import Optional, List, Dict, Any, Tuple

import requests
import streamlit as st

st.set_page_config(page_title="Sealed-Bid Marketplace", page_icon="", layout="wide")

API_URL = os.getenv("API_URL", "http://127.0.0.1:8000")
ADMIN_TOKEN = os.getenv("MARKET_ADMIN_TOKEN", "")

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[2])
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from services.crypto_core.commitments import NATIVE_RAIL, address_for, make_bid_commitment, new_nonce
from clients.cli import market_cli as mc


def short(pk: Optional[str]) -> str:
    return f"{pk[:4]}…{pk[-4:]}" if pk and len(pk) > 10 else (pk or "-")


def api_get(path: str, **params) -> Tuple[int, Any]:
    try:
        r = requests.get(f"{API_URL}{path}", params={k: v for k, v in params.items() if v is not None}, timeout=20)
        return r.status_code, r.json()
    except Exception as e:
        return 0, {"detail": str(e)}


def api_post(path: str, payload: Optional[dict] = None) -> Tuple[int, Any]:
    headers = {"content-type": "application/json"}
    if ADMIN_TOKEN:
        headers["X-Admin-Token"] = ADMIN_TOKEN
    try:
        r = requests.post(f"{API_URL}{path}", json=payload or {}, headers=headers, timeout=30)
        try:
            body = r.json()
        except Exception:
            body = {"detail": r.text}
        return r.status_code, body
    except Exception as e:
        return 0, {"detail": str(e)}


def show_result(code: int, body: Any, ok_msg: str) -> bool:
    if code == 200:
        st.success(ok_msg)
        return True
    err = body.get("error") if isinstance(body, dict) else None
    detail = body.get("detail") if isinstance(body, dict) else body
    st.error(f"{err or code}: {detail}")
    return False


def safe_rerun() -> None:
    time.sleep(0.2)
    st.rerun()


# ---------- Sidebar ----------
if "active_user" not in st.session_state:
    st.session_state["active_user"] = mc.USERS[0]

with st.sidebar:
    st.header("Account")
    labels = {u: f"{u} · {short(address_for(u))}" for u in mc.USERS}
    sel = st.selectbox(
        "Sandbox account",
        options=mc.USERS,
        index=mc.USERS.index(st.session_state["active_user"]),
        format_func=lambda u: labels[u],
    )
    st.session_state["active_user"] = sel

    st.divider()
    code, cfg = api_get("/config")
    if code != 200:
        st.error(f"API unreachable at {API_URL}: {cfg.get('detail')}")
        st.stop()
    st.caption("Marketplace")
    st.code(cfg["address"], language=None)
    st.caption(f"Fee {cfg['fee_bps']} bps → {short(cfg['fee_recipient'])}")

me = address_for(st.session_state["active_user"])

st.markdown(f"### Active account: {st.session_state['active_user']} · **{me}**")
c1, c2, c3 = st.columns(3)
if cfg.get("sandbox"):
    _, bal = api_get(f"/sandbox/balances/{me}", payment_rail=NATIVE_RAIL)
    c1.metric("Native balance", bal.get("balance", "n/a"))
_, esc = api_get(f"/escrow/{me}", payment_rail=NATIVE_RAIL)
c2.metric("Escrow withdrawable", esc.get("pending", 0))
c3.metric("Escrow held (live bids)", esc.get("held", 0))

st.divider()

tab_listings, tab_auctions, tab_sell, tab_escrow, tab_events, tab_admin = st.tabs(
    ["Listings", "Auctions", "Sell", "Escrow", "Events", "Admin"]
)

code, payload = api_get("/listings", active_only=False)
listings: List[Dict[str, Any]] = payload.get("items", []) if code == 200 else []

# ---------- Listings ----------
with tab_listings:
    fixed = [l for l in listings if not l["is_auction"] and l["is_active"]]
    if not fixed:
        st.info("No active fixed-price listings.")
    for l in fixed:
        cols = st.columns([3, 2, 2, 2])
        cols[0].write(f"**#{l['listing_id']}** {short(l['asset']['contract'])}:{l['asset']['token_id']}")
        cols[1].metric("Price", l["price"])
        cols[2].caption(f"seller {short(l['seller'])}")
        if cols[3].button("Buy", key=f"buy_{l['listing_id']}", disabled=l["seller"] == me):
            value = l["price"] if l["payment_rail"] == NATIVE_RAIL else 0
            c, body = api_post(f"/listings/{l['listing_id']}/buy", {"caller": me, "value": value})
            if show_result(c, body, "Purchased."):
                st.json(body["split"])

    st.subheader("All listings")
    st.dataframe(
        [
            {
                "id": l["listing_id"],
                "kind": "auction" if l["is_auction"] else "fixed",
                "phase": l["phase"],
                "price": l["price"],
                "highest_bid": l["highest_bid"],
                "seller": short(l["seller"]),
                "buyer": short(l["buyer"]),
            }
            for l in listings
        ],
        use_container_width=True,
    )

# ---------- Auctions ----------
with tab_auctions:
    auctions = [l for l in listings if l["is_auction"] and l["is_active"]]
    if not auctions:
        st.info("No running auctions.")
    now = int(time.time())
    for l in auctions:
        lid = l["listing_id"]
        with st.expander(f"#{lid} · top {l['highest_bid']} by {short(l['highest_bidder'])}", expanded=True):
            left = l["auction_end_time"] - now
            st.caption(
                f"ends {l['auction_end_time']} ({'ended' if left <= 0 else f'{left // 60} min left'}) · "
                f"min next bid {l['highest_bid'] + l['min_bid_increment']} · "
                f"{l['pending_commitments']} sealed bid(s) pending"
            )
            a, b, c = st.columns(3)
            amount = a.number_input(
                "Bid amount", min_value=0, step=1, key=f"amt_{lid}",
                value=l["highest_bid"] + l["min_bid_increment"],
            )
            if a.button("Commit sealed bid", key=f"commit_{lid}"):
                nonce = new_nonce()
                commitment = make_bid_commitment(me, int(amount), nonce)
                code, body = api_post(f"/listings/{lid}/bids/commit", {"caller": me, "commitment": commitment})
                if show_result(code, body, "Committed. Reveal within 10 minutes."):
                    bids = [x for x in mc._load_bids() if not (x["listing_id"] == lid and x["bidder"] == me)]
                    bids.append({
                        "listing_id": lid, "bidder": me, "amount": int(amount), "nonce": nonce,
                        "commitment": commitment, "payment_rail": l["payment_rail"], "committed_at": now,
                    })
                    mc._save_bids(bids)

            mine = [x for x in mc._load_bids() if x["listing_id"] == lid and x["bidder"] == me]
            if mine and b.button(f"Reveal {mine[0]['amount']}", key=f"reveal_{lid}"):
                bid = mine[0]
                value = bid["amount"] if bid["payment_rail"] == NATIVE_RAIL else 0
                code, body = api_post(f"/listings/{lid}/bids/reveal", {
                    "caller": me, "amount": bid["amount"], "nonce": bid["nonce"], "value": value,
                })
                if show_result(code, body, "Revealed."):
                    mc._save_bids([x for x in mc._load_bids() if x["commitment"] != bid["commitment"]])
                    safe_rerun()

            if c.button("End auction", key=f"end_{lid}", disabled=l["auction_end_time"] > now):
                code, body = api_post(f"/listings/{lid}/end", {"caller": me})
                if show_result(code, body, "Auction settled."):
                    st.json(body["split"])

            if l["seller"] == me and st.button("Cancel auction", key=f"cancel_{lid}"):
                show_result(*api_post(f"/listings/{lid}/cancel", {"caller": me}), "Cancelled.")

# ---------- Sell ----------
with tab_sell:
    st.subheader("Create a listing")
    with st.form("create_listing"):
        contract = st.text_input("Asset contract", value=address_for("collection"))
        token_id = st.number_input("Token id", min_value=0, step=1)
        price = st.number_input("Price", min_value=1, step=1, value=1000)
        is_auction = st.checkbox("Sealed-bid auction")
        hours = st.number_input("Auction duration (hours)", min_value=24, step=1, value=24)
        submitted = st.form_submit_button("List")
    if submitted:
        code, body = api_post("/listings", {
            "caller": me, "contract": contract, "token_id": int(token_id), "price": int(price),
            "payment_rail": NATIVE_RAIL, "is_auction": is_auction, "auction_duration": int(hours) * 3600,
        })
        if show_result(code, body, "Listed."):
            st.json(body["listing"])

    mine = [l for l in listings if l["seller"] == me and l["is_active"] and not l["is_auction"]]
    for l in mine:
        if st.button(f"Cancel #{l['listing_id']}", key=f"cancel_fixed_{l['listing_id']}"):
            show_result(*api_post(f"/listings/{l['listing_id']}/cancel", {"caller": me}), "Cancelled.")

    if cfg.get("sandbox"):
        st.divider()
        st.subheader("Sandbox")
        s1, s2 = st.columns(2)
        if s1.button("Mint & approve this token to me"):
            code, body = api_post("/sandbox/assets/mint", {"contract": contract, "token_id": int(token_id), "owner": me})
            if show_result(code, body, "Minted."):
                show_result(*api_post("/sandbox/assets/approve", {
                    "contract": contract, "token_id": int(token_id), "owner": me, "operator": cfg["address"],
                }), "Marketplace approved.")
        fund = s2.number_input("Fund me with", min_value=1, step=1, value=10_000)
        if s2.button("Fund"):
            show_result(*api_post("/sandbox/fund", {"account": me, "amount": int(fund)}), "Funded.")

# ---------- Escrow ----------
with tab_escrow:
    st.write(f"Withdrawable: **{esc.get('pending', 0)}** · held: {esc.get('held', 0)}")
    if st.button("Withdraw", disabled=not esc.get("pending")):
        show_result(*api_post("/escrow/withdraw", {"caller": me, "payment_rail": NATIVE_RAIL}), "Withdrawn.")

# ---------- Events ----------
with tab_events:
    code, rows = api_get("/events", limit=200)
    if code == 200 and rows:
        st.dataframe(rows, use_container_width=True)
    else:
        st.info("No events yet.")
    code, metrics = api_get("/metrics")
    if code == 200 and metrics:
        st.dataframe(metrics, use_container_width=True)

# ---------- Admin ----------
with tab_admin:
    if not ADMIN_TOKEN:
        st.info("Set MARKET_ADMIN_TOKEN to use the admin actions.")
    new_fee = st.number_input("Marketplace fee (bps)", min_value=0, max_value=10_000, value=int(cfg["fee_bps"]))
    if st.button("Update fee", disabled=not ADMIN_TOKEN):
        show_result(*api_post("/admin/fee", {"fee_bps": int(new_fee)}), "Fee updated.")
    recipient = st.text_input("Fee recipient", value=cfg["fee_recipient"])
    if st.button("Update recipient", disabled=not ADMIN_TOKEN):
        show_result(*api_post("/admin/fee-recipient", {"fee_recipient": recipient}), "Recipient updated.")
    if st.button("Replay event log", disabled=not ADMIN_TOKEN):
        show_result(*api_post("/admin/replay"), "Projections rebuilt.")
    code, health = api_get("/health")
    if code == 200:
        st.json(health)
