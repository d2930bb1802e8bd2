from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from services.api.logging_config import get_logger
from services.market.events import MarketEvent

logger = get_logger("eventlog")

DB_PATH = Path(__file__).with_name("events.db")

DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS tx_log(
  id TEXT PRIMARY KEY,
  seq INTEGER NOT NULL,
  kind TEXT NOT NULL,
  ts INTEGER NOT NULL,
  payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS listings(
  listing_id INTEGER PRIMARY KEY,
  seller TEXT NOT NULL,
  contract TEXT NOT NULL,
  token_id INTEGER NOT NULL,
  price TEXT NOT NULL,
  rail TEXT NOT NULL,
  is_auction INTEGER NOT NULL,
  auction_end_time INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL,
  highest_bid TEXT NOT NULL DEFAULT '0',
  highest_bidder TEXT,
  buyer TEXT,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bids(
  event_id TEXT PRIMARY KEY,
  listing_id INTEGER NOT NULL,
  bidder TEXT NOT NULL,
  action TEXT NOT NULL,
  amount TEXT,
  ts INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settlements(
  listing_id INTEGER PRIMARY KEY,
  buyer TEXT NOT NULL,
  sale_amount TEXT NOT NULL,
  seller_amount TEXT NOT NULL,
  marketplace_fee TEXT NOT NULL,
  royalty_amount TEXT NOT NULL,
  ts INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics(
  kind TEXT PRIMARY KEY,
  count INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT NOT NULL
);
"""

PROJECTION_TABLES = ("listings", "bids", "settlements", "metrics")


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class EventLog:
    """
    Durable audit trail: every published market event lands once in `tx_log`
    (keyed by event id), and `apply_event_row` keeps the query projections in
    step. `replay()` rebuilds the projections from `tx_log` alone.
    """

    def __init__(self, db_path: Path | str = DB_PATH):
        self.db_path = Path(db_path)
        self._ready = False
        self._mu = threading.Lock()

    # ---------- storage ----------
    def _conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        cx = sqlite3.connect(self.db_path)
        cx.row_factory = sqlite3.Row
        return cx

    def _init(self) -> None:
        if self._ready:
            return
        cx = self._conn()
        try:
            cx.executescript(DDL)
        finally:
            cx.close()
        self._ready = True

    def ping(self) -> bool:
        self._init()
        cx = self._conn()
        try:
            return cx.execute("SELECT 1").fetchone()[0] == 1
        finally:
            cx.close()

    # ---------- projections ----------
    @staticmethod
    def _touch_metrics(cx: sqlite3.Connection, kind: str) -> None:
        now = _now()
        cx.execute(
            "INSERT INTO metrics(kind,count,updated_at) VALUES(?,1,?) "
            "ON CONFLICT(kind) DO UPDATE SET count = count + 1, updated_at = excluded.updated_at",
            (kind, now),
        )

    @staticmethod
    def _set_listing(cx: sqlite3.Connection, listing_id: int, **cols: Any) -> None:
        cols["updated_at"] = _now()
        sets = ",".join(f"{k}=?" for k in cols)
        cx.execute(f"UPDATE listings SET {sets} WHERE listing_id=?", (*cols.values(), listing_id))

    def apply_event_row(self, cx: sqlite3.Connection, kind: str, payload: Dict[str, Any]) -> None:
        ts = int(payload.get("ts") or 0)
        lid = payload.get("listing_id")

        if kind == "ListingCreated":
            cx.execute(
                "INSERT OR REPLACE INTO listings(listing_id,seller,contract,token_id,price,rail,is_auction,"
                "auction_end_time,status,highest_bid,highest_bidder,buyer,updated_at) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    int(lid),
                    payload["seller"],
                    payload["contract"],
                    int(payload["token_id"]),
                    str(payload["price"]),
                    payload["rail"],
                    1 if payload.get("is_auction") else 0,
                    int(payload.get("auction_end_time") or 0),
                    "active",
                    "0",
                    None,
                    None,
                    _now(),
                ),
            )
        elif kind in ("BidCommitted", "BidRevealed", "BidRefunded"):
            action = {"BidCommitted": "commit", "BidRevealed": "reveal", "BidRefunded": "refund"}[kind]
            amount = payload.get("amount")
            cx.execute(
                "INSERT OR IGNORE INTO bids(event_id,listing_id,bidder,action,amount,ts) VALUES(?,?,?,?,?,?)",
                (payload["event_id"], int(lid), payload["bidder"], action,
                 None if amount is None else str(amount), ts),
            )
            if kind == "BidRevealed":
                self._set_listing(cx, int(lid), highest_bid=str(amount), highest_bidder=payload["bidder"])
        elif kind in ("PurchaseMade", "AuctionEnded"):
            buyer = payload.get("buyer") or payload.get("winner")
            sale = payload.get("price", payload.get("amount"))
            cx.execute(
                "INSERT OR REPLACE INTO settlements(listing_id,buyer,sale_amount,seller_amount,"
                "marketplace_fee,royalty_amount,ts) VALUES(?,?,?,?,?,?,?)",
                (int(lid), buyer, str(sale), str(payload["seller_amount"]),
                 str(payload["marketplace_fee"]), str(payload["royalty_amount"]), ts),
            )
            status = "sold" if kind == "PurchaseMade" else "ended"
            self._set_listing(cx, int(lid), status=status, buyer=buyer)
        elif kind == "ListingCancelled":
            self._set_listing(cx, int(lid), status="cancelled")
        elif kind in ("MarketplaceFeeUpdated", "FeeRecipientUpdated", "RoyaltiesPaid", "FundsWithdrawn"):
            pass
        else:
            raise ValueError(f"Unknown event kind: {kind}")

        self._touch_metrics(cx, kind)

    # ---------- writes ----------
    def append(self, event: MarketEvent) -> str:
        """EventBus subscriber; idempotent by event id."""
        return self.append_event(event.kind, **event.to_dict())

    def append_event(self, kind: str, **payload: Any) -> str:
        self._init()
        event_id = payload["event_id"]
        row = {**payload, "kind": kind}
        blob = json.dumps(row, separators=(",", ":"))
        with self._mu:
            cx = self._conn()
            try:
                with cx:
                    if cx.execute("SELECT 1 FROM tx_log WHERE id=?", (event_id,)).fetchone():
                        return event_id
                    cx.execute(
                        "INSERT INTO tx_log(id,seq,kind,ts,payload) VALUES(?,?,?,?,?)",
                        (event_id, int(payload.get("seq") or 0), kind, int(payload.get("ts") or 0), blob),
                    )
                    self.apply_event_row(cx, kind, row)
            finally:
                cx.close()
        return event_id

    def replay(self) -> int:
        self._init()
        with self._mu:
            cx = self._conn()
            try:
                with cx:
                    for table in PROJECTION_TABLES:
                        cx.execute(f"DELETE FROM {table}")
                    rows: Iterable[Tuple[str, str]] = cx.execute(
                        "SELECT kind, payload FROM tx_log ORDER BY seq ASC, ts ASC, id ASC"
                    ).fetchall()
                    n = 0
                    for kind, payload in rows:
                        self.apply_event_row(cx, kind, json.loads(payload))
                        n += 1
            finally:
                cx.close()
        logger.info("replayed %d events into projections", n)
        return n

    # ---------- reads ----------
    def events(
        self,
        listing_id: Optional[int] = None,
        kind: Optional[str] = None,
        after_seq: int = 0,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        self._init()
        q = "SELECT payload FROM tx_log WHERE seq > ?"
        args: List[Any] = [after_seq]
        if kind:
            q += " AND kind = ?"
            args.append(kind)
        if listing_id is not None:
            q += " AND json_extract(payload, '$.listing_id') = ?"
            args.append(int(listing_id))
        q += " ORDER BY seq ASC LIMIT ?"
        args.append(int(limit))
        cx = self._conn()
        try:
            return [json.loads(r[0]) for r in cx.execute(q, args).fetchall()]
        finally:
            cx.close()

    def listing_row(self, listing_id: int) -> Optional[Dict[str, Any]]:
        self._init()
        cx = self._conn()
        try:
            r = cx.execute("SELECT * FROM listings WHERE listing_id=?", (int(listing_id),)).fetchone()
            return dict(r) if r else None
        finally:
            cx.close()

    def settlement_row(self, listing_id: int) -> Optional[Dict[str, Any]]:
        self._init()
        cx = self._conn()
        try:
            r = cx.execute("SELECT * FROM settlements WHERE listing_id=?", (int(listing_id),)).fetchone()
            return dict(r) if r else None
        finally:
            cx.close()

    def metrics_all(self) -> List[Tuple[str, int, str]]:
        self._init()
        cx = self._conn()
        try:
            return [
                (r["kind"], r["count"], r["updated_at"])
                for r in cx.execute("SELECT kind, count, updated_at FROM metrics ORDER BY kind")
            ]
        finally:
            cx.close()


__all__ = [
    "DB_PATH",
    "DDL",
    "EventLog",
]
