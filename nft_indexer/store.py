"""Projection writes: NFTs, listings, trading history and the metadata cache.

``ProjectionStore`` is the surface the dispatcher depends on; ``SqliteStore``
backs it with the tables from ``schema.sql``. Upserts are idempotent. The
trading history append is not.
"""

import json
import logging
import sqlite3
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class ProjectionStore(Protocol):
    def create_nft(self, token_id: int, owner: str, token_uri: str,
                   ipfs_cid: Optional[str] = None, metadata: Optional[dict] = None,
                   royalty_receiver: Optional[str] = None, royalty_amount: Optional[int] = None,
                   minted_at: Optional[datetime] = None) -> None: ...

    def update_nft_owner(self, token_id: int, owner: str) -> None: ...

    def update_nft_royalty(self, token_id: int, receiver: str, amount: int) -> None: ...

    def create_listing(self, nft_contract: str, token_id: int, seller: str, price_wei: str,
                       listed_at: Optional[datetime] = None) -> None: ...

    def cancel_listing(self, nft_contract: str, token_id: int) -> None: ...

    def update_listing_price(self, nft_contract: str, token_id: int, price_wei: str) -> None: ...

    def record_sale(self, nft_contract: str, token_id: int, seller: str, buyer: str,
                    price_wei: str, platform_fee_wei: str, royalty_fee_wei: str,
                    tx_hash: Optional[str], sold_at: Optional[datetime] = None,
                    log_index: Optional[int] = None) -> None: ...


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return {k: row[k] for k in row.keys()} if row is not None else None


class SqliteStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ---------- nfts ----------
    def create_nft(self, token_id, owner, token_uri, ipfs_cid=None, metadata=None,
                   royalty_receiver=None, royalty_amount=None, minted_at=None):
        now = int(time.time())
        self.conn.execute("""
            INSERT INTO nfts(token_id, owner, token_uri, ipfs_cid, metadata,
                             royalty_receiver, royalty_amount, minted_at, created_at, updated_at)
            VALUES(?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(token_id) DO UPDATE SET
              owner=excluded.owner,
              token_uri=excluded.token_uri,
              ipfs_cid=excluded.ipfs_cid,
              metadata=COALESCE(excluded.metadata, nfts.metadata),
              royalty_receiver=excluded.royalty_receiver,
              royalty_amount=excluded.royalty_amount,
              minted_at=excluded.minted_at,
              updated_at=excluded.updated_at
        """, (int(token_id), owner, token_uri, ipfs_cid,
              json.dumps(metadata) if metadata is not None else None,
              royalty_receiver, royalty_amount, _iso(minted_at), now, now))
        logger.debug(f"[store] upserted nft {token_id} owner={owner}")

    def update_nft_owner(self, token_id, owner):
        cur = self.conn.execute(
            "UPDATE nfts SET owner=?, updated_at=? WHERE token_id=?",
            (owner, int(time.time()), int(token_id)))
        if cur.rowcount == 0:
            logger.warning(f"[store] owner update for unknown nft {token_id}")

    def update_nft_royalty(self, token_id, receiver, amount):
        cur = self.conn.execute(
            "UPDATE nfts SET royalty_receiver=?, royalty_amount=?, updated_at=? WHERE token_id=?",
            (receiver, int(amount), int(time.time()), int(token_id)))
        if cur.rowcount == 0:
            logger.warning(f"[store] royalty update for unknown nft {token_id}")

    # ---------- listings ----------
    def create_listing(self, nft_contract, token_id, seller, price_wei, listed_at=None):
        now = int(time.time())
        self.conn.execute("""
            INSERT INTO marketplace_listings(nft_contract, token_id, seller, price, active,
                                             listed_at, created_at, updated_at)
            VALUES(?,?,?,?,1,?,?,?)
            ON CONFLICT(nft_contract, token_id) DO UPDATE SET
              seller=excluded.seller,
              price=excluded.price,
              active=1,
              listed_at=excluded.listed_at,
              updated_at=excluded.updated_at
        """, (nft_contract.lower(), int(token_id), seller, str(price_wei), _iso(listed_at), now, now))

    def cancel_listing(self, nft_contract, token_id):
        self.conn.execute(
            "UPDATE marketplace_listings SET active=0, updated_at=? WHERE nft_contract=? AND token_id=?",
            (int(time.time()), nft_contract.lower(), int(token_id)))

    def update_listing_price(self, nft_contract, token_id, price_wei):
        self.conn.execute(
            "UPDATE marketplace_listings SET price=?, updated_at=? WHERE nft_contract=? AND token_id=?",
            (str(price_wei), int(time.time()), nft_contract.lower(), int(token_id)))

    # ---------- trading history ----------
    def record_sale(self, nft_contract, token_id, seller, buyer, price_wei, platform_fee_wei,
                    royalty_fee_wei, tx_hash, sold_at=None, log_index=None):
        self.conn.execute("""
            INSERT INTO trading_history(nft_contract, token_id, seller, buyer, price, platform_fee,
                                        royalty_fee, transaction_hash, log_index, sold_at, created_at)
            VALUES(?,?,?,?,?,?,?,?,?,?,?)
        """, (nft_contract.lower(), int(token_id), seller, buyer, str(price_wei),
              str(platform_fee_wei), str(royalty_fee_wei), tx_hash, log_index,
              _iso(sold_at), int(time.time())))

    # ---------- metadata cache ----------
    def get_cached_metadata(self, cid: str) -> Optional[dict]:
        row = self.conn.execute("SELECT metadata FROM ipfs_metadata_cache WHERE cid=?", (cid,)).fetchone()
        return json.loads(row[0]) if row else None

    def cache_metadata(self, cid: str, metadata: dict) -> None:
        try:
            self.conn.execute("""
                INSERT INTO ipfs_metadata_cache(cid, metadata, cached_at) VALUES(?,?,?)
                ON CONFLICT(cid) DO UPDATE SET metadata=excluded.metadata, cached_at=excluded.cached_at
            """, (cid, json.dumps(metadata), int(time.time())))
        except sqlite3.Error as e:
            logger.warning(f"[store] failed to cache metadata {cid}: {e}")

    # ---------- reads ----------
    def get_nft(self, token_id: int) -> Optional[Dict[str, Any]]:
        nft = _row(self.conn.execute("SELECT * FROM nfts WHERE token_id=?", (int(token_id),)).fetchone())
        if nft and nft["metadata"] is not None:
            nft["metadata"] = json.loads(nft["metadata"])
        return nft

    def get_listing(self, nft_contract: str, token_id: int) -> Optional[Dict[str, Any]]:
        listing = _row(self.conn.execute(
            "SELECT * FROM marketplace_listings WHERE nft_contract=? AND token_id=?",
            (nft_contract.lower(), int(token_id))).fetchone())
        if listing:
            listing["active"] = bool(listing["active"])
        return listing

    def get_sales(self, nft_contract: Optional[str] = None, token_id: Optional[int] = None) -> List[Dict[str, Any]]:
        sql, params = "SELECT * FROM trading_history", []
        clauses = []
        if nft_contract is not None:
            clauses.append("nft_contract=?"); params.append(nft_contract.lower())
        if token_id is not None:
            clauses.append("token_id=?"); params.append(int(token_id))
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id ASC"
        return [_row(r) for r in self.conn.execute(sql, params).fetchall()]
