import logging
import math
import sqlite3
import time

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Last fully-processed block per watched contract (table ``sync_status``).

    Storage failures never propagate: a failed read reports block 0 (a full
    re-scan from genesis) and a failed write is skipped.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_checkpoint(self, contract: str) -> int:
        key = contract.lower()
        try:
            row = self.conn.execute(
                "SELECT last_synced_block FROM sync_status WHERE contract_address=?", (key,)
            ).fetchone()
            if row is not None:
                return int(row[0])
            self.conn.execute("""
                INSERT INTO sync_status(contract_address, last_synced_block, updated_at)
                VALUES(?,?,?)
                ON CONFLICT(contract_address) DO NOTHING
            """, (key, 0, int(time.time())))
            return 0
        except sqlite3.Error as e:
            logger.error(f"[checkpoint] read failed for {key}, treating as genesis: {e}")
            return 0

    def set_checkpoint(self, contract: str, block) -> None:
        if isinstance(block, bool) or not isinstance(block, (int, float)) \
                or not math.isfinite(block) or block < 0:
            logger.warning(f"[checkpoint] ignoring invalid block {block!r} for {contract}")
            return
        key = contract.lower()
        try:
            # monotonic: a lower block never replaces a higher one
            self.conn.execute("""
                INSERT INTO sync_status(contract_address, last_synced_block, updated_at)
                VALUES(?,?,?)
                ON CONFLICT(contract_address) DO UPDATE SET
                  last_synced_block=excluded.last_synced_block,
                  updated_at=excluded.updated_at
                WHERE excluded.last_synced_block >= sync_status.last_synced_block
            """, (key, int(block), int(time.time())))
        except sqlite3.Error as e:
            logger.error(f"[checkpoint] write of block {block} failed for {key}: {e}")
