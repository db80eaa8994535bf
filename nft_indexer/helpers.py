from datetime import datetime, timezone
from typing import Optional

from web3 import AsyncWeb3
from hexbytes import HexBytes

from nft_indexer.config import ZERO_ADDR

IPFS_PREFIX = "ipfs://"


# ---------------- helpers ----------------
def to_hex(x):
    if x is None: return None
    if isinstance(x, (HexBytes, bytes)):
        h = x.hex()
        return h if h.startswith("0x") else "0x" + h
    if isinstance(x, int): return hex(x)
    return str(x)

def to_addr(x):
    if x is None: return None
    return AsyncWeb3.to_checksum_address(x)

def lower_addr(x) -> Optional[str]:
    # addresses are persisted and broadcast lowercase
    if x is None: return None
    return str(x).lower()

def is_zero_addr(x) -> bool:
    return lower_addr(x) == ZERO_ADDR

def hex_to_int(x):
    if x is None: return None
    if isinstance(x, int): return x
    if isinstance(x, bytes): return int.from_bytes(x, "big")
    s = str(x)
    return int(s, 16) if s.startswith("0x") else int(s)

def ipfs_cid(token_uri: Optional[str]) -> Optional[str]:
    """Return the CID of an ``ipfs://`` token URI, None for anything else."""
    if not token_uri or not token_uri.startswith(IPFS_PREFIX):
        return None
    return token_uri[len(IPFS_PREFIX):] or None

def block_time(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)

def short(addr: Optional[str]) -> str:
    return f"{addr[:10]}..." if addr else "?"
