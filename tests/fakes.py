"""Test doubles for the chain reader and notification sink, plus log builders."""

import asyncio
from collections import defaultdict

from nft_indexer.chain import RoyaltyInfo
from nft_indexer.events import EventKind

NFT = "0x" + "11" * 20
MARKET = "0x" + "22" * 20
CREATOR = "0x" + "cc" * 20
ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
ZERO = "0x" + "00" * 20

ONE_ETH = 10**18
GENESIS_TS = 1_700_000_000


class FakeChain:
    """In-memory chain: logs per kind, a settable head and royalty terms."""

    def __init__(self, height=0, royalty_bps=250, royalty_receiver=CREATOR):
        self.height = height
        self.logs = defaultdict(list)
        self.royalty_bps = royalty_bps
        self.royalty_receiver = royalty_receiver
        self.fail_height = False
        self.fail_royalty = False
        self.gate = None
        self.height_calls = 0
        self.fetch_calls = []

    def add(self, kind, block, log_index, tx=None, **args):
        address = NFT if kind.source.value == "nft" else MARKET
        self.logs[kind].append({
            "args": args,
            "event": kind.value,
            "address": address,
            "blockNumber": block,
            "logIndex": log_index,
            "transactionHash": tx or f"0x{block:032x}{log_index:032x}",
        })
        self.height = max(self.height, block)

    async def current_height(self):
        self.height_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_height:
            raise ConnectionError("provider unavailable")
        return self.height

    async def fetch_logs(self, kind, from_block, to_block):
        self.fetch_calls.append((kind, from_block, to_block))
        return [lg for lg in self.logs[kind] if from_block <= lg["blockNumber"] <= to_block]

    async def read_royalty_info(self, token_id, sale_basis=10_000):
        if self.fail_royalty:
            raise ConnectionError("royaltyInfo reverted")
        return RoyaltyInfo(self.royalty_receiver, self.royalty_bps * sale_basis // 10_000)

    async def block_timestamp(self, block_number):
        return GENESIS_TS + 12 * block_number


class RecordingSink:
    def __init__(self):
        self.payloads = []

    def broadcast(self, payload):
        self.payloads.append(payload)

    @property
    def types(self):
        return [p.type for p in self.payloads]


# ---------- log builders ----------
def mint(chain, block, idx, token_id, owner, uri="ipfs://QmToken"):
    # ERC721 _mint emits Transfer(0, owner, id) before the contract's Minted
    chain.add(EventKind.TRANSFER, block, idx, **{"from": ZERO, "to": owner, "tokenId": token_id})
    chain.add(EventKind.MINTED, block, idx + 1, tokenId=token_id, owner=owner, tokenURI=uri)


def list_token(chain, block, idx, token_id, seller, price):
    chain.add(EventKind.LISTED, block, idx, nftContract=NFT, tokenId=token_id, seller=seller, price=price)


def sell(chain, block, idx, token_id, seller, buyer, price):
    chain.add(EventKind.SOLD, block, idx, nftContract=NFT, tokenId=token_id,
              seller=seller, buyer=buyer, price=price)


def projection(store):
    """NFT and listing rows without bookkeeping timestamps."""
    drop = {"created_at", "updated_at"}
    nfts = [{k: v for k, v in dict(r).items() if k not in drop}
            for r in store.conn.execute("SELECT * FROM nfts ORDER BY token_id").fetchall()]
    listings = [{k: v for k, v in dict(r).items() if k not in drop}
                for r in store.conn.execute(
                    "SELECT * FROM marketplace_listings ORDER BY nft_contract, token_id").fetchall()]
    return nfts, listings


async def settle():
    for _ in range(3):
        await asyncio.sleep(0)
