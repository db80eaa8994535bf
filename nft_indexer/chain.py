import json
import logging
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3

from nft_indexer import config
from nft_indexer.errors import ConfigError
from nft_indexer.events import EVENT_INPUTS, EventKind, Source
from nft_indexer.helpers import lower_addr, to_addr

logger = logging.getLogger(__name__)

SALE_BASIS = 10_000
MAX_TS_CACHE = 1_000


def _event(name, inputs):
    return {
        "type": "event", "name": name, "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": i} for (n, t, i) in inputs],
    }

# fallback fragments when no compiled artifacts are shipped in ABI_DIR
GAME_NFT_ABI = [
    _event("Minted", [("tokenId", "uint256", True), ("owner", "address", True), ("tokenURI", "string", False)]),
    _event("Transfer", [("from", "address", True), ("to", "address", True), ("tokenId", "uint256", True)]),
    _event("DefaultRoyaltyUpdated", [("receiver", "address", True), ("feeNumerator", "uint96", False)]),
    _event("TokenRoyaltyUpdated", [("tokenId", "uint256", True), ("receiver", "address", True),
                                   ("feeNumerator", "uint96", False)]),
    {"type": "function", "name": "royaltyInfo", "stateMutability": "view",
     "inputs": [{"name": "tokenId", "type": "uint256"}, {"name": "salePrice", "type": "uint256"}],
     "outputs": [{"name": "receiver", "type": "address"}, {"name": "royaltyAmount", "type": "uint256"}]},
    {"type": "function", "name": "name", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "string"}]},
    {"type": "function", "name": "symbol", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "string"}]},
]

MARKETPLACE_ABI = [
    _event("Listed", [("nftContract", "address", True), ("tokenId", "uint256", True),
                      ("seller", "address", True), ("price", "uint256", False)]),
    _event("Sold", [("nftContract", "address", True), ("tokenId", "uint256", True),
                    ("seller", "address", False), ("buyer", "address", True), ("price", "uint256", False)]),
    _event("Cancelled", [("nftContract", "address", True), ("tokenId", "uint256", True),
                         ("seller", "address", True)]),
    _event("PriceUpdated", [("nftContract", "address", True), ("tokenId", "uint256", True),
                            ("oldPrice", "uint256", False), ("newPrice", "uint256", False)]),
]

BUILTIN_ABIS = {"GameNFT": GAME_NFT_ABI, "Marketplace": MARKETPLACE_ABI}


def load_abi(contract_name: str, abi_dir: Optional[str] = None) -> List[Dict[str, Any]]:
    """Hardhat artifact or bare ABI array from ``abi_dir``; built-in fragments otherwise."""
    p = pathlib.Path(abi_dir or config.ABI_DIR) / f"{contract_name}.json"
    if not p.exists():
        logger.info(f"[abi] {p} not found; using built-in {contract_name} ABI")
        return BUILTIN_ABIS[contract_name]
    artifact = json.loads(p.read_text())
    return artifact["abi"] if isinstance(artifact, dict) else artifact


def check_event_inputs(abi: List[Dict[str, Any]], source: Source) -> None:
    """Raise ConfigError unless every indexed event of ``source`` has the input names the decoder reads."""
    events = {e.get("name"): e for e in abi if e.get("type") == "event"}
    for kind in EventKind:
        if kind.source is not source:
            continue
        entry = events.get(kind.value)
        if entry is None:
            raise ConfigError(f"ABI has no {kind.value} event")
        names = tuple(i.get("name") for i in entry.get("inputs", []))
        if names != EVENT_INPUTS[kind]:
            raise ConfigError(f"{kind.value} inputs {names} do not match expected {EVENT_INPUTS[kind]}")


@dataclass(frozen=True)
class RoyaltyInfo:
    receiver: Optional[str]
    amount: int


class ChainReader(Protocol):
    async def current_height(self) -> int: ...

    async def fetch_logs(self, kind: EventKind, from_block: int, to_block: int) -> Sequence[Any]: ...

    async def read_royalty_info(self, token_id: int, sale_basis: int = SALE_BASIS) -> RoyaltyInfo: ...

    async def block_timestamp(self, block_number: int) -> int: ...


class Web3ChainReader:
    """JSON-RPC access to the NFT and marketplace contracts."""

    def __init__(self, w3: AsyncWeb3, nft_address: str, marketplace_address: str,
                 abi_dir: Optional[str] = None):
        self.w3 = w3
        nft_abi, market_abi = load_abi("GameNFT", abi_dir), load_abi("Marketplace", abi_dir)
        check_event_inputs(nft_abi, Source.NFT)
        check_event_inputs(market_abi, Source.MARKETPLACE)
        self.nft = w3.eth.contract(address=to_addr(nft_address), abi=nft_abi)
        self.marketplace = w3.eth.contract(address=to_addr(marketplace_address), abi=market_abi)
        self._ts_cache: Dict[int, int] = {}

    @classmethod
    def from_config(cls) -> "Web3ChainReader":
        w3 = AsyncWeb3(AsyncHTTPProvider(config.RPC_URL))
        return cls(w3, config.NFT_CONTRACT_ADDRESS, config.MARKETPLACE_CONTRACT_ADDRESS)

    @property
    def contract_addresses(self) -> List[str]:
        return [lower_addr(self.nft.address), lower_addr(self.marketplace.address)]

    def _contract(self, kind: EventKind):
        return self.nft if kind.source is Source.NFT else self.marketplace

    async def current_height(self) -> int:
        return int(await self.w3.eth.block_number)

    async def fetch_logs(self, kind, from_block, to_block):
        event = getattr(self._contract(kind).events, kind.value)()
        return await event.get_logs(from_block=from_block, to_block=to_block)

    async def read_royalty_info(self, token_id, sale_basis=SALE_BASIS):
        receiver, amount = await self.nft.functions.royaltyInfo(int(token_id), int(sale_basis)).call()
        return RoyaltyInfo(receiver=lower_addr(receiver), amount=int(amount))

    async def block_timestamp(self, block_number):
        ts = self._ts_cache.get(block_number)
        if ts is None:
            b = await self.w3.eth.get_block(block_number)
            ts = int(b["timestamp"])
            if len(self._ts_cache) >= MAX_TS_CACHE:
                self._ts_cache.clear()
            self._ts_cache[block_number] = ts
        return ts

    async def check_connection(self, expected_chain_id: int) -> bool:
        try:
            chain_id = await self.w3.eth.chain_id
            head = await self.w3.eth.block_number
            if int(chain_id) != int(expected_chain_id):
                logger.error(f"[chain] chain id mismatch: expected {expected_chain_id}, got {chain_id}")
                return False
            logger.info(f"[chain] connected: chain id {chain_id}, head={head}")
            name = await self.nft.functions.name().call()
            symbol = await self.nft.functions.symbol().call()
            logger.info(f"[chain] GameNFT contract connected: {name} ({symbol})")
            return True
        except Exception as e:
            logger.error(f"[chain] connection check failed: {e}")
            return False
