"""Decoded chain events and the per-window merge.

Each watched event kind has a frozen payload record; a ``ChainEvent`` pairs one
of them with its position in the chain. ``merge_logs`` turns the per-kind log
arrays of one window into a single list in emission order.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from nft_indexer.helpers import hex_to_int, lower_addr, to_hex

logger = logging.getLogger(__name__)


class Source(str, Enum):
    NFT = "nft"
    MARKETPLACE = "marketplace"


class EventKind(str, Enum):
    MINTED = "Minted"
    TRANSFER = "Transfer"
    DEFAULT_ROYALTY_UPDATED = "DefaultRoyaltyUpdated"
    TOKEN_ROYALTY_UPDATED = "TokenRoyaltyUpdated"
    LISTED = "Listed"
    SOLD = "Sold"
    CANCELLED = "Cancelled"
    PRICE_UPDATED = "PriceUpdated"

    @property
    def source(self) -> Source:
        if self in _NFT_KINDS:
            return Source.NFT
        return Source.MARKETPLACE


_NFT_KINDS = frozenset({
    EventKind.MINTED,
    EventKind.TRANSFER,
    EventKind.DEFAULT_ROYALTY_UPDATED,
    EventKind.TOKEN_ROYALTY_UPDATED,
})


# ---------- payloads ----------
@dataclass(frozen=True)
class Minted:
    token_id: int
    owner: str
    token_uri: str


@dataclass(frozen=True)
class Transfer:
    sender: str
    recipient: str
    token_id: int


@dataclass(frozen=True)
class DefaultRoyaltyUpdated:
    receiver: str
    fee_numerator: int


@dataclass(frozen=True)
class TokenRoyaltyUpdated:
    token_id: int
    receiver: str
    fee_numerator: int


@dataclass(frozen=True)
class Listed:
    nft_contract: str
    token_id: int
    seller: str
    price_wei: int


@dataclass(frozen=True)
class Sold:
    nft_contract: str
    token_id: int
    seller: str
    buyer: str
    price_wei: int


@dataclass(frozen=True)
class Cancelled:
    nft_contract: str
    token_id: int
    seller: str


@dataclass(frozen=True)
class PriceUpdated:
    nft_contract: str
    token_id: int
    old_price_wei: int
    new_price_wei: int


Payload = Union[
    Minted, Transfer, DefaultRoyaltyUpdated, TokenRoyaltyUpdated,
    Listed, Sold, Cancelled, PriceUpdated,
]


# input names _decode reads, in ABI order; loaded ABIs are checked against these
EVENT_INPUTS = {
    EventKind.MINTED: ("tokenId", "owner", "tokenURI"),
    EventKind.TRANSFER: ("from", "to", "tokenId"),
    EventKind.DEFAULT_ROYALTY_UPDATED: ("receiver", "feeNumerator"),
    EventKind.TOKEN_ROYALTY_UPDATED: ("tokenId", "receiver", "feeNumerator"),
    EventKind.LISTED: ("nftContract", "tokenId", "seller", "price"),
    EventKind.SOLD: ("nftContract", "tokenId", "seller", "buyer", "price"),
    EventKind.CANCELLED: ("nftContract", "tokenId", "seller"),
    EventKind.PRICE_UPDATED: ("nftContract", "tokenId", "oldPrice", "newPrice"),
}


def _decode(kind: EventKind, args: Mapping[str, Any]) -> Payload:
    if kind is EventKind.MINTED:
        return Minted(int(args["tokenId"]), lower_addr(args["owner"]), str(args["tokenURI"]))
    if kind is EventKind.TRANSFER:
        return Transfer(lower_addr(args["from"]), lower_addr(args["to"]), int(args["tokenId"]))
    if kind is EventKind.DEFAULT_ROYALTY_UPDATED:
        return DefaultRoyaltyUpdated(lower_addr(args["receiver"]), int(args["feeNumerator"]))
    if kind is EventKind.TOKEN_ROYALTY_UPDATED:
        return TokenRoyaltyUpdated(int(args["tokenId"]), lower_addr(args["receiver"]),
                                   int(args["feeNumerator"]))
    if kind is EventKind.LISTED:
        return Listed(lower_addr(args["nftContract"]), int(args["tokenId"]),
                      lower_addr(args["seller"]), int(args["price"]))
    if kind is EventKind.SOLD:
        return Sold(lower_addr(args["nftContract"]), int(args["tokenId"]),
                    lower_addr(args["seller"]), lower_addr(args["buyer"]), int(args["price"]))
    if kind is EventKind.CANCELLED:
        return Cancelled(lower_addr(args["nftContract"]), int(args["tokenId"]),
                         lower_addr(args["seller"]))
    if kind is EventKind.PRICE_UPDATED:
        return PriceUpdated(lower_addr(args["nftContract"]), int(args["tokenId"]),
                            int(args["oldPrice"]), int(args["newPrice"]))
    raise ValueError(f"unknown event kind {kind!r}")


@dataclass(frozen=True)
class ChainEvent:
    kind: EventKind
    contract_address: str
    block_number: int
    log_index: int
    transaction_hash: str
    payload: Payload

    @property
    def order_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    @classmethod
    def from_log(cls, kind: EventKind, log: Mapping[str, Any]) -> Optional["ChainEvent"]:
        """Build an event from a decoded web3 log, or None if it has no usable payload."""
        args = log.get("args")
        if not args:
            return None
        try:
            payload = _decode(kind, args)
            block_number = hex_to_int(log["blockNumber"])
            if block_number is None:
                raise ValueError("log has no block number")
            log_index = hex_to_int(log.get("logIndex")) or 0
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[merge] dropping undecodable {kind.value} log "
                           f"tx={to_hex(log.get('transactionHash'))}: {e!r}")
            return None
        return cls(
            kind=kind,
            contract_address=lower_addr(log.get("address")),
            block_number=block_number,
            log_index=log_index,
            transaction_hash=to_hex(log.get("transactionHash")),
            payload=payload,
        )


def merge_logs(batches: Mapping[EventKind, Iterable[Mapping[str, Any]]]) -> List[ChainEvent]:
    """Merge per-kind log arrays of one window into (block, logIndex) order."""
    merged: List[ChainEvent] = []
    for kind, logs in batches.items():
        for lg in logs or ():
            ev = ChainEvent.from_log(kind, lg)
            if ev is not None:
                merged.append(ev)
    merged.sort(key=lambda e: e.order_key)
    return merged


def window_ranges(start: int, end: int, size: int) -> Iterator[Tuple[int, int]]:
    """Split the inclusive range [start, end] into inclusive windows of at most ``size`` blocks."""
    if size < 1:
        raise ValueError("window size must be positive")
    lo = start
    while lo <= end:
        hi = min(lo + size - 1, end)
        yield lo, hi
        lo = hi + 1

