"""Projection of decoded chain events onto the store.

One handler per ``EventKind``. A handler writes through the store and returns
the notification to broadcast, or None when the event has no effect. Failures
stay inside the event that caused them: ``dispatch`` records them in the
window's ``WindowReport`` and carries on with the next event.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from nft_indexer import config, notify
from nft_indexer.chain import SALE_BASIS, ChainReader, RoyaltyInfo
from nft_indexer.events import (
    Cancelled, ChainEvent, DefaultRoyaltyUpdated, EventKind, Listed, Minted,
    PriceUpdated, Sold, TokenRoyaltyUpdated, Transfer,
)
from nft_indexer.fees import format_ether, platform_fee, royalty_fee
from nft_indexer.helpers import block_time, ipfs_cid, is_zero_addr, short
from nft_indexer.notify import Notification, NotificationSink
from nft_indexer.store import ProjectionStore

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"


@dataclass
class EventFailure:
    event: ChainEvent
    error: BaseException

    def __str__(self):
        ev = self.event
        return f"{ev.kind.value}@{ev.block_number}:{ev.log_index} ({self.error!r})"


@dataclass
class WindowReport:
    from_block: int
    to_block: int
    applied: List[ChainEvent] = field(default_factory=list)
    skipped: List[ChainEvent] = field(default_factory=list)
    failed: List[EventFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.applied) + len(self.skipped) + len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        return (f"blocks {self.from_block}-{self.to_block}: {len(self.applied)} applied, "
                f"{len(self.skipped)} skipped, {len(self.failed)} failed")


class EventDispatcher:
    def __init__(self, store: ProjectionStore, chain: ChainReader, sink: NotificationSink,
                 metadata=None, platform_fee_bps: int = None):
        self.store = store
        self.chain = chain
        self.sink = sink
        self.metadata = metadata
        self.platform_fee_bps = config.PLATFORM_FEE_BPS if platform_fee_bps is None else platform_fee_bps

    async def dispatch(self, events: Iterable[ChainEvent], from_block: int, to_block: int) -> WindowReport:
        report = WindowReport(from_block, to_block)
        for ev in events:
            try:
                outcome = await self.apply(ev)
            except Exception as e:
                logger.exception(f"[dispatch] error processing {ev.kind.value} event "
                                 f"at {ev.block_number}:{ev.log_index}")
                report.failed.append(EventFailure(ev, e))
                continue
            if outcome is Outcome.APPLIED:
                report.applied.append(ev)
            else:
                report.skipped.append(ev)
        return report

    async def apply(self, ev: ChainEvent) -> Outcome:
        payload = await _HANDLERS[ev.kind](self, ev, ev.payload)
        if payload is None:
            return Outcome.SKIPPED
        self._notify(payload)
        return Outcome.APPLIED

    # ---------- shared ----------
    def _notify(self, payload: Notification):
        try:
            self.sink.broadcast(payload)
        except Exception as e:
            logger.warning(f"[notify] dropped {payload.type}: {e}")

    async def _timestamp(self, ev: ChainEvent) -> int:
        return await self.chain.block_timestamp(ev.block_number)

    async def _royalty(self, token_id: int) -> Optional[RoyaltyInfo]:
        try:
            return await self.chain.read_royalty_info(token_id, SALE_BASIS)
        except Exception as e:
            logger.warning(f"[royalty] could not fetch royalty for token {token_id}: {e}")
            return None

    # ---------- nft contract ----------
    async def _on_minted(self, ev: ChainEvent, p: Minted):
        cid = ipfs_cid(p.token_uri)
        metadata = None
        if cid and self.metadata is not None:
            try:
                metadata = await self.metadata.get_metadata(cid)
            except Exception as e:
                # test URIs routinely point at nothing
                logger.debug(f"[mint] no metadata for {cid}: {e}")

        ts = await self._timestamp(ev)
        royalty = await self._royalty(p.token_id)
        self.store.create_nft(
            p.token_id, p.owner, p.token_uri,
            ipfs_cid=cid,
            metadata=metadata,
            royalty_receiver=royalty.receiver if royalty else None,
            royalty_amount=royalty.amount if royalty else None,
            minted_at=block_time(ts),
        )
        logger.info(f"[mint] token #{p.token_id} -> {short(p.owner)}")
        return notify.NftMinted(token_id=p.token_id, owner=p.owner, token_uri=p.token_uri,
                                timestamp=ts * 1000, block_number=ev.block_number)

    async def _on_transfer(self, ev: ChainEvent, p: Transfer):
        if is_zero_addr(p.sender):
            # mints are projected from Minted
            return None
        self.store.update_nft_owner(p.token_id, p.recipient)
        ts = await self._timestamp(ev)
        logger.info(f"[transfer] token #{p.token_id} {short(p.sender)} -> {short(p.recipient)}")
        return notify.NftTransferred(token_id=p.token_id, from_=p.sender, to=p.recipient,
                                     timestamp=ts * 1000, block_number=ev.block_number)

    async def _on_default_royalty_updated(self, ev: ChainEvent, p: DefaultRoyaltyUpdated):
        ts = await self._timestamp(ev)
        logger.info(f"[royalty] default -> {short(p.receiver)} at {p.fee_numerator / 100}%")
        return notify.DefaultRoyaltyUpdated(receiver=p.receiver, fee_numerator=p.fee_numerator,
                                            timestamp=ts * 1000, block_number=ev.block_number)

    async def _on_token_royalty_updated(self, ev: ChainEvent, p: TokenRoyaltyUpdated):
        self.store.update_nft_royalty(p.token_id, p.receiver, p.fee_numerator)
        ts = await self._timestamp(ev)
        logger.info(f"[royalty] token #{p.token_id} -> {short(p.receiver)} at {p.fee_numerator / 100}%")
        return notify.TokenRoyaltyUpdated(token_id=p.token_id, receiver=p.receiver,
                                          fee_numerator=p.fee_numerator,
                                          timestamp=ts * 1000, block_number=ev.block_number)

    # ---------- marketplace ----------
    async def _on_listed(self, ev: ChainEvent, p: Listed):
        ts = await self._timestamp(ev)
        price_wei = str(p.price_wei)
        self.store.create_listing(p.nft_contract, p.token_id, p.seller, price_wei, block_time(ts))
        logger.info(f"[listed] token #{p.token_id} for {format_ether(p.price_wei)} ETH by {short(p.seller)}")
        return notify.NftListed(token_id=p.token_id, seller=p.seller, price=price_wei,
                                timestamp=ts * 1000, block_number=ev.block_number)

    async def _on_sold(self, ev: ChainEvent, p: Sold):
        ts = await self._timestamp(ev)
        fee_wei = platform_fee(p.price_wei, self.platform_fee_bps)
        royalty = await self._royalty(p.token_id)
        royalty_wei = royalty_fee(p.price_wei, royalty.amount if royalty else 0)

        self.store.cancel_listing(p.nft_contract, p.token_id)
        self.store.record_sale(
            p.nft_contract, p.token_id, p.seller, p.buyer,
            str(p.price_wei), str(fee_wei), str(royalty_wei),
            ev.transaction_hash, block_time(ts), log_index=ev.log_index,
        )
        self.store.update_nft_owner(p.token_id, p.buyer)
        logger.info(f"[sold] token #{p.token_id} for {format_ether(p.price_wei)} ETH: "
                    f"{short(p.seller)} -> {short(p.buyer)}")
        return notify.NftSold(token_id=p.token_id, seller=p.seller, buyer=p.buyer,
                              price=str(p.price_wei), platform_fee=str(fee_wei),
                              royalty_fee=str(royalty_wei),
                              timestamp=ts * 1000, block_number=ev.block_number)

    async def _on_cancelled(self, ev: ChainEvent, p: Cancelled):
        self.store.cancel_listing(p.nft_contract, p.token_id)
        ts = await self._timestamp(ev)
        logger.info(f"[cancelled] token #{p.token_id} by {short(p.seller)}")
        return notify.NftCancelled(token_id=p.token_id, seller=p.seller,
                                   timestamp=ts * 1000, block_number=ev.block_number)

    async def _on_price_updated(self, ev: ChainEvent, p: PriceUpdated):
        self.store.update_listing_price(p.nft_contract, p.token_id, str(p.new_price_wei))
        ts = await self._timestamp(ev)
        logger.info(f"[price] token #{p.token_id} {format_ether(p.old_price_wei)} -> "
                    f"{format_ether(p.new_price_wei)} ETH")
        return notify.PriceUpdated(token_id=p.token_id, old_price=str(p.old_price_wei),
                                   new_price=str(p.new_price_wei),
                                   timestamp=ts * 1000, block_number=ev.block_number)


_HANDLERS = {
    EventKind.MINTED: EventDispatcher._on_minted,
    EventKind.TRANSFER: EventDispatcher._on_transfer,
    EventKind.DEFAULT_ROYALTY_UPDATED: EventDispatcher._on_default_royalty_updated,
    EventKind.TOKEN_ROYALTY_UPDATED: EventDispatcher._on_token_royalty_updated,
    EventKind.LISTED: EventDispatcher._on_listed,
    EventKind.SOLD: EventDispatcher._on_sold,
    EventKind.CANCELLED: EventDispatcher._on_cancelled,
    EventKind.PRICE_UPDATED: EventDispatcher._on_price_updated,
}

_missing = [k.value for k in EventKind if k not in _HANDLERS]
if _missing:
    raise RuntimeError(f"no dispatcher handler for event kinds: {', '.join(_missing)}")
