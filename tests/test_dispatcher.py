import pytest

from nft_indexer.dispatcher import EventDispatcher, Outcome
from nft_indexer.errors import MetadataError
from nft_indexer.events import EventKind, merge_logs

from fakes import ALICE, BOB, CREATOR, GENESIS_TS, NFT, ONE_ETH, ZERO, FakeChain, list_token, mint, sell


def events_of(chain):
    return merge_logs(chain.logs)


class StubResolver:
    def __init__(self, metadata=None, fail=False):
        self.metadata = metadata or {"name": "Sword"}
        self.fail = fail
        self.calls = []

    async def get_metadata(self, cid):
        self.calls.append(cid)
        if self.fail:
            raise MetadataError(cid, "gateway timeout")
        return self.metadata


@pytest.mark.asyncio
async def test_minted_creates_nft_with_royalty_and_metadata(store, chain, sink):
    resolver = StubResolver()
    dispatcher = EventDispatcher(store, chain, sink, metadata=resolver)
    mint(chain, 3, 0, 7, ALICE, uri="ipfs://QmSword")

    report = await dispatcher.dispatch(events_of(chain), 1, 3)

    nft = store.get_nft(7)
    assert nft["owner"] == ALICE
    assert nft["ipfs_cid"] == "QmSword"
    assert nft["metadata"] == {"name": "Sword"}
    assert nft["royalty_receiver"] == CREATOR
    assert nft["royalty_amount"] == 250
    assert resolver.calls == ["QmSword"]
    # the zero-address Transfer is skipped, the Minted applied
    assert len(report.applied) == 1 and len(report.skipped) == 1
    minted = sink.payloads[0]
    assert minted.type == "nftMinted"
    assert minted.timestamp == (GENESIS_TS + 36) * 1000
    assert minted.block_number == 3


@pytest.mark.asyncio
async def test_metadata_and_royalty_failures_are_not_fatal(store, chain, sink):
    chain.fail_royalty = True
    dispatcher = EventDispatcher(store, chain, sink, metadata=StubResolver(fail=True))
    mint(chain, 1, 0, 1, ALICE)

    report = await dispatcher.dispatch(events_of(chain), 1, 1)

    assert report.ok
    nft = store.get_nft(1)
    assert nft["metadata"] is None
    assert nft["royalty_receiver"] is None and nft["royalty_amount"] is None
    assert sink.types == ["nftMinted"]


@pytest.mark.asyncio
async def test_non_ipfs_uri_skips_metadata_lookup(store, chain, sink):
    resolver = StubResolver()
    dispatcher = EventDispatcher(store, chain, sink, metadata=resolver)
    mint(chain, 1, 0, 1, ALICE, uri="https://example.com/1.json")

    await dispatcher.dispatch(events_of(chain), 1, 1)

    assert resolver.calls == []
    assert store.get_nft(1)["ipfs_cid"] is None


@pytest.mark.asyncio
async def test_mint_and_zero_transfer_set_owner_once(store, chain, sink, dispatcher):
    mint(chain, 1, 0, 1, ALICE)
    calls = []
    original = store.update_nft_owner
    store.update_nft_owner = lambda *a: (calls.append(a), original(*a))

    await dispatcher.dispatch(events_of(chain), 1, 1)

    assert calls == []
    assert store.get_nft(1)["owner"] == ALICE
    assert sink.types == ["nftMinted"]


@pytest.mark.asyncio
async def test_transfer_moves_ownership(store, chain, sink, dispatcher):
    mint(chain, 1, 0, 1, ALICE)
    chain.add(EventKind.TRANSFER, 2, 0, **{"from": ALICE, "to": BOB, "tokenId": 1})

    await dispatcher.dispatch(events_of(chain), 1, 2)

    assert store.get_nft(1)["owner"] == BOB
    transferred = sink.payloads[-1]
    assert transferred.type == "nftTransferred"
    assert transferred.from_ == ALICE and transferred.to == BOB


@pytest.mark.asyncio
async def test_listing_lifecycle(store, chain, sink, dispatcher):
    list_token(chain, 1, 0, 5, ALICE, ONE_ETH)
    chain.add(EventKind.PRICE_UPDATED, 2, 0, nftContract=NFT, tokenId=5,
              oldPrice=ONE_ETH, newPrice=2 * ONE_ETH)
    chain.add(EventKind.CANCELLED, 3, 0, nftContract=NFT, tokenId=5, seller=ALICE)

    await dispatcher.dispatch(events_of(chain), 1, 3)

    listing = store.get_listing(NFT, 5)
    assert listing["price"] == str(2 * ONE_ETH)
    assert listing["active"] is False
    assert sink.types == ["nftListed", "priceUpdated", "nftCancelled"]
    assert sink.payloads[1].old_price == str(ONE_ETH)


@pytest.mark.asyncio
async def test_relisting_replaces_the_row(store, chain, sink, dispatcher):
    list_token(chain, 1, 0, 5, ALICE, ONE_ETH)
    chain.add(EventKind.CANCELLED, 2, 0, nftContract=NFT, tokenId=5, seller=ALICE)
    list_token(chain, 3, 0, 5, ALICE, 3 * ONE_ETH)

    await dispatcher.dispatch(events_of(chain), 1, 3)

    rows = store.conn.execute("SELECT * FROM marketplace_listings").fetchall()
    assert len(rows) == 1
    listing = store.get_listing(NFT, 5)
    assert listing["active"] is True
    assert listing["price"] == str(3 * ONE_ETH)


@pytest.mark.asyncio
async def test_sold_computes_fees_in_wei(store, chain, sink, dispatcher):
    mint(chain, 1, 0, 7, ALICE)
    list_token(chain, 2, 0, 7, ALICE, ONE_ETH)
    sell(chain, 3, 0, 7, ALICE, BOB, ONE_ETH)

    await dispatcher.dispatch(events_of(chain), 1, 3)

    [sale] = store.get_sales(NFT, 7)
    assert sale["price"] == str(ONE_ETH)
    assert sale["platform_fee"] == str(25 * 10**15)
    assert sale["royalty_fee"] == str(25 * 10**15)
    assert sale["buyer"] == BOB
    assert sale["log_index"] == 0
    assert store.get_listing(NFT, 7)["active"] is False
    assert store.get_nft(7)["owner"] == BOB
    sold = sink.payloads[-1]
    assert (sold.price, sold.platform_fee, sold.royalty_fee) == (
        str(ONE_ETH), str(25 * 10**15), str(25 * 10**15))


@pytest.mark.asyncio
async def test_sold_without_royalty_read_charges_no_royalty(store, sink):
    chain = FakeChain()
    chain.fail_royalty = True
    dispatcher = EventDispatcher(store, chain, sink, platform_fee_bps=250)
    sell(chain, 1, 0, 7, ALICE, BOB, ONE_ETH)

    report = await dispatcher.dispatch(events_of(chain), 1, 1)

    assert report.ok
    [sale] = store.get_sales()
    assert sale["royalty_fee"] == "0"
    assert sale["platform_fee"] == str(25 * 10**15)


@pytest.mark.asyncio
async def test_royalty_updates(store, chain, sink, dispatcher):
    mint(chain, 1, 0, 3, ALICE)
    chain.add(EventKind.TOKEN_ROYALTY_UPDATED, 2, 0, tokenId=3, receiver=BOB, feeNumerator=500)
    chain.add(EventKind.DEFAULT_ROYALTY_UPDATED, 2, 1, receiver=CREATOR, feeNumerator=300)

    await dispatcher.dispatch(events_of(chain), 1, 2)

    nft = store.get_nft(3)
    assert nft["royalty_receiver"] == BOB and nft["royalty_amount"] == 500
    assert sink.types == ["nftMinted", "tokenRoyaltyUpdated", "defaultRoyaltyUpdated"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_abort_window(store, chain, sink, dispatcher):
    mint(chain, 1, 0, 1, ALICE)
    list_token(chain, 2, 0, 1, ALICE, ONE_ETH)
    mint(chain, 3, 0, 2, BOB)

    def broken(*a, **kw):
        raise RuntimeError("listing table locked")
    store.create_listing = broken

    report = await dispatcher.dispatch(events_of(chain), 1, 3)

    assert len(report.failed) == 1
    failure = report.failed[0]
    assert failure.event.kind is EventKind.LISTED
    assert isinstance(failure.error, RuntimeError)
    assert store.get_nft(2)["owner"] == BOB
    assert sink.types == ["nftMinted", "nftMinted"]
    assert "1 failed" in report.summary()


@pytest.mark.asyncio
async def test_broadcast_failure_is_swallowed(store, chain):
    class BrokenSink:
        def broadcast(self, payload):
            raise ConnectionResetError("socket gone")

    dispatcher = EventDispatcher(store, chain, BrokenSink())
    mint(chain, 1, 0, 1, ALICE)

    report = await dispatcher.dispatch(events_of(chain), 1, 1)

    assert report.ok
    assert store.get_nft(1) is not None


@pytest.mark.asyncio
async def test_apply_reports_outcome(store, chain, sink, dispatcher):
    mint(chain, 1, 0, 1, ALICE)
    zero_transfer, minted = events_of(chain)
    assert await dispatcher.apply(zero_transfer) is Outcome.SKIPPED
    assert await dispatcher.apply(minted) is Outcome.APPLIED
