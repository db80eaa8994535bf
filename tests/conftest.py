import pytest

from nft_indexer.checkpoint import CheckpointStore
from nft_indexer.db import db, ensure_schema
from nft_indexer.dispatcher import EventDispatcher
from nft_indexer.store import SqliteStore
from nft_indexer.sync import SyncLoop

from fakes import MARKET, NFT, FakeChain, RecordingSink


# ---------- fixtures ----------
@pytest.fixture
def conn():
    c = db(":memory:")
    ensure_schema(c)
    yield c
    c.close()


@pytest.fixture
def store(conn):
    return SqliteStore(conn)


@pytest.fixture
def checkpoints(conn):
    return CheckpointStore(conn)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(store, chain, sink):
    return EventDispatcher(store, chain, sink, platform_fee_bps=250)


@pytest.fixture
def make_loop(chain, checkpoints, dispatcher):
    def _make(**kw):
        kw.setdefault("window_size", 100)
        kw.setdefault("poll_interval", 3600)
        kw.setdefault("reconnect_delay", 0)
        kw.setdefault("max_reconnect_attempts", 5)
        return SyncLoop(chain, checkpoints, dispatcher, [NFT, MARKET], **kw)
    return _make
