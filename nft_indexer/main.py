import asyncio
import logging
import signal

import uvloop

from nft_indexer import config
from nft_indexer.chain import Web3ChainReader
from nft_indexer.checkpoint import CheckpointStore
from nft_indexer.db import db, ensure_schema
from nft_indexer.dispatcher import EventDispatcher
from nft_indexer.errors import ConfigError
from nft_indexer.metadata import IpfsMetadataResolver
from nft_indexer.notify import LogSink, WebSocketHub
from nft_indexer.store import SqliteStore
from nft_indexer.sync import SyncLoop

logger = logging.getLogger("nft_indexer")


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def main():
    config.validate()

    chain = Web3ChainReader.from_config()
    if not await chain.check_connection(config.CHAIN_ID):
        raise SystemExit("Blockchain connection failed")

    conn = db()
    ensure_schema(conn)
    store = SqliteStore(conn)

    sink = WebSocketHub(config.WS_HOST, config.WS_PORT) if config.WS_PORT else LogSink()
    if isinstance(sink, WebSocketHub):
        await sink.start()
    resolver = IpfsMetadataResolver(store)

    loop = SyncLoop(
        chain,
        CheckpointStore(conn),
        EventDispatcher(store, chain, sink, metadata=resolver),
        chain.contract_addresses,
    )

    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        asyncio.get_running_loop().add_signal_handler(sig, stop_requested.set)

    try:
        await loop.start()
        # either a signal or the loop giving up after failed reconnects
        done, pending = await asyncio.wait(
            [asyncio.create_task(stop_requested.wait()), asyncio.create_task(loop.wait_stopped())],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for t in pending:
            t.cancel()
    finally:
        logger.info("shutting down")
        await loop.stop()
        await resolver.close()
        if isinstance(sink, WebSocketHub):
            await sink.close()
        conn.close()


def run():
    setup_logging()
    try:
        uvloop.run(main())
    except ConfigError as e:
        raise SystemExit(str(e))


if __name__ == "__main__":
    run()
