import asyncio
import logging
from typing import Optional

import aiohttp

from nft_indexer import config
from nft_indexer.errors import MetadataError

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_S = 10


def gateway_url(cid: str, gateway: Optional[str] = None) -> str:
    return f"https://{gateway or config.IPFS_GATEWAY}/ipfs/{cid}"


class IpfsMetadataResolver:
    """Token metadata by CID: local cache first, then the IPFS gateway."""

    def __init__(self, store, gateway: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.store = store
        self.gateway = gateway or config.IPFS_GATEWAY
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=FETCH_TIMEOUT_S))
            self._owns_session = True
        return self._session

    async def get_metadata(self, cid: str) -> dict:
        cached = self.store.get_cached_metadata(cid)
        if cached is not None:
            logger.debug(f"[ipfs] cache hit {cid}")
            return cached

        session = await self._get_session()
        try:
            async with session.get(gateway_url(cid, self.gateway)) as resp:
                resp.raise_for_status()
                metadata = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise MetadataError(cid, str(e)) from e
        if not isinstance(metadata, dict):
            raise MetadataError(cid, "metadata is not a JSON object")

        self.store.cache_metadata(cid, metadata)
        logger.info(f"[ipfs] fetched metadata {cid}")
        return metadata

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
