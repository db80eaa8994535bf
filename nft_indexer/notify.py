"""Notification payloads and the websocket fan-out.

Delivery is fire-and-forget: ``broadcast`` never blocks, never retries and
never raises into the caller.
"""

import json
import logging
import re
from typing import List, Literal, Protocol, Set, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from websockets.asyncio.server import ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed

from nft_indexer.helpers import is_zero_addr

logger = logging.getLogger(__name__)


# --------- payload models ----------
class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    timestamp: int = Field(description="block time, unix milliseconds")
    block_number: int

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class NftMinted(_Payload):
    type: Literal["nftMinted"] = "nftMinted"
    token_id: int
    owner: str
    token_uri: str = Field(alias="tokenURI")


class NftTransferred(_Payload):
    type: Literal["nftTransferred"] = "nftTransferred"
    token_id: int
    from_: str = Field(alias="from")
    to: str


class NftListed(_Payload):
    type: Literal["nftListed"] = "nftListed"
    token_id: int
    seller: str
    price: str


class NftSold(_Payload):
    type: Literal["nftSold"] = "nftSold"
    token_id: int
    seller: str
    buyer: str
    price: str
    platform_fee: str
    royalty_fee: str


class NftCancelled(_Payload):
    type: Literal["nftCancelled"] = "nftCancelled"
    token_id: int
    seller: str


class PriceUpdated(_Payload):
    type: Literal["priceUpdated"] = "priceUpdated"
    token_id: int
    old_price: str
    new_price: str


class DefaultRoyaltyUpdated(_Payload):
    type: Literal["defaultRoyaltyUpdated"] = "defaultRoyaltyUpdated"
    receiver: str
    fee_numerator: int


class TokenRoyaltyUpdated(_Payload):
    type: Literal["tokenRoyaltyUpdated"] = "tokenRoyaltyUpdated"
    token_id: int
    receiver: str
    fee_numerator: int


Notification = Union[
    NftMinted, NftTransferred, NftListed, NftSold, NftCancelled,
    PriceUpdated, DefaultRoyaltyUpdated, TokenRoyaltyUpdated,
]


class NotificationSink(Protocol):
    def broadcast(self, payload: Notification) -> None: ...


# --------- rooms ----------
ROOM_PATTERNS = [
    re.compile(r"^global$"),
    re.compile(r"^marketplace$"),
    re.compile(r"^nft-\d+$"),
    re.compile(r"^owner-0x[a-fA-F0-9]{40}$"),
]

MARKET_TYPES = {"nftListed", "nftSold", "nftCancelled", "priceUpdated"}


def is_valid_room(room) -> bool:
    return isinstance(room, str) and any(p.match(room) for p in ROOM_PATTERNS)


def rooms_for(payload: Notification) -> List[str]:
    """Rooms a payload is delivered to, ``global`` first."""
    rooms = ["global"]
    token_id = getattr(payload, "token_id", None)
    if token_id is not None and not isinstance(payload, TokenRoyaltyUpdated):
        rooms.append(f"nft-{token_id}")
    if isinstance(payload, NftMinted):
        rooms.append(f"owner-{payload.owner.lower()}")
    elif isinstance(payload, NftTransferred):
        rooms.append(f"owner-{payload.to.lower()}")
        if not is_zero_addr(payload.from_):
            rooms.append(f"owner-{payload.from_.lower()}")
    elif isinstance(payload, NftSold):
        rooms.append(f"owner-{payload.seller.lower()}")
        rooms.append(f"owner-{payload.buyer.lower()}")
    if payload.type in MARKET_TYPES:
        rooms.append("marketplace")
    return rooms


# --------- websocket hub ----------
class WebSocketHub:
    """Serves subscribers and fans payloads out to their rooms.

    Clients start in ``global`` and send
    ``{"action": "subscribe" | "unsubscribe", "room": ...}`` to change rooms.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 4001):
        self.host = host
        self.port = port
        self.rooms: dict = {}
        self._server = None

    async def start(self):
        self._server = await serve(self._handler, self.host, self.port)
        logger.info(f"[ws] listening on ws://{self.host}:{self.port}")

    async def close(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            self.rooms.clear()

    def join(self, conn, room: str):
        self.rooms.setdefault(room, set()).add(conn)

    def leave(self, conn, room: str):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                del self.rooms[room]

    def leave_all(self, conn):
        for room in list(self.rooms):
            self.leave(conn, room)

    def members(self, rooms: List[str]) -> Set:
        out: Set = set()
        for r in rooms:
            out |= self.rooms.get(r, set())
        return out

    async def _handler(self, conn: ServerConnection):
        self.join(conn, "global")
        logger.info(f"[ws] client connected: {conn.id}")
        try:
            async for message in conn:
                await self._on_message(conn, message)
        except ConnectionClosed:
            pass
        finally:
            self.leave_all(conn)
            logger.info(f"[ws] client disconnected: {conn.id}")

    async def _on_message(self, conn, message):
        try:
            req = json.loads(message)
            action, room = req.get("action"), req.get("room")
        except (ValueError, AttributeError):
            await conn.send(json.dumps({"error": "invalid request"}))
            return
        if action == "subscribe":
            ok = is_valid_room(room)
            if ok:
                self.join(conn, room)
            reply = {"event": "subscribed", "room": room, "success": ok}
            if not ok:
                reply["error"] = "Invalid room name"
        elif action == "unsubscribe":
            if isinstance(room, str):
                self.leave(conn, room)
            reply = {"event": "unsubscribed", "room": room, "success": True}
        elif action == "getRooms":
            reply = {"event": "rooms", "rooms": sorted(self.rooms)}
        else:
            reply = {"error": f"unknown action {action!r}"}
        await conn.send(json.dumps(reply))

    def broadcast(self, payload: Notification) -> None:
        targets = self.members(rooms_for(payload))
        if not targets:
            return
        try:
            broadcast(targets, payload.to_json())
        except Exception as e:
            logger.warning(f"[ws] broadcast of {payload.type} failed: {e}")


class LogSink:
    """Sink used when no websocket port is configured."""

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def broadcast(self, payload: Notification) -> None:
        logger.log(self.level, f"[notify] {payload.to_json()}")
