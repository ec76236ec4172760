"""WebSocket transport consumed by virtual players.

Players only see the ``Transport``/``Channel`` protocols; ``AiohttpTransport``
is the production implementation and tests substitute in-memory ones.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol, Union
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import aiohttp

from snakeload.exceptions import PlayerConnectionError
from snakeload.logger import Logger, session_logger

SWITCHING_PROTOCOLS = 101

PLAYER_ID_PLACEHOLDER = "{player_id}"
PLAYER_ID_QUERY_PARAM = "playerId"
TAG_HEADER_PREFIX = "X-Load-Tag-"


class Channel(Protocol):
    async def send(self, message: str) -> None: ...

    async def receive(self) -> Union[str, bytes, None]:
        """Next inbound payload, or None once the channel is closed."""
        ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class OpenResult:
    status: int
    channel: Channel | None

    @property
    def upgraded(self) -> bool:
        return self.status == SWITCHING_PROTOCOLS and self.channel is not None


class Transport(Protocol):
    async def open(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> OpenResult: ...

    async def aclose(self) -> None: ...


class AiohttpChannel:
    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    async def send(self, message: str) -> None:
        await self._ws.send_str(message)

    async def receive(self) -> Union[str, bytes, None]:
        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data
        if msg.type == aiohttp.WSMsgType.ERROR:
            exc = self._ws.exception()
            raise exc if exc is not None else aiohttp.ClientError("websocket error frame")
        # CLOSE / CLOSING / CLOSED
        return None

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class AiohttpTransport:
    """Opens player channels over one shared ``aiohttp.ClientSession``.

    The connector is unbounded: each virtual player holds one long-lived
    socket and the harness must not queue them behind a pool limit.
    """

    def __init__(self, *, logger: Logger | None = None, autoping: bool = True) -> None:
        self._logger = logger or session_logger
        self._autoping = autoping
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=0))
        return self._session

    async def open(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> OpenResult:
        session = self._get_session()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(url, headers=headers, autoping=self._autoping),
                timeout=timeout,
            )
        except aiohttp.WSServerHandshakeError as exc:
            # Upgrade refused: report the HTTP status, the player decides.
            return OpenResult(status=exc.status, channel=None)
        except Exception as exc:
            raise PlayerConnectionError(
                f"failed to open {url}: {exc}",
                details={"error_type": classify_exception(exc), "url": url},
            ) from exc

        return OpenResult(status=SWITCHING_PROTOCOLS, channel=AiohttpChannel(ws))

    async def aclose(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def build_player_url(template: str, player_id: str) -> str:
    """Fill the player id into a target URL template.

    ``{player_id}`` is substituted when present; otherwise the ``playerId``
    query parameter is set (replacing any existing value).
    """

    if PLAYER_ID_PLACEHOLDER in template:
        return template.replace(PLAYER_ID_PLACEHOLDER, quote(player_id, safe=""))

    parts = urlsplit(template)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != PLAYER_ID_QUERY_PARAM]
    query.append((PLAYER_ID_QUERY_PARAM, player_id))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def tag_headers(tags: Mapping[str, str] | Iterable[tuple[str, str]]) -> dict[str, str]:
    return {f"{TAG_HEADER_PREFIX}{name}": str(value) for name, value in dict(tags).items()}


def classify_exception(exc: BaseException) -> str:
    """Map a transport-level exception to a canonical error_type."""

    if isinstance(exc, PlayerConnectionError):
        return str(exc.details.get("error_type", "connection_error"))
    if isinstance(exc, aiohttp.WSServerHandshakeError):
        return "handshake_rejected"
    if isinstance(exc, asyncio.TimeoutError):
        return "network_timeout"
    if isinstance(exc, aiohttp.ClientConnectorError):
        return "network_connect"
    if isinstance(exc, aiohttp.ClientError):
        return "network_error"
    if isinstance(exc, ConnectionError):
        return "network_error"
    return type(exc).__name__
