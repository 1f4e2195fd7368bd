"""
Chain Ingestion - Push Subscriptions.

============================================================
PURPOSE
============================================================
eth_subscribe over a WebSocket, exposed as async iterators.

FEATURES:
- One WebSocket per subscription (newHeads / logs / pending)
- Subscription confirmation with timeout
- Heartbeat via aiohttp ping
- Stream end raises TransportDisconnectedError so the caller
  can mark the connector degraded and fall back to polling

============================================================
USAGE
============================================================
```python
client = EthSubscriptionClient("wss://node/ws", network="ethereum")
async for result in client.stream("newHeads"):
    print(int(result["number"], 16))
```

============================================================
"""

import asyncio
import itertools
import json
import logging
from typing import Any, AsyncIterator, Optional

import aiohttp

from core.exceptions import MalformedPayloadError, TransportDisconnectedError


logger = logging.getLogger(__name__)


class EthSubscriptionClient:
    """
    Thin eth_subscribe client on top of aiohttp WebSockets.

    The client owns its aiohttp session; close() releases it and
    ends every open stream.
    """

    SUBSCRIBE_TIMEOUT = 10.0
    HEARTBEAT_SECONDS = 20.0

    def __init__(
        self,
        url: str,
        network: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._url = url
        self._network = network
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)
        self._open: set[aiohttp.ClientWebSocketResponse] = set()
        self._closed = False

    @property
    def url(self) -> str:
        return self._url

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def stream(self, kind: str, params: Optional[dict[str, Any]] = None) -> AsyncIterator[Any]:
        """
        Subscribe and yield each notification's result.

        Args:
            kind: eth_subscribe type (newHeads, logs, newPendingTransactions)
            params: Extra subscription parameter (log filter)

        Raises:
            TransportDisconnectedError: Connection failed or closed
        """
        if self._closed:
            raise TransportDisconnectedError("Subscription client closed", network=self._network)

        session = await self._get_session()
        try:
            ws = await session.ws_connect(self._url, heartbeat=self.HEARTBEAT_SECONDS)
        except (aiohttp.ClientError, OSError) as e:
            raise TransportDisconnectedError(
                f"WebSocket connect failed: {e}",
                network=self._network,
                original_error=e,
            ) from e

        self._open.add(ws)
        try:
            try:
                sub_id = await self._subscribe(ws, kind, params)
                logger.info(f"[{self._network}] Subscribed to {kind} (id={sub_id})")

                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        try:
                            result = self._parse_notification(msg.data, sub_id)
                        except MalformedPayloadError as e:
                            logger.warning(f"[{self._network}] {e}")
                            continue
                        if result is not None:
                            yield result
                    elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                        break
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.error(f"[{self._network}] WebSocket error: {ws.exception()}")
                        break
            except (aiohttp.ClientError, OSError) as e:
                raise TransportDisconnectedError(
                    f"{kind} subscription connection lost: {e}",
                    network=self._network,
                    original_error=e,
                ) from e
        finally:
            self._open.discard(ws)
            if not ws.closed:
                await ws.close()

        if not self._closed:
            raise TransportDisconnectedError(
                f"{kind} subscription stream ended",
                network=self._network,
            )

    async def _subscribe(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        kind: str,
        params: Optional[dict[str, Any]],
    ) -> str:
        request_id = next(self._ids)
        args: list[Any] = [kind]
        if params:
            args.append(params)
        await ws.send_json({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "eth_subscribe",
            "params": args,
        })

        try:
            response = await asyncio.wait_for(ws.receive_json(), timeout=self.SUBSCRIBE_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise TransportDisconnectedError(
                f"{kind} subscription confirmation timed out",
                network=self._network,
                original_error=e,
            ) from e
        except (TypeError, ValueError) as e:
            raise TransportDisconnectedError(
                f"{kind} subscription confirmation unreadable: {e}",
                network=self._network,
                original_error=e,
            ) from e

        if "error" in response:
            raise TransportDisconnectedError(
                f"{kind} subscription rejected: {response['error']}",
                network=self._network,
            )
        return str(response.get("result", ""))

    def _parse_notification(self, raw: str, sub_id: str) -> Any:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedPayloadError(
                f"Invalid JSON notification: {e}",
                network=self._network,
                original_error=e,
            ) from e

        if message.get("method") != "eth_subscription":
            return None
        params = message.get("params") or {}
        if params.get("subscription") not in (None, sub_id):
            return None
        return params.get("result")

    async def close(self) -> None:
        """Close every open stream and the owned session."""
        self._closed = True
        for ws in list(self._open):
            if not ws.closed:
                await ws.close()
        self._open.clear()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
