from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional

from web3 import AsyncWeb3, WebSocketProvider
from web3._utils.caching import generate_cache_key
from web3.exceptions import ProviderConnectionError, TaskNotRunning, Web3Exception, Web3RPCError
from websockets.exceptions import ConnectionClosed, WebSocketException

from .events import BlockHeader, pending_tx_from_rpc

log = logging.getLogger("nodewatch.rpc")

NEW_HEADS = "newHeads"
NEW_PENDING_TRANSACTIONS = "newPendingTransactions"

_DECODERS: Dict[str, Callable[[Any], Any]] = {
    NEW_HEADS: BlockHeader.from_rpc,
    NEW_PENDING_TRANSACTIONS: pending_tx_from_rpc,
}

_TRANSPORT_ERRORS = (ConnectionClosed, ProviderConnectionError, TaskNotRunning, OSError)


class RpcError(Exception):
    """Error object returned by the node for a request."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
        self.data = data


class RpcConnectionError(Exception):
    """The WebSocket transport could not be opened or was lost."""


def _rpc_error(e: Web3RPCError) -> RpcError:
    resp = e.rpc_response if isinstance(e.rpc_response, Mapping) else {}
    err = resp.get("error")
    if isinstance(err, Mapping):
        return RpcError(err.get("code", 0), str(err.get("message", "")), err.get("data"))
    return RpcError(0, str(e))


def _frame_problem(msg: Any, request_pending: Callable[[Any], bool]) -> Optional[str]:
    """Why web3's listener would choke on ``msg``, or None if it is routable."""
    if isinstance(msg, list):
        return "batch responses are never requested"
    if not isinstance(msg, dict):
        return "not a JSON object"
    if msg.get("method") == "eth_subscription":
        params = msg.get("params")
        if not isinstance(params, dict):
            return "params is not an object"
        if not isinstance(params.get("subscription"), str):
            return "subscription id is not a string"
        if params.get("result") is None:
            return "no result"
        return None
    msg_id = msg.get("id")
    if msg_id is None:
        return "neither a response nor a notification"
    if isinstance(msg_id, bool) or not isinstance(msg_id, (int, str)):
        return "id is not a number or string"
    if "error" in msg and not request_pending(msg_id):
        return "error for an unknown request"
    return None


class NodeSocketProvider(WebSocketProvider):
    """
    WebSocketProvider whose listener drops frames it cannot route
    (bad JSON, non-object params, unsolicited responses) instead of dying on them,
    which would otherwise take every subscription down with it.
    """

    async def _provider_specific_socket_reader(self) -> Any:
        while True:
            try:
                msg = await super()._provider_specific_socket_reader()
            except ValueError as e:
                log.warning("Dropping undecodable frame: %s", e)
                continue
            problem = _frame_problem(msg, self._request_pending)
            if problem is None:
                return msg
            log.warning("Dropping malformed frame (%s): %.200r", problem, msg)

    def _request_pending(self, msg_id: Any) -> bool:
        cache = self._request_processor._request_information_cache
        return cache.get_cache_entry(generate_cache_key(msg_id)) is not None


class Subscription:
    """
    Server-pushed stream created by ``eth_subscribe``.
    Decoded notifications land on ``events`` in arrival order.
    ``err`` resolves to the transport exception if the stream breaks;
    it stays pending after a clean unsubscribe.
    """

    def __init__(self, client: "RpcClient", sub_id: str, kind: str) -> None:
        self._client = client
        self.id = sub_id
        self.kind = kind
        self.events: asyncio.Queue = asyncio.Queue()
        self.err: asyncio.Future = asyncio.get_running_loop().create_future()
        self.active = True
        self._decode = _DECODERS.get(kind, lambda x: x)

    def __repr__(self) -> str:
        return f"Subscription(kind={self.kind!r}, id={self.id!r}, active={self.active})"

    def _deliver(self, result: Any) -> None:
        if not self.active:
            return
        try:
            item = self._decode(result)
        except (ValueError, TypeError) as e:
            log.warning("Dropping malformed %s notification: %s", self.kind, e)
            return
        self.events.put_nowait(item)

    def _fail(self, exc: BaseException) -> None:
        self.active = False
        if not self.err.done():
            self.err.set_result(exc)

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._client._subs.pop(self.id, None)
        try:
            ok = await self._client._w3.eth.unsubscribe(self.id)
            log.debug("Unsubscribed %s (%s): %s", self.kind, self.id, ok)
        except (Web3Exception, ConnectionClosed, OSError) as e:
            log.debug("eth_unsubscribe for %s failed: %s", self.id, e)


class RpcClient:
    """
    Adapter over ``AsyncWeb3`` with a WebSocket provider. web3 owns framing,
    request ids and result formatting; this class fans the single
    ``process_subscriptions`` stream out to one queue per subscription.
    """

    def __init__(self, w3: AsyncWeb3, url: str) -> None:
        self.url = url
        self._w3 = w3
        self._provider: NodeSocketProvider = w3.provider
        self._subs: Dict[str, Subscription] = {}
        self._pump: Optional[asyncio.Task] = None
        self._closing = False

    @classmethod
    async def dial(cls, url: str, timeout: float, *, max_size: Optional[int] = 2**24,
                   request_timeout: float = 30.0) -> "RpcClient":
        try:
            provider = NodeSocketProvider(
                url,
                websocket_kwargs={"open_timeout": timeout, "max_size": max_size},
                request_timeout=request_timeout,
                max_connection_retries=1,
            )
        except Web3Exception as e:
            raise RpcConnectionError(f"cannot connect to {url}: {e}") from e
        try:
            await asyncio.wait_for(provider.connect(), timeout)
        except (asyncio.TimeoutError, OSError, WebSocketException, Web3Exception) as e:
            await _disconnect_quietly(provider)
            cause = e.__cause__ or e
            raise RpcConnectionError(f"cannot connect to {url}: {str(cause) or type(cause).__name__}") from e
        except asyncio.CancelledError:
            await _disconnect_quietly(provider)
            raise
        log.info("Connected to %s", url)
        return cls(AsyncWeb3(provider), url)

    @property
    def closed(self) -> bool:
        return self._closing or not self._listener_alive()

    def _listener_alive(self) -> bool:
        task = self._provider._message_listener_task
        return task is not None and not task.done()

    async def subscribe(self, kind: str, *args: Any) -> Subscription:
        if self.closed:
            raise RpcConnectionError("connection is closed")
        try:
            sub_id = await self._w3.eth.subscribe(kind, *args)
        except Web3RPCError as e:
            raise _rpc_error(e) from e
        except _TRANSPORT_ERRORS as e:
            raise RpcConnectionError(f"connection lost: {str(e) or type(e).__name__}") from e
        except Web3Exception as e:
            raise RpcError(-32603, str(e)) from e

        sub = Subscription(self, sub_id, kind)
        self._subs[sub_id] = sub
        if self._pump is None:
            self._pump = asyncio.create_task(self._pump_loop(), name="nodewatch-rpc-pump")
        log.info("Subscribed to %s (%s)", kind, sub_id)
        return sub

    async def subscribe_new_heads(self) -> Subscription:
        return await self.subscribe(NEW_HEADS)

    async def subscribe_pending_transactions(self) -> Subscription:
        # fullTx=false: notifications carry bare hashes
        return await self.subscribe(NEW_PENDING_TRANSACTIONS, False)

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._pump is not None:
            self._pump.cancel()
            await asyncio.gather(self._pump, return_exceptions=True)
        for sub in self._subs.values():
            sub.active = False
        self._subs.clear()
        await _disconnect_quietly(self._provider)
        log.info("Connection to %s closed", self.url)

    def _route(self, msg: Any) -> None:
        # web3 hands back the raw envelope when it has no request info cached for the id
        if isinstance(msg, Mapping) and isinstance(msg.get("params"), Mapping):
            msg = msg["params"]
        if not isinstance(msg, Mapping) or not isinstance(msg.get("subscription"), str):
            log.warning("Dropping unroutable subscription message: %.200r", msg)
            return
        sub = self._subs.get(msg["subscription"])
        if sub is not None:
            sub._deliver(msg.get("result"))

    async def _pump_loop(self) -> None:
        exc: Optional[RpcConnectionError] = None
        while exc is None:
            try:
                async for msg in self._w3.socket.process_subscriptions():
                    self._route(msg)
                exc = RpcConnectionError("connection closed by server")
            except _TRANSPORT_ERRORS as e:
                exc = RpcConnectionError(f"connection lost: {str(e) or type(e).__name__}")
            except Exception as e:
                # a message web3 failed to format; the stream itself is fine while the listener runs
                if not self._listener_alive():
                    exc = RpcConnectionError(f"connection lost: {e}")
                else:
                    log.warning("Dropping subscription message web3 could not process: %s", e)
        if not self._closing:
            log.warning("Lost connection to %s: %s", self.url, exc)
        for sub in list(self._subs.values()):
            sub._fail(exc)
        self._subs.clear()


async def _disconnect_quietly(provider: WebSocketProvider) -> None:
    try:
        await provider.disconnect()
    except Exception:
        log.debug("Error while disconnecting provider", exc_info=True)
