from __future__ import annotations

import asyncio
import enum
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import Settings
from .handlers import ConsoleHandler, EventHandler
from .logging_config import log_event
from .rpc import RpcClient, RpcConnectionError, RpcError, Subscription

log = logging.getLogger("nodewatch.monitor")

Dialer = Callable[[str, float], Awaitable[Any]]

CONNECT_HINTS = (
    "   Likely causes:\n"
    "   1. the local node is not running\n"
    "   2. WebSocket RPC is not enabled (start geth with --ws)\n"
    "   3. wrong port (geth serves WebSocket RPC on 8546 by default)\n"
    "   Example: geth --ws --ws.addr 0.0.0.0 --ws.port 8546"
)

PENDING_TX_HINTS = (
    "   Likely causes:\n"
    "   1. the node version does not support newPendingTransactions\n"
    "   2. node configuration (txpool or subscription API disabled)\n"
    "   Continuing with block headers only."
)


class MonitorState(enum.Enum):
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class MonitorError(Exception):
    """Unrecoverable failure; the process should exit non-zero."""


class NodeConnectionError(MonitorError):
    pass


class SubscriptionError(MonitorError):
    pass


class _StopRequested(Exception):
    """A stop arrived while a startup step was still pending."""


class Monitor:
    """
    Owns one RPC connection and up to two subscriptions (block headers, and
    pending transactions when the node supports them) and dispatches their
    events to a handler until ``request_stop`` is called or a stream fails.

    ``run`` returns normally after a requested stop and raises ``MonitorError``
    on any fatal condition. The connection is closed on every exit path.
    """

    def __init__(self, settings: Settings, handler: Optional[EventHandler] = None, dial: Optional[Dialer] = None) -> None:
        self.settings = settings
        self.handler = handler or ConsoleHandler()
        self._dial = dial or functools.partial(
            RpcClient.dial, max_size=settings.ws_max_msg_size, request_timeout=settings.request_timeout_s
        )
        self.state = MonitorState.CONNECTING
        self.client: Any = None
        self.head_sub: Optional[Subscription] = None
        self.tx_sub: Optional[Subscription] = None
        self.blocks_seen = 0
        self.txs_seen = 0
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        self._stop.set()

    def _set_state(self, state: MonitorState) -> None:
        if state is self.state:
            return
        log_event(self.settings, log, logging.DEBUG, "state", prev=self.state.value, next=state.value)
        self.state = state

    async def run(self) -> None:
        try:
            try:
                await self._connect()
                await self._subscribe()
                await self._dispatch()
            except _StopRequested:
                log_event(self.settings, log, logging.INFO, "stop requested during startup", state=self.state.value)
            await self._shutdown()
        finally:
            await self._close()

    async def _unless_stopped(self, aw: Awaitable[Any]) -> Any:
        """Await a startup step, abandoning it as soon as a stop is requested."""
        if self._stop.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise _StopRequested
        task = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(self._stop.wait())
        abandoned = False
        try:
            await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            pending = [stop]
            if not task.done():
                abandoned = True
                task.cancel()
                pending.append(task)
            await asyncio.gather(*pending, return_exceptions=True)
        if abandoned:
            raise _StopRequested
        return task.result()

    async def _connect(self) -> None:
        self._set_state(MonitorState.CONNECTING)
        log_event(self.settings, log, logging.INFO, "connecting", url=self.settings.ws_url,
                  timeout_s=self.settings.connection_timeout_s)
        try:
            self.client = await self._unless_stopped(self._dial(self.settings.ws_url, self.settings.connection_timeout_s))
        except RpcConnectionError as e:
            self._set_state(MonitorState.TERMINATED)
            log.critical("Cannot connect to node WebSocket at %s: %s\n%s", self.settings.ws_url, e, CONNECT_HINTS)
            raise NodeConnectionError(f"cannot connect to {self.settings.ws_url}: {e}") from e
        print(f"Connected to {self.settings.ws_url}", flush=True)

    async def _subscribe(self) -> None:
        self._set_state(MonitorState.SUBSCRIBING)
        try:
            self.head_sub = await self._unless_stopped(self.client.subscribe_new_heads())
        except (RpcError, RpcConnectionError) as e:
            self._set_state(MonitorState.TERMINATED)
            log.critical("Block header subscription failed: %s", e)
            raise SubscriptionError(f"newHeads subscription failed: {e}") from e
        print("Listening for new blocks (newHeads)...", flush=True)

        try:
            self.tx_sub = await self._unless_stopped(self.client.subscribe_pending_transactions())
        except (RpcError, RpcConnectionError) as e:
            log.warning("Pending transaction subscription failed: %s\n%s", e, PENDING_TX_HINTS)
            self.tx_sub = None
        else:
            print("Listening for pending transactions (newPendingTransactions)...", flush=True)

    async def _dispatch(self) -> None:
        self._set_state(MonitorState.RUNNING)
        print("\nMonitor running, press Ctrl+C to exit...\n", flush=True)

        head_sub = self.head_sub
        tx_sub = self.tx_sub
        waiters: Dict[str, asyncio.Future] = {
            "block": asyncio.ensure_future(head_sub.events.get()),
            "block_err": head_sub.err,
            "stop": asyncio.ensure_future(self._stop.wait()),
        }
        if tx_sub is not None:
            waiters["tx"] = asyncio.ensure_future(tx_sub.events.get())
            waiters["tx_err"] = tx_sub.err

        try:
            while True:
                done, _ = await asyncio.wait(waiters.values(), return_when=asyncio.FIRST_COMPLETED)
                # any ready source may win; per-stream order holds since each has one outstanding read
                fut = next(iter(done))
                source = next(k for k, v in waiters.items() if v is fut)

                if source == "block":
                    waiters["block"] = asyncio.ensure_future(head_sub.events.get())
                    self.blocks_seen += 1
                    self.handler.on_block(fut.result())
                elif source == "tx":
                    waiters["tx"] = asyncio.ensure_future(tx_sub.events.get())
                    self.txs_seen += 1
                    self.handler.on_pending_transaction(fut.result())
                elif source == "block_err":
                    log.critical("Block header subscription failed: %s", fut.result())
                    raise SubscriptionError(f"newHeads subscription failed: {fut.result()}")
                elif source == "tx_err":
                    log.critical("Pending transaction subscription failed: %s", fut.result())
                    raise SubscriptionError(f"newPendingTransactions subscription failed: {fut.result()}")
                else:
                    return
        finally:
            readers = [f for k, f in waiters.items() if not k.endswith("_err") and not f.done()]
            for f in readers:
                f.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

    async def _shutdown(self) -> None:
        self._set_state(MonitorState.SHUTTING_DOWN)
        print("\nStopping monitor, disconnecting...", flush=True)
        for sub in (self.head_sub, self.tx_sub):
            if sub is not None:
                await self._unsubscribe(sub)
        log_event(self.settings, log, logging.INFO, "stopped", blocks=self.blocks_seen, pending_txs=self.txs_seen)

    async def _unsubscribe(self, sub: Subscription) -> None:
        timeout = self.settings.unsubscribe_timeout_s
        try:
            await asyncio.wait_for(sub.unsubscribe(), timeout)
        except asyncio.TimeoutError:
            log.warning("No reply to eth_unsubscribe for %s within %ss, closing anyway", sub.kind, timeout)

    async def _close(self) -> None:
        if self.client is not None:
            try:
                await self.client.close()
            except Exception:
                log.warning("Error while closing connection", exc_info=True)
        self._set_state(MonitorState.TERMINATED)
