from __future__ import annotations

import sys
from typing import Iterable, List, Optional, TextIO

from .events import BlockHeader


class EventHandler:
    """
    Receives events from the monitor loop, one at a time, on the loop's thread.
    Both hooks are no-ops here; subclasses override what they need.
    """

    def on_block(self, header: BlockHeader) -> None:
        pass

    def on_pending_transaction(self, tx_hash: str) -> None:
        pass


class ConsoleHandler(EventHandler):
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream

    def _print(self, line: str) -> None:
        print(line, file=self.stream or sys.stdout, flush=True)

    def on_block(self, header: BlockHeader) -> None:
        self._print(f"\n[New Block] Height: {header.number} | Hash: {header.hash} | Time: {header.timestamp}")

    def on_pending_transaction(self, tx_hash: str) -> None:
        self._print(f"[Pending Tx] {tx_hash}")


class MultiHandler(EventHandler):
    """Forwards every event to each handler in order."""

    def __init__(self, handlers: Iterable[EventHandler]) -> None:
        self.handlers: List[EventHandler] = list(handlers)

    def on_block(self, header: BlockHeader) -> None:
        for h in self.handlers:
            h.on_block(header)

    def on_pending_transaction(self, tx_hash: str) -> None:
        for h in self.handlers:
            h.on_pending_transaction(tx_hash)
