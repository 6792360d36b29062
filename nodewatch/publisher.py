from __future__ import annotations

import logging
import queue
import struct
import threading
from typing import Dict, List

import zmq

from .config import Settings
from .events import BlockHeader
from .handlers import EventHandler

log = logging.getLogger("nodewatch.publisher")

TOPIC_BLOCK = "hashblock"
TOPIC_TX = "hashtx"


def _build_frames(topic: str, hex_hash: str, seq: int) -> List[bytes]:
    if not topic:
        raise ValueError("topic must be non-empty")
    body = hex_hash[2:] if hex_hash.startswith(("0x", "0X")) else hex_hash
    return [topic.encode("utf-8"), bytes.fromhex(body), struct.pack("<L", seq & 0xFFFFFFFF)]


class ZmqPublisher(EventHandler):
    """
    Republishes observed hashes on a PUB socket using the bitcoind notification layout:
    [topic, hash bytes, little-endian uint32 sequence]. Sending happens on a background
    thread; when the queue is full new messages are dropped.
    """

    def __init__(self, settings: Settings) -> None:
        if not settings.zmq_pub_bind:
            raise ValueError("zmq_pub_bind is not configured")
        self.settings = settings
        self._ctx: zmq.Context | None = None
        self._sock: zmq.Socket | None = None
        self._q: queue.Queue[List[bytes]] = queue.Queue(maxsize=1000)
        self._seq: Dict[str, int] = {TOPIC_BLOCK: 0, TOPIC_TX: 0}
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._thread: threading.Thread | None = None
        self._error: zmq.ZMQError | None = None
        self.dropped = 0

    def start(self) -> None:
        """Start the sender thread; raises ``zmq.ZMQError`` if the bind fails."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._ready.clear()
        self._error = None
        self._thread = threading.Thread(target=self._run, name="nodewatch-publisher", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=2.0)
        if self._error is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
            raise self._error

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2.0)
        self._thread = None

    def on_block(self, header: BlockHeader) -> None:
        self._enqueue(TOPIC_BLOCK, header.hash)

    def on_pending_transaction(self, tx_hash: str) -> None:
        self._enqueue(TOPIC_TX, tx_hash)

    def _enqueue(self, topic: str, hex_hash: str) -> None:
        frames = _build_frames(topic, hex_hash, self._seq[topic])
        self._seq[topic] += 1
        try:
            self._q.put_nowait(frames)
        except queue.Full:
            self.dropped += 1
            log.warning("Publisher queue full; dropping %s message", topic)

    def _run(self) -> None:
        self._ctx = zmq.Context(io_threads=1)
        sock = self._ctx.socket(zmq.PUB)
        self._sock = sock
        try:
            sock.setsockopt(zmq.LINGER, self.settings.linger_ms)
            sock.set_hwm(self.settings.zmq_sndhwm)
            sock.bind(self.settings.zmq_pub_bind)
            log.info("Publisher bound to %s", self.settings.zmq_pub_bind)
        except zmq.ZMQError as e:
            self._error = e
        finally:
            self._ready.set()
        try:
            while self._error is None and not self._stop.is_set():
                try:
                    frames = self._q.get(timeout=0.1)
                except queue.Empty:
                    continue
                try:
                    sock.send_multipart(frames, flags=zmq.NOBLOCK)
                except zmq.Again:
                    self.dropped += 1
                except zmq.ZMQError:
                    log.exception("Failed to publish message")
        finally:
            try:
                sock.close(self.settings.linger_ms)
            except zmq.ZMQError:
                pass
            self._sock = None
            try:
                self._ctx.term()
            except zmq.ZMQError:
                pass
            self._ctx = None
