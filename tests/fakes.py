import asyncio

from nodewatch.events import BlockHeader
from nodewatch.handlers import EventHandler

HASH_AA = "0x" + "aa" * 32
HASH_BB = "0x" + "bb" * 32


def header(n, h=HASH_AA, ts=1234):
    return BlockHeader(number=n, hash=h, timestamp=ts)


def tx_hash(i):
    return "0x" + f"{i:064x}"


class FakeSub:
    def __init__(self, kind, hang_unsubscribe=False):
        self.kind = kind
        self.events = asyncio.Queue()
        self.err = asyncio.get_running_loop().create_future()
        self.active = True
        self.hang_unsubscribe = hang_unsubscribe
        self.unsubscribe_calls = 0

    async def unsubscribe(self):
        self.unsubscribe_calls += 1
        self.active = False
        if self.hang_unsubscribe:
            # a node that never answers eth_unsubscribe
            await asyncio.Event().wait()


class FakeClient:
    def __init__(self, heads_error=None, pending_error=None, hang_pending=False,
                 hang_unsubscribe=False, after_subscribe=None):
        self.heads_error = heads_error
        self.pending_error = pending_error
        self.hang_pending = hang_pending
        self.hang_unsubscribe = hang_unsubscribe
        self.after_subscribe = after_subscribe
        self.head_sub = None
        self.tx_sub = None
        self.pending_attempted = False
        self.pending_cancelled = False
        self.close_calls = 0

    async def subscribe_new_heads(self):
        if self.heads_error:
            raise self.heads_error
        self.head_sub = FakeSub("newHeads", self.hang_unsubscribe)
        return self.head_sub

    async def subscribe_pending_transactions(self):
        self.pending_attempted = True
        if self.pending_error:
            raise self.pending_error
        if self.hang_pending:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.pending_cancelled = True
                raise
        self.tx_sub = FakeSub("newPendingTransactions", self.hang_unsubscribe)
        if self.after_subscribe is not None:
            self.after_subscribe()
        return self.tx_sub

    async def close(self):
        self.close_calls += 1


class Recorder(EventHandler):
    def __init__(self):
        self.blocks = []
        self.txs = []

    def on_block(self, header):
        self.blocks.append(header)

    def on_pending_transaction(self, tx_hash):
        self.txs.append(tx_hash)


async def wait_until(cond, steps=1000):
    for _ in range(steps):
        if cond():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")
