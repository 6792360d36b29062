import io

from nodewatch.events import BlockHeader
from nodewatch.handlers import ConsoleHandler, EventHandler, MultiHandler

HASH_AA = "0x" + "aa" * 32


def test_base_handler_is_noop():
    h = EventHandler()
    h.on_block(BlockHeader(1, HASH_AA, 2))
    h.on_pending_transaction(HASH_AA)


def test_console_output():
    out = io.StringIO()
    h = ConsoleHandler(stream=out)
    h.on_block(BlockHeader(number=100, hash=HASH_AA, timestamp=1234))
    h.on_pending_transaction(HASH_AA)
    lines = out.getvalue().strip().splitlines()
    assert lines[0] == f"[New Block] Height: 100 | Hash: {HASH_AA} | Time: 1234"
    assert lines[1] == f"[Pending Tx] {HASH_AA}"


def test_multi_handler_forwards_in_order():
    calls = []

    class Tagged(EventHandler):
        def __init__(self, tag):
            self.tag = tag

        def on_block(self, header):
            calls.append((self.tag, header.number))

        def on_pending_transaction(self, tx_hash):
            calls.append((self.tag, tx_hash))

    m = MultiHandler([Tagged("a"), Tagged("b")])
    m.on_block(BlockHeader(5, HASH_AA, 0))
    m.on_pending_transaction(HASH_AA)
    assert calls == [("a", 5), ("b", 5), ("a", HASH_AA), ("b", HASH_AA)]
