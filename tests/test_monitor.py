import asyncio

import pytest
from fakes import FakeClient, Recorder, header, tx_hash, wait_until

from nodewatch.config import Settings
from nodewatch.monitor import Monitor, MonitorState, NodeConnectionError, SubscriptionError
from nodewatch.rpc import RpcConnectionError, RpcError


def make_monitor(client, handler, **overrides):
    dialed = []

    async def dial(url, timeout):
        dialed.append((url, timeout))
        if isinstance(client, Exception):
            raise client
        return client

    settings = Settings(ws_url="ws://node.test:8546", connection_timeout_s=5, **overrides)
    return Monitor(settings, handler, dial=dial), dialed


def test_block_printed_then_interrupt_unsubscribes_both():
    async def scenario():
        client = FakeClient()
        rec = Recorder()
        monitor, dialed = make_monitor(client, rec)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is MonitorState.RUNNING)

        client.head_sub.events.put_nowait(header(100))
        await wait_until(lambda: rec.blocks)
        monitor.request_stop()
        await task

        assert dialed == [("ws://node.test:8546", 5.0)]
        assert rec.blocks == [header(100)]
        assert client.head_sub.unsubscribe_calls == 1
        assert client.tx_sub.unsubscribe_calls == 1
        assert client.close_calls == 1
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())


def test_events_handled_once_in_source_order():
    async def scenario():
        client = FakeClient()
        rec = Recorder()
        monitor, _ = make_monitor(client, rec)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is MonitorState.RUNNING)

        blocks = [header(n) for n in range(10, 20)]
        txs = [tx_hash(i) for i in range(25)]
        for i, tx in enumerate(txs):
            client.tx_sub.events.put_nowait(tx)
            if i < len(blocks):
                client.head_sub.events.put_nowait(blocks[i])
        await wait_until(lambda: len(rec.blocks) == len(blocks) and len(rec.txs) == len(txs))
        monitor.request_stop()
        await task

        assert rec.blocks == blocks
        assert rec.txs == txs
        assert monitor.blocks_seen == 10
        assert monitor.txs_seen == 25

    asyncio.run(scenario())


def test_pending_subscription_rejected_degrades_to_blocks_only():
    async def scenario():
        client = FakeClient(pending_error=RpcError(-32601, "the method does not exist"))
        rec = Recorder()
        monitor, _ = make_monitor(client, rec)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is MonitorState.RUNNING)

        assert client.pending_attempted
        assert monitor.tx_sub is None
        client.head_sub.events.put_nowait(header(7))
        await wait_until(lambda: rec.blocks)
        monitor.request_stop()
        await task

        assert rec.blocks == [header(7)]
        assert rec.txs == []
        assert client.head_sub.unsubscribe_calls == 1

    asyncio.run(scenario())


def test_unreachable_endpoint_is_fatal_without_subscribing():
    async def scenario():
        monitor, dialed = make_monitor(RpcConnectionError("connection refused"), Recorder())
        with pytest.raises(NodeConnectionError):
            await monitor.run()
        assert len(dialed) == 1
        assert monitor.client is None
        assert monitor.head_sub is None
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())


def test_block_subscription_setup_failure_is_fatal():
    async def scenario():
        client = FakeClient(heads_error=RpcError(-32000, "notifications not supported"))
        monitor, _ = make_monitor(client, Recorder())
        with pytest.raises(SubscriptionError):
            await monitor.run()
        assert not client.pending_attempted
        assert client.close_calls == 1
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())


def test_block_stream_error_is_fatal_while_pending_is_healthy():
    async def scenario():
        client = FakeClient()
        rec = Recorder()
        monitor, _ = make_monitor(client, rec)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is MonitorState.RUNNING)

        client.tx_sub.events.put_nowait(tx_hash(1))
        await wait_until(lambda: rec.txs)
        client.head_sub.err.set_result(RpcConnectionError("connection closed"))
        with pytest.raises(SubscriptionError):
            await task
        assert client.close_calls == 1
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())


def test_pending_stream_error_is_fatal():
    async def scenario():
        client = FakeClient()
        monitor, _ = make_monitor(client, Recorder())
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is MonitorState.RUNNING)

        client.tx_sub.err.set_result(RpcConnectionError("connection closed"))
        with pytest.raises(SubscriptionError, match="newPendingTransactions"):
            await task
        assert client.close_calls == 1

    asyncio.run(scenario())


def test_stop_unsubscribes_even_with_events_queued():
    async def scenario():
        client = FakeClient()
        monitor, _ = make_monitor(client, Recorder())
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is MonitorState.RUNNING)

        for n in range(50):
            client.head_sub.events.put_nowait(header(n))
            client.tx_sub.events.put_nowait(tx_hash(n))
        monitor.request_stop()
        await task

        assert client.head_sub.unsubscribe_calls == 1
        assert client.tx_sub.unsubscribe_calls == 1
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())


def test_stop_requested_before_start_never_dials():
    async def scenario():
        client = FakeClient()
        monitor, dialed = make_monitor(client, Recorder())
        monitor.request_stop()
        await monitor.run()
        assert dialed == []
        assert monitor.client is None
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())


def test_stop_during_hanging_dial_returns_promptly():
    async def scenario():
        dial_cancelled = asyncio.Event()

        async def dial(url, timeout):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                dial_cancelled.set()
                raise

        settings = Settings(ws_url="ws://node.test:8546", connection_timeout_s=600)
        monitor = Monitor(settings, Recorder(), dial=dial)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is MonitorState.CONNECTING and not task.done())
        await asyncio.sleep(0.01)
        monitor.request_stop()
        await asyncio.wait_for(task, 1.0)

        assert dial_cancelled.is_set()
        assert monitor.client is None
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())


def test_stop_during_pending_subscribe_unsubscribes_blocks_and_closes():
    async def scenario():
        client = FakeClient(hang_pending=True)
        monitor, _ = make_monitor(client, Recorder())
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: client.pending_attempted)
        monitor.request_stop()
        await asyncio.wait_for(task, 1.0)

        assert client.pending_cancelled
        assert client.head_sub.unsubscribe_calls == 1
        assert monitor.tx_sub is None
        assert client.close_calls == 1
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())


def test_unanswered_unsubscribe_does_not_block_shutdown():
    async def scenario():
        client = FakeClient(hang_unsubscribe=True)
        monitor, _ = make_monitor(client, Recorder(), unsubscribe_timeout_s=0.05)
        task = asyncio.create_task(monitor.run())
        await wait_until(lambda: monitor.state is MonitorState.RUNNING)
        monitor.request_stop()
        await asyncio.wait_for(task, 2.0)

        assert client.head_sub.unsubscribe_calls == 1
        assert client.tx_sub.unsubscribe_calls == 1
        assert client.close_calls == 1
        assert monitor.state is MonitorState.TERMINATED

    asyncio.run(scenario())
