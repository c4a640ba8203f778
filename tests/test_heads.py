import asyncio

from block_indexer.heads import HeadWatcher


def test_without_websocket_wait_is_a_plain_sleep():
    watcher = HeadWatcher(None)

    async def scenario():
        await watcher.start()
        woke = await watcher.wait(0)
        await watcher.stop()
        return woke

    assert asyncio.run(scenario()) is False


def test_new_head_notification_wakes_the_waiter():
    watcher = HeadWatcher("ws://node:8546")

    async def scenario():
        # Stand-in for the subscription task; only its presence matters to wait().
        watcher._task = asyncio.create_task(asyncio.sleep(3600))
        watcher._handle_message({"jsonrpc": "2.0", "method": "eth_subscription", "params": {"result": {}}})
        woke = await watcher.wait(5)
        timed_out = await watcher.wait(0.01)
        await watcher.stop()
        return woke, timed_out

    assert asyncio.run(scenario()) == (True, False)
