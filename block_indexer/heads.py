import asyncio
import json
from typing import Any, Optional

import websockets

from .util import log


class HeadWatcher:
    """Wakes the follow loop when the node announces a new head.

    Without ``rpc_ws`` this is a plain fixed-interval sleep. With it, a
    background task keeps an ``eth_subscribe newHeads`` subscription open and
    ``wait`` returns as soon as a notification arrives, never later than the
    poll interval. The subscription only shortens the wait; heights are still
    read through the chain reader.
    """

    def __init__(self, rpc_ws: Optional[str] = None, reconnect_delay: int = 5):
        self.rpc_ws = rpc_ws
        self.reconnect_delay = reconnect_delay
        self._event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._ws_id = 0

    async def start(self) -> None:
        if self.rpc_ws and self._task is None:
            self._task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def wait(self, timeout: float) -> bool:
        if self._task is None:
            await asyncio.sleep(timeout)
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._event.clear()
        return True

    async def _listen(self) -> None:
        backoff = max(self.reconnect_delay, 1)
        max_backoff = 60

        while True:
            try:
                async with websockets.connect(self.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
                    sub_id = await self._subscribe(ws)
                    log(f"Subscribed to newHeads: {sub_id}")
                    backoff = max(self.reconnect_delay, 1)
                    async for message in ws:
                        self._handle_message(json.loads(message))
            except asyncio.CancelledError:
                raise
            except (OSError, ValueError, RuntimeError, websockets.exceptions.WebSocketException) as exc:
                log(f"WARN: head subscription error: {exc}; reconnecting in {backoff}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)

    async def _subscribe(self, ws: Any) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        await ws.send(json.dumps({"jsonrpc": "2.0", "id": req_id, "method": "eth_subscribe", "params": ["newHeads"]}))

        while True:
            data = json.loads(await ws.recv())
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")
            self._handle_message(data)

    def _handle_message(self, payload: dict) -> None:
        if payload.get("method") == "eth_subscription":
            self._event.set()
        elif payload.get("id") is not None and payload.get("error"):
            log(f"WARN: head subscription error payload: {payload}")
