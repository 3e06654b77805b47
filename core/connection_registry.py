"""
Connection Registry：管理所有線上連線

Connection 的生命週期跨越多個 round：
1. 建立時尚未認證，之後最多綁定一個 user
2. 只會在斷線或 liveness 清理時移除

送出的 frame 先放進每條連線自己的有界 outbox：
寫入端不 await，由每個 socket 的 sender task 負責送出，
所以一個慢的 client 不會拖住其他人。

Liveness：
- ping/pong 由 transport 層處理（uvicorn 的 ws_ping_interval / ws_ping_timeout），
  瀏覽器會自動回 pong，client 不需要送任何 application frame
- sweep 只回收 socket 已經不是 CONNECTED 的連線
"""
import json
import logging
from typing import Iterator, Optional
from uuid import uuid4

import anyio
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

logger = logging.getLogger(__name__)

GOING_AWAY = 1001


class Connection:

    def __init__(self, websocket: WebSocket, outbox_size: int = 256):
        self.id = uuid4().hex
        self.websocket = websocket
        self.user_id: Optional[int] = None
        self.display_name: Optional[str] = None
        # auth 的 user lookup 進行中
        self.authenticating = False
        self.outbox, self.outbox_reader = anyio.create_memory_object_stream(outbox_size)

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} user={self.user_id}>"

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_connected(self) -> bool:
        """兩端的 socket 狀態都還是 CONNECTED"""
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def authenticate(self, user_id: int, display_name: str) -> bool:
        """綁定 user；一條連線只能認證一次"""
        if self.is_authenticated:
            return False
        self.user_id = user_id
        self.display_name = display_name
        return True

    def send_text(self, text: str) -> bool:
        """
        把 frame 放進 outbox，不等待

        返回：
            False 表示 frame 被丟掉（outbox 已滿或已關閉）
        """
        try:
            self.outbox.send_nowait(text)
            return True
        except anyio.WouldBlock:
            logger.warning(f"Outbox full for {self}, dropping frame")
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug(f"Outbox closed for {self}, dropping frame")
        return False

    def send(self, message: dict) -> bool:
        return self.send_text(json.dumps(message))

    async def pump(self) -> None:
        """Sender task：把 outbox 裡的 frame 寫到 socket，直到 outbox 關閉"""
        async with self.outbox_reader:
            async for text in self.outbox_reader:
                try:
                    await self.websocket.send_text(text)
                except Exception as e:
                    # socket 已經斷了，清理交給 receiver 那一側
                    logger.info(f"Stopped sending to {self}: {e}")
                    return

    def close_outbox(self) -> None:
        self.outbox.close()

    async def terminate(self) -> None:
        """
        強制關閉 socket（liveness 清理）

        對方可能早就不在了：uvicorn 會丟 ClientDisconnected (OSError)，
        Starlette 再轉成 WebSocketDisconnect；兩者都只記 log。
        """
        self.close_outbox()
        try:
            await self.websocket.close(code=GOING_AWAY)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            logger.debug(f"Socket of {self} already closed: {e!r}")


class ConnectionRegistry:
    """所有線上連線"""

    def __init__(self):
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def add(self, connection: Connection) -> Connection:
        self._connections[connection.id] = connection
        return connection

    def remove(self, connection_id: str) -> Optional[Connection]:
        return self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def sweep(self) -> list[Connection]:
        """
        一次 liveness 檢查

        沒回 transport ping 的 socket 會被 uvicorn 關掉；
        這裡找出 socket 已關閉、但還留在 registry 裡的連線。
        安靜不說話的 client 不算 stale。

        返回：
            stale 的連線（仍在 registry 中，由呼叫端移除）
        """
        return [connection for connection in self if not connection.is_connected]
