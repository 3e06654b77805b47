"""
Crash game 端點

1. WS /ws/crash：即時協定（收 auth / bet / cashout；
   送 state、round、倍率、player 列表、錯誤）
2. GET /api/crash/state：新 socket 收到的同一份 snapshot
"""
import logging

import anyio
from fastapi import APIRouter, Request, WebSocket

from core.crash_game import CrashGame
from schemas import GameStateResponse

router = APIRouter(tags=["crash"])
logger = logging.getLogger(__name__)


def get_crash_game(request: Request) -> CrashGame:
    return request.app.state.crash_game


@router.get("/api/crash/state", response_model=GameStateResponse)
def get_crash_state(request: Request):
    """
    目前的 phase、倍率與 player

    Response 永遠不含 crash point。
    """
    snapshot = get_crash_game(request).snapshot()
    return GameStateResponse(
        phase=snapshot["phase"],
        multiplier=snapshot["multiplier"],
        players=snapshot["players"],
    )


@router.websocket("/ws/crash")
async def crash_socket(websocket: WebSocket):
    """
    一個 client socket

    同時跑兩個 task：
    - receiver：把每個收到的 text frame 交給 game
    - sender：把連線的 outbox 寫到 socket

    任一邊先結束（client 離開、socket 斷掉、liveness 清理）就取消另一邊，
    然後把連線與其 player 從 game 移除。
    """
    game: CrashGame = websocket.app.state.crash_game
    await websocket.accept()
    connection = game.connect(websocket)

    try:
        async with anyio.create_task_group() as task_group:

            async def receive_frames() -> None:
                try:
                    async for text in websocket.iter_text():
                        await game.handle_frame(connection, text)
                finally:
                    task_group.cancel_scope.cancel()

            task_group.start_soon(receive_frames)
            await connection.pump()
            task_group.cancel_scope.cancel()
    finally:
        game.disconnect(connection)
