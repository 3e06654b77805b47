from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

import anyio

from database import Base, engine, SessionLocal, get_settings
from api import crash
from core.crash_game import CrashGame
from services.ledger_service import SqlLedger

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 建立資料表，crash 桌在背景開始跑
    Base.metadata.create_all(bind=engine)

    game = CrashGame.from_settings(settings, SqlLedger(SessionLocal))
    app.state.crash_game = game

    async with anyio.create_task_group() as task_group:
        task_group.start_soon(game.run)
        task_group.start_soon(game.run_heartbeat)
        yield
        # Shutdown: 停掉 round loop 與 heartbeat
        logger.info("Stopping crash game")
        task_group.cancel_scope.cancel()


app = FastAPI(
    title="Bierbaron Casino API",
    description="Realtime crash game backed by the Bierkästen ledger",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(crash.router)


@app.get("/")
def root():
    return {"message": "Bierbaron Casino API", "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}


def server_options(settings) -> dict:
    """
    uvicorn 參數

    WebSocket 的 ping/pong 交給 uvicorn 在 transport 層處理：
    每 heartbeat_interval_s 送一次 ping，同樣時間內沒回 pong 就關閉 socket，
    之後由 /ws/crash 的清理流程移除連線。
    用 CLI 啟動時要自己帶 --ws-ping-interval / --ws-ping-timeout。
    """
    return {
        "host": "0.0.0.0",
        "port": 8000,
        "ws_ping_interval": settings.heartbeat_interval_s,
        "ws_ping_timeout": settings.heartbeat_interval_s,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, **server_options(settings))
