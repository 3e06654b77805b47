import json
import random

import anyio
import pytest
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.crash_game import CrashGame
from database import Base
from models import Wallet
from services.ledger_service import SqlLedger
from services.user_service import upsert_discord_user


class FakeWebSocket:
    """測試用的 Starlette WebSocket 替身"""

    def __init__(self):
        self.sent = []
        self.closed_with = None
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text):
        self.sent.append(text)

    async def close(self, code=1000):
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED

    def drop(self):
        """對方直接消失（例如沒回 transport ping 被 uvicorn 關掉）"""
        self.client_state = WebSocketState.DISCONNECTED


class FixedRandom(random.Random):
    """random() 依序回傳排好的值"""

    def __init__(self, *values):
        super().__init__()
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def drain(connection):
    """取出連線 outbox 裡所有排隊的 frame"""
    frames = []
    while True:
        try:
            frames.append(json.loads(connection.outbox_reader.receive_nowait()))
        except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
            return frames


def frame_types(frames):
    return [frame["type"] for frame in frames]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(session_factory):
    """建立一個有餘額的 user，回傳 id"""

    def _make_user(name, balance=1000):
        session = session_factory()
        try:
            user = upsert_discord_user(session, f"discord-{name}", name)
            user_id = user.id
            wallet = session.query(Wallet).filter(Wallet.user_id == user_id).one()
            wallet.balance = balance
            session.commit()
            return user_id
        finally:
            session.close()

    return _make_user


@pytest.fixture
def balance_of(session_factory):
    def _balance_of(user_id):
        session = session_factory()
        try:
            return session.query(Wallet).filter(Wallet.user_id == user_id).one().balance
        finally:
            session.close()

    return _balance_of


@pytest.fixture
def ledger(session_factory):
    return SqlLedger(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_game(ledger, clock):
    def _make_game(*crash_draws, **kwargs):
        kwargs.setdefault("rng", FixedRandom(*crash_draws) if crash_draws else random.Random(7))
        kwargs.setdefault("clock", clock)
        return CrashGame(ledger, **kwargs)

    return _make_game


@pytest.fixture
def join(make_user):
    """把假的 socket 接上 game，並綁定一個新 user"""

    def _join(game, name, balance=1000):
        user_id = make_user(name, balance)
        connection = game.connect(FakeWebSocket())
        assert connection.authenticate(user_id, name)
        return connection, user_id

    return _join
