"""
Crash Game：server 端權威的 round 狀態機

職責：
1. 驅動無限循環的 round：Betting -> Running -> Crashed -> 暫停
2. 每 round 抽 crash point，每個 tick 推進倍率
3. 依目前 phase 授權下注與 cashout
4. 透過廣播讓所有連線的 player 列表保持一致

併發模型：
- 所有 in-memory 狀態只在一個 event loop 上變動；round loop 是
  phase / crash point / 倍率唯一的寫入者
- Ledger 呼叫（同步 SQLAlchemy，可能卡在 SELECT ... FOR UPDATE）
  一律丟到 worker thread（anyio.to_thread），tick 與其他連線不會被拖住
- Handler 先同步完成 phase 檢查與 in-memory 預約，之後才 await ledger：
  - 下注：連線先標記為 pending；下注截止後 round loop 會等所有
    pending 的扣款結束才進入 Running
  - Cashout：收到 frame 時立刻用「最後公佈的倍率」lock-in（cashedOutAt），
    入帳在 thread 裡完成；入帳失敗才撤回

Tie-break：
    Cashout 在 crash 那個 tick 之前被處理 -> 以最後公佈的倍率成交，
    即使入帳完成時 round 已經 crash；在那之後才被處理 -> phase 是
    CRASHED，直接忽略。
"""
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

import anyio
import anyio.to_thread
from pydantic import ValidationError

from core.broadcast import Broadcaster
from core.connection_registry import Connection, ConnectionRegistry
from core.exceptions import CasinoException, InsufficientBalance, InvalidStateTransition
from core.player_registry import Player, PlayerRegistry
from models import RoundPhase
from schemas import AuthMessage, BetMessage, CashoutMessage, client_message_adapter
from services.multiplier_service import (
    DEFAULT_BASE,
    MIN_CRASH_POINT,
    compute_multiplier,
    compute_payout,
    generate_crash_point,
)

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE_MESSAGE = "Nicht genug Guthaben."


class Ledger(Protocol):
    """Engine 需要的 ledger 操作（實作見 services.ledger_service.SqlLedger），皆為同步阻塞呼叫"""

    def lookup_user(self, user_id: int): ...

    def debit_bet(self, user_id: int, amount: int) -> int: ...

    def credit_cashout(self, user_id: int, amount: int, multiplier: float) -> int: ...


@dataclass
class Round:
    phase: RoundPhase = RoundPhase.WAITING
    crash_point: float = 0.0
    multiplier: float = 1.0
    started_at: Optional[float] = None
    betting_open: bool = False

    @property
    def published_multiplier(self) -> float:
        """Client 可以看到的倍率；只有 Running / Crashed 才是實際值"""
        if self.phase in (RoundPhase.RUNNING, RoundPhase.CRASHED):
            return self.multiplier
        return 1.0


class CrashGame:
    """
    一張 crash 桌

    各 instance 互相獨立：應用程式在 app.state 上放一個，
    測試需要幾個就建幾個。
    """

    def __init__(
        self,
        ledger: Ledger,
        betting_duration_ms: int = 10000,
        tick_interval_ms: int = 100,
        pause_ms: int = 5000,
        multiplier_base: float = DEFAULT_BASE,
        min_crash_point: float = MIN_CRASH_POINT,
        heartbeat_interval_s: float = 30.0,
        outbox_size: int = 256,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.betting_duration_ms = betting_duration_ms
        self.tick_interval_ms = tick_interval_ms
        self.pause_ms = pause_ms
        self.multiplier_base = multiplier_base
        self.min_crash_point = min_crash_point
        self.heartbeat_interval_s = heartbeat_interval_s
        self.outbox_size = outbox_size
        self._rng = rng or random.SystemRandom()
        self._clock = clock

        self.round = Round()
        self.players = PlayerRegistry()
        self.connections = ConnectionRegistry()
        self.broadcaster = Broadcaster(self.connections)

        # 扣款進行中的連線
        self.pending_bets: set[str] = set()
        self._bets_settled: Optional[anyio.Event] = None

    @classmethod
    def from_settings(cls, settings, ledger: Ledger) -> "CrashGame":
        return cls(
            ledger,
            betting_duration_ms=settings.crash_betting_duration_ms,
            tick_interval_ms=settings.crash_tick_interval_ms,
            pause_ms=settings.crash_pause_ms,
            multiplier_base=settings.crash_multiplier_base,
            min_crash_point=settings.crash_min_point,
            heartbeat_interval_s=settings.heartbeat_interval_s,
            outbox_size=settings.outbox_buffer_size,
        )

    @property
    def phase(self) -> RoundPhase:
        return self.round.phase

    # ============ Views ============

    def snapshot(self) -> dict:
        """中途加入的 client 需要的完整狀態；絕不包含 crash point"""
        return {
            "type": "gameState",
            "phase": self.round.phase.value,
            "multiplier": self.round.published_multiplier,
            "players": self.players.to_wire(),
        }

    def broadcast_players(self) -> None:
        self.broadcaster.publish({"type": "playerUpdate", "players": self.players.to_wire()})

    # ============ Round 轉換（只由 round loop 呼叫）============

    def begin_betting(self) -> float:
        """
        開放新 round 下注

        流程：
        1. 抽 crash point（整個 round 固定不變）
        2. 倍率歸 1
        3. 把下注時間廣播給所有連線

        返回：
            crash point
        """
        if self.round.phase not in (RoundPhase.WAITING, RoundPhase.CRASHED):
            raise InvalidStateTransition(
                f"Cannot start betting from {self.round.phase.value}"
            )

        crash_point = generate_crash_point(self._rng, self.min_crash_point)
        self.round = Round(
            phase=RoundPhase.BETTING,
            crash_point=crash_point,
            multiplier=1.0,
            betting_open=True,
        )

        logger.info(f"New round, crash point {crash_point}x")
        self.broadcaster.publish({
            "type": "newRound",
            "phase": RoundPhase.BETTING.value,
            "duration": self.betting_duration_ms,
        })
        return crash_point

    async def close_betting(self) -> None:
        """停止接受新下注，並等所有進行中的扣款結束"""
        self.round.betting_open = False
        while self.pending_bets:
            self._bets_settled = anyio.Event()
            await self._bets_settled.wait()
        self._bets_settled = None

    def begin_running(self, now: Optional[float] = None) -> bool:
        """
        截止下注，倍率開始跑

        沒有人下注的 round 直接跳過：phase 回到 WAITING，不跑任何 tick。

        返回：
            True 表示 round 開始跑，False 表示被跳過
        """
        if self.round.phase != RoundPhase.BETTING:
            raise InvalidStateTransition(
                f"Cannot start running from {self.round.phase.value}"
            )
        self.round.betting_open = False

        if len(self.players) == 0:
            logger.info("No bets placed, skipping round")
            self.round.phase = RoundPhase.WAITING
            return False

        self.round.phase = RoundPhase.RUNNING
        self.round.started_at = self._clock() if now is None else now
        self.round.multiplier = 1.0

        logger.info(f"Round running with {len(self.players)} players")
        self.broadcaster.publish({"type": "roundStart", "phase": RoundPhase.RUNNING.value})
        return True

    def tick(self, now: Optional[float] = None) -> bool:
        """
        倍率前進一個 tick

        Crash 的判斷跟倍率計算在同一步：倍率一到達 crash point
        就被夾成剛好等於 crash point，round 結束。

        返回：
            True 表示這個 tick 讓 round crash
        """
        if self.round.phase != RoundPhase.RUNNING:
            raise InvalidStateTransition(f"Cannot tick in {self.round.phase.value}")

        now = self._clock() if now is None else now
        elapsed = max(0.0, now - self.round.started_at)
        multiplier = max(
            self.round.multiplier,
            compute_multiplier(elapsed, self.multiplier_base)
        )

        if multiplier >= self.round.crash_point:
            self.round.multiplier = self.round.crash_point
            self.round.phase = RoundPhase.CRASHED
            logger.info(f"Round crashed at {self.round.crash_point}x")
            self.broadcaster.publish({"type": "crash", "multiplier": self.round.crash_point})
            return True

        self.round.multiplier = multiplier
        self.broadcaster.publish({"type": "multiplierUpdate", "multiplier": multiplier})
        return False

    def reset_round(self) -> None:
        """清掉本 round 的 player，等下一個 round"""
        self.players.clear()
        self.round = Round()

    # ============ Round loop ============

    async def run_round(self, sleep: Callable[[float], Awaitable] = anyio.sleep) -> None:
        """完整的一個 round：下注、跑到 crash（除非被跳過）、暫停"""
        self.begin_betting()
        await sleep(self.betting_duration_ms / 1000)
        await self.close_betting()

        if self.begin_running():
            while True:
                await sleep(self.tick_interval_ms / 1000)
                if self.tick():
                    break

        await sleep(self.pause_ms / 1000)
        self.reset_round()

    async def run(self, sleep: Callable[[float], Awaitable] = anyio.sleep) -> None:
        """無限 round loop；失敗的 round 記 log 後直接開下一個"""
        logger.info("Crash round loop started")
        while True:
            try:
                await self.run_round(sleep)
            except Exception as e:
                logger.error(f"Crash round failed, resetting: {e}", exc_info=True)
                self.reset_round()
                await sleep(self.pause_ms / 1000)

    async def run_heartbeat(self, sleep: Callable[[float], Awaitable] = anyio.sleep) -> None:
        """定期 liveness 檢查；單次失敗只記 log，不會結束 loop"""
        while True:
            await sleep(self.heartbeat_interval_s)
            try:
                await self.check_liveness()
            except Exception as e:
                logger.error(f"Liveness sweep failed: {e}", exc_info=True)

    async def check_liveness(self) -> list[Connection]:
        """
        回收 socket 已關閉的連線

        返回：
            被終止的連線
        """
        stale = self.connections.sweep()
        for connection in stale:
            logger.info(f"{connection} is no longer connected, terminating")
            self.disconnect(connection)
            await connection.terminate()
        return stale

    # ============ 連線 ============

    def connect(self, websocket) -> Connection:
        """註冊 socket 並送出目前狀態"""
        connection = self.connections.add(Connection(websocket, self.outbox_size))
        connection.send(self.snapshot())
        logger.info(f"{connection} connected ({len(self.connections)} online)")
        return connection

    def disconnect(self, connection: Connection) -> None:
        """
        移除連線與其 player

        Player 的下注沒收（不退款）。呼叫兩次也安全。
        """
        if self.connections.remove(connection.id) is None:
            return
        connection.close_outbox()

        player = self.players.remove(connection.id)
        if player:
            logger.info(
                f"{player.display_name} left mid-round, bet of {player.bet} forfeited"
            )
            self.broadcast_players()
        logger.info(f"{connection} disconnected ({len(self.connections)} online)")

    # ============ Inbound frames ============

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        """
        分派一個收到的 text frame

        格式錯誤或未知種類的 frame 直接丟掉，不回覆。
        """
        try:
            message = client_message_adapter.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.debug(f"Ignoring frame from {connection}: {e}")
            return

        if isinstance(message, AuthMessage):
            await self.authenticate(connection, message.payload.user_id)
        elif isinstance(message, BetMessage):
            await self.place_bet(connection, message.payload.amount)
        elif isinstance(message, CashoutMessage):
            await self.cash_out(connection)

    async def authenticate(self, connection: Connection, user_id: int) -> bool:
        if connection.is_authenticated or connection.authenticating:
            return False

        connection.authenticating = True
        try:
            user = await anyio.to_thread.run_sync(self.ledger.lookup_user, user_id)
        except CasinoException as e:
            logger.error(f"Auth of {connection} failed: {e}", exc_info=True)
            return False
        finally:
            connection.authenticating = False

        if user is None:
            logger.debug(f"Auth for unknown user {user_id} ignored")
            return False

        connection.authenticate(user.id, user.display_name)
        logger.info(f"{connection} authenticated as {user.display_name}")
        return True

    async def place_bet(self, connection: Connection, amount) -> Optional[Player]:
        """
        下注

        前置條件（不符合就靜默忽略）：
        - 連線已認證
        - phase 是 BETTING 且下注尚未截止
        - 這條連線本 round 還沒下注（含扣款進行中）
        - amount 取整後是正整數

        流程：
        1. 同步標記 pending（第二個 bet frame 會被忽略）
        2. 在 worker thread 裡以一個 locked transaction 扣款
        3. Commit 之後才註冊 player 並廣播 player 列表

        只有餘額不足會通知 client。

        返回：
            新的 Player；沒有任何變化時回 None
        """
        if not connection.is_authenticated:
            return None
        if self.round.phase != RoundPhase.BETTING or not self.round.betting_open:
            return None
        if connection.id in self.players or connection.id in self.pending_bets:
            return None
        bet = _to_bet(amount)
        if bet is None:
            return None

        self.pending_bets.add(connection.id)
        try:
            await anyio.to_thread.run_sync(self.ledger.debit_bet, connection.user_id, bet)
        except InsufficientBalance:
            connection.send({"type": "error", "message": INSUFFICIENT_BALANCE_MESSAGE})
            return None
        except CasinoException as e:
            logger.error(f"Bet of {connection.display_name} failed: {e}", exc_info=True)
            return None
        finally:
            self._settle_bet(connection.id)

        if connection.id not in self.connections:
            logger.info(
                f"{connection.display_name} left before the bet of {bet} settled, bet forfeited"
            )
            return None

        player = self.players.add(Player(
            connection_id=connection.id,
            user_id=connection.user_id,
            display_name=connection.display_name,
            bet=bet,
        ))
        logger.info(f"{player.display_name} placed a bet of {bet}")
        self.broadcast_players()
        return player

    def _settle_bet(self, connection_id: str) -> None:
        self.pending_bets.discard(connection_id)
        if not self.pending_bets and self._bets_settled is not None:
            self._bets_settled.set()

    async def cash_out(self, connection: Connection) -> Optional[int]:
        """
        Cashout

        前置條件（不符合就靜默忽略）：
        - phase 是 RUNNING
        - 連線有 player 且尚未 cashout

        流程：
        1. 同步 lock-in 目前公佈的倍率（cashedOutAt）
        2. 在 worker thread 裡入帳 floor(bet * multiplier)
        3. 通知 player 成功，廣播 player 列表

        入帳失敗時撤回 lock-in，player 可以在 round 還在跑時再試一次。

        返回：
            派彩金額；沒有任何變化時回 None
        """
        if self.round.phase != RoundPhase.RUNNING:
            return None
        player = self.players.get(connection.id)
        if player is None or player.has_cashed_out:
            return None

        multiplier = self.round.multiplier
        payout = compute_payout(player.bet, multiplier)
        self.players.lock_in(connection.id, multiplier)

        try:
            await anyio.to_thread.run_sync(
                self.ledger.credit_cashout, player.user_id, payout, multiplier
            )
        except CasinoException as e:
            logger.error(f"Cashout of {player.display_name} failed: {e}", exc_info=True)
            player.cashed_out_at = None
            return None

        logger.info(f"{player.display_name} cashed out at {multiplier}x for {payout}")
        connection.send({"type": "cashout_success", "amount": payout})
        self.broadcast_players()
        return payout


def _to_bet(amount) -> Optional[int]:
    """把 client 的金額取整成下注額；不是正的有限數字就回 None"""
    try:
        bet = int(amount // 1)
    except (TypeError, ValueError, OverflowError):
        return None
    return bet if bet > 0 else None
