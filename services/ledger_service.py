"""
Ledger Service：餘額與錢包交易

Casino 唯一持久化的部分。Crash engine 把 ledger 當成外部協作者，
只透過 SqlLedger 操作；core/ 裡不寫任何 SQL。

每次改餘額都在同一個 transaction 內依序執行：
    BEGIN -> lock + 讀餘額 -> 驗證 -> 寫餘額
          -> 新增交易紀錄 -> COMMIT
任何失敗都 ROLLBACK（由 @transactional 處理）。
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import InsufficientBalance, LedgerError, UserNotFound
from core.locks import with_wallet_lock
from database import SessionLocal, transactional
from models import User, Wallet, WalletTransaction

logger = logging.getLogger(__name__)

BET_REASON = "crash_bet"


@dataclass(frozen=True)
class UserIdentity:
    """與 session 脫鉤的 user，session 關閉後仍可使用"""
    id: int
    display_name: str


# ============ 基本操作（transaction 由呼叫端負責）============

def lookup_user(db: Session, user_id: int) -> Optional[UserIdentity]:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return None
    return UserIdentity(id=user.id, display_name=user.discord_name)


def lock_and_read_balance(db: Session, user_id: int) -> int:
    """
    鎖定 user 的錢包並回傳餘額

    沒有錢包的 user 會得到一個餘額 0 的錢包（跟登入時的處理一樣）。

    Raises:
        UserNotFound: user 不存在
    """
    wallet = with_wallet_lock(user_id, db).first()
    if wallet:
        return int(wallet.balance)

    if not db.query(User.id).filter(User.id == user_id).first():
        raise UserNotFound(user_id)

    logger.warning(f"User {user_id} had no wallet, creating one")
    db.add(Wallet(user_id=user_id, balance=0))
    db.flush()
    return int(with_wallet_lock(user_id, db).one().balance)


def write_balance(db: Session, user_id: int, new_balance: int) -> None:
    if new_balance < 0:
        raise ValueError(f"Balance cannot go negative (user {user_id}: {new_balance})")
    wallet = with_wallet_lock(user_id, db).first()
    if not wallet:
        raise UserNotFound(user_id)
    wallet.balance = new_balance
    db.flush()


def append_transaction(db: Session, user_id: int, amount: int, reason: str) -> WalletTransaction:
    tx = WalletTransaction(user_id=user_id, amount=amount, reason=reason)
    db.add(tx)
    db.flush()
    return tx


def cashout_reason(multiplier: float) -> str:
    """Crash 贏錢的交易標籤，例如 crash_win@1.8x、crash_win@2x"""
    return f"crash_win@{format(Decimal(repr(multiplier)).normalize(), 'f')}x"


# ============ 組合操作（自帶 transaction）============

@transactional
def debit_bet(db: Session, user_id: int, amount: int) -> int:
    """
    扣除 crash 下注

    流程：
    1. Lock 並讀取餘額
    2. 餘額不足就拒絕（不寫入任何東西）
    3. 寫入新餘額
    4. 新增一筆 -amount 的 crash_bet 交易

    參數：
        db: SQLAlchemy Session
        user_id: 下注者
        amount: 正的下注額

    返回：
        扣款後的餘額

    Raises:
        InsufficientBalance: 餘額 < amount
        UserNotFound: user 不存在
    """
    if amount <= 0:
        raise ValueError(f"Bet must be positive, got {amount}")

    balance = lock_and_read_balance(db, user_id)
    if balance < amount:
        raise InsufficientBalance(user_id, balance, amount)

    new_balance = balance - amount
    write_balance(db, user_id, new_balance)
    append_transaction(db, user_id, -amount, BET_REASON)

    logger.info(f"Debited crash bet of {amount} from user {user_id}, balance {new_balance}")
    return new_balance


@transactional
def credit_cashout(db: Session, user_id: int, amount: int, multiplier: float) -> int:
    """
    入帳 crash 贏的錢

    流程：
    1. Lock 並讀取餘額
    2. 寫入 餘額 + amount
    3. 新增一筆 crash_win@<multiplier>x 交易

    返回：
        入帳後的餘額
    """
    if amount < 0:
        raise ValueError(f"Payout cannot be negative, got {amount}")

    balance = lock_and_read_balance(db, user_id)
    new_balance = balance + amount
    write_balance(db, user_id, new_balance)
    append_transaction(db, user_id, amount, cashout_reason(multiplier))

    logger.info(
        f"Credited crash win of {amount} at {multiplier}x to user {user_id}, balance {new_balance}"
    )
    return new_balance


@transactional
def adjust_balance(db: Session, user_id: int, amount: int, reason: str) -> int:
    """
    管理用的餘額調整（正數加、負數扣）

    扣到負數時拋 InsufficientBalance，不做任何修改。

    返回：
        調整後的餘額
    """
    balance = lock_and_read_balance(db, user_id)
    if balance + amount < 0:
        raise InsufficientBalance(user_id, balance, -amount)

    new_balance = balance + amount
    write_balance(db, user_id, new_balance)
    append_transaction(db, user_id, amount, reason)

    logger.info(f"Adjusted balance of user {user_id} by {amount} ({reason}), balance {new_balance}")
    return new_balance


def get_balance(db: Session, user_id: int) -> int:
    wallet = db.query(Wallet).filter(Wallet.user_id == user_id).first()
    return int(wallet.balance) if wallet else 0


# ============ Engine adapter ============

class SqlLedger:
    """
    Crash engine 使用的 ledger

    每個操作開一個 session，資料庫錯誤一律轉成 LedgerError，
    engine 不會看到 SQLAlchemy 的異常。方法都是阻塞呼叫，
    engine 會放到 worker thread 執行。
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def lookup_user(self, user_id: int) -> Optional[UserIdentity]:
        db = self._session_factory()
        try:
            return lookup_user(db, user_id)
        except SQLAlchemyError as e:
            raise LedgerError(f"User lookup failed for {user_id}") from e
        finally:
            db.close()

    def debit_bet(self, user_id: int, amount: int) -> int:
        db = self._session_factory()
        try:
            return debit_bet(db, user_id, amount)
        except SQLAlchemyError as e:
            raise LedgerError(f"Bet debit failed for user {user_id}") from e
        finally:
            db.close()

    def credit_cashout(self, user_id: int, amount: int, multiplier: float) -> int:
        db = self._session_factory()
        try:
            return credit_cashout(db, user_id, amount, multiplier)
        except SQLAlchemyError as e:
            raise LedgerError(f"Cashout credit failed for user {user_id}") from e
        finally:
            db.close()
