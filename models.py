"""
資料庫 models 與共用 enum

只有 ledger 會持久化：users、錢包餘額、錢包交易紀錄。
Crash round 只存在於 process 記憶體中。
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class RoundPhase(str, enum.Enum):
    """Crash round 的 phase；value 就是傳給 client 的字串"""
    WAITING = "waiting"
    BETTING = "betting"
    RUNNING = "running"
    CRASHED = "crashed"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    discord_id = Column(String(64), unique=True, nullable=False, index=True)
    discord_name = Column(String(128), nullable=False)
    avatar_url = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    wallet = relationship("Wallet", back_populates="user", uselist=False)


class Wallet(Base):
    __tablename__ = "wallets"

    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    balance = Column(BigInteger, nullable=False, default=0)

    user = relationship("User", back_populates="wallet")


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # 有正負號：扣款為負
    amount = Column(BigInteger, nullable=False)
    reason = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
