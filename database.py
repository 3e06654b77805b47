from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from pydantic_settings import BaseSettings
from functools import lru_cache, wraps
import logging

from core.exceptions import CasinoException

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./bierbaron.db"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Crash game 時間設定
    crash_betting_duration_ms: int = 10000
    crash_tick_interval_ms: int = 100
    crash_pause_ms: int = 5000
    crash_multiplier_base: float = 1.05
    crash_min_point: float = 1.01

    # 即時連線
    heartbeat_interval_s: float = 30.0
    outbox_buffer_size: int = 256

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()

# SQLite 需要 check_same_thread=False：
# ledger 操作在 anyio 的 worker thread 裡執行，不同 thread 會用到同一個連線
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
    pool_pre_ping=True
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def transactional(func):
    """
    Transaction decorator：讓 ledger 操作具有原子性

    使用方式：
        @transactional
        def some_ledger_operation(db: Session, ...):
            # 所有 DB 操作都在同一個 transaction 內
            wallet = with_wallet_lock(user_id, db).first()
            wallet.balance -= amount
            # 不需要手動 commit，decorator 會處理

    如果函數拋出異常：
        - 自動 rollback
        - 異常會被重新拋出給呼叫端
        - 業務異常（CasinoException）記 INFO，其他記 ERROR 並附 traceback

    注意：
        - 第一個參數必須是 db: Session
        - 函數內不要 commit
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except CasinoException as e:
            logger.info(f"Transaction rolled back in {func.__name__}: {e}")
            db.rollback()
            raise
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
