"""
並發控制工具

Ledger 的 Database-level 鎖定機制。同一個 user 的兩個 socket 可能同時
下注或 cashout，所以每次改餘額都要先對錢包那一列 SELECT ... FOR UPDATE
（悲觀鎖，Pessimistic Locking）
"""
from sqlalchemy.orm import Session, Query

from models import Wallet


def with_wallet_lock(user_id: int, db: Session) -> Query:
    """
    鎖定一個 user 的錢包（行級鎖）

    使用場景：
    - 讀取即將被修改的餘額
    - 需要確保餘額在整個 transaction 期間不被其他請求修改

    範例：
        wallet = with_wallet_lock(user_id, db).first()
        if wallet.balance < amount:
            raise InsufficientBalance(user_id, wallet.balance, amount)
        wallet.balance -= amount
        db.commit()

    參數：
        user_id: 錢包擁有者的 id
        db: SQLAlchemy Session

    返回：
        Query object（呼叫 .first() 或 .one() 取得資料列）

    注意：
        - nowait=False 表示遇到鎖會等待，而不是直接失敗
        - 必須在 transaction 中使用（commit 或 rollback 會釋放鎖）
        - SQLite 沒有行級鎖，SQLAlchemy 會自動略過這個子句
    """
    return db.query(Wallet).filter(
        Wallet.user_id == user_id
    ).with_for_update(nowait=False)
