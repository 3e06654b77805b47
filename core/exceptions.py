"""
自定義異常

所有業務邏輯的異常集中在這裡，engine 與 API 層可以統一處理
"""


class CasinoException(Exception):
    """所有 casino 異常的基類"""
    pass


# ============ Ledger 相關異常 ============

class UserNotFound(CasinoException):
    """User 不存在"""
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class InsufficientBalance(CasinoException):
    """錢包餘額不足以扣款"""
    def __init__(self, user_id, balance: int, amount: int):
        self.user_id = user_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"User {user_id} has {balance} Bierkästen, cannot debit {amount}"
        )


class LedgerError(CasinoException):
    """Ledger 儲存失敗（資料庫錯誤），transaction 已 rollback"""
    pass


# ============ Round 相關異常 ============

class InvalidStateTransition(CasinoException):
    """在錯誤的 phase 要求 round 轉換"""
    pass


# ============ Player 相關異常 ============

class PlayerAlreadyRegistered(CasinoException):
    """這條連線本 round 已經下注"""
    def __init__(self, connection_id):
        self.connection_id = connection_id
        super().__init__(f"Connection {connection_id} already placed a bet this round")


class AlreadyCashedOut(CasinoException):
    """Player 本 round 已經 cashout"""
    def __init__(self, connection_id):
        self.connection_id = connection_id
        super().__init__(f"Connection {connection_id} already cashed out this round")
