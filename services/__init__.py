"""
Service Layer

計算與 ledger 邏輯，不做 round 狀態轉換：
- MultiplierService：crash point、倍率曲線、派彩
- HouseEdgeService：crash 公式的期望報酬
- LedgerService：餘額與錢包交易
- UserService：Discord 身份與錢包
"""
