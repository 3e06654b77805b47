"""
Core crash game 邏輯

這個 package 負責即時 engine：
- CrashGame：round 狀態機、下注與 cashout
- Registries：本 round 的 player、線上連線
- Broadcast：狀態變化的廣播
- Locks：ledger 的行級鎖
"""
