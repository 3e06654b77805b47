"""
House Edge Service：crash game 的期望報酬

針對「永遠在固定目標倍率 cashout」的玩家，用解析式與模擬兩種方式
重新推導公開 crash point 公式的 house edge。兩者都不改變分佈。

推導：
    玩家只能在 tick loop 公佈過的倍率 cashout。設 m 為第一個 >= target
    的公佈倍率。到達 crash point 的那個 tick 會先 crash，所以只有
    crash_point > m，也就是 crash_point >= m + 0.01 時才拿得到錢。
    四捨五入之下等於 1 / (1 - r) >= m + 0.005，機率為 1 / (m + 0.005)。

        return     = m / (m + 0.005)
        house edge = 0.005 / (m + 0.005)

    目標 2x 時約 0.25%，目標越高越小。
"""
import random
from typing import Optional

from services.multiplier_service import (
    DEFAULT_BASE,
    MIN_CRASH_POINT,
    compute_multiplier,
    generate_crash_point,
    seconds_to_reach,
)

DEFAULT_TICK_MS = 100


def first_tick_multiplier(
    target: float,
    base: float = DEFAULT_BASE,
    tick_ms: int = DEFAULT_TICK_MS
) -> float:
    """
    Tick 節奏實際會公佈的、第一個 >= target 的倍率

    從解析交點的前兩個 tick 開始往後找，因為四捨五入可能讓更早的 tick 就達標。
    """
    tick = max(0, int(seconds_to_reach(target, base) * 1000 // tick_ms) - 2)
    while True:
        multiplier = compute_multiplier(tick * tick_ms / 1000, base)
        if multiplier >= target:
            return multiplier
        tick += 1


def analytic_return(
    target: float,
    base: float = DEFAULT_BASE,
    tick_ms: int = DEFAULT_TICK_MS
) -> float:
    """
    永遠在 target cashout 時，每單位下注的期望報酬

    參數：
        target: cashout 目標，>= 1.01
        base: 倍率成長的底數
        tick_ms: tick 間隔（毫秒）

    返回：
        m / (m + 0.005)，m 為第一個 >= target 的公佈倍率
    """
    if target < MIN_CRASH_POINT:
        raise ValueError(f"Cashout target must be >= {MIN_CRASH_POINT}, got {target}")
    m = first_tick_multiplier(target, base, tick_ms)
    return m / (m + 0.005)


def analytic_house_edge(
    target: float,
    base: float = DEFAULT_BASE,
    tick_ms: int = DEFAULT_TICK_MS
) -> float:
    return 1.0 - analytic_return(target, base, tick_ms)


def simulate_return(
    target: float,
    rounds: int,
    rng: Optional[random.Random] = None,
    base: float = DEFAULT_BASE,
    tick_ms: int = DEFAULT_TICK_MS
) -> float:
    """
    永遠在 target cashout 時報酬的 Monte-Carlo 估計

    用 generate_crash_point 抽 `rounds` 個 crash point，
    crash point 嚴格大於 m 的 round 派 m。
    """
    if rounds <= 0:
        raise ValueError("rounds must be positive")
    rng = rng or random.Random()
    m = first_tick_multiplier(target, base, tick_ms)

    paid = 0.0
    for _ in range(rounds):
        if generate_crash_point(rng) > m:
            paid += m
    return paid / rounds
