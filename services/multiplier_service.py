"""
Multiplier Service：crash point、倍率成長與派彩

純計算邏輯，不涉及狀態轉換。Client 用同樣的公式畫曲線，
所以 rounding 與常數都不能有出入。
"""
import math
import random
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP

DEFAULT_BASE = 1.05
MIN_CRASH_POINT = 1.01

_CENTS = Decimal("0.01")


def round2(value: float) -> float:
    """
    四捨五入到小數兩位，跟 client 的 Number.toFixed(2) 一致

    以 float 實際的二進位值判斷：2.675 其實是 2.67499999...，所以得到 2.67；
    只有剛好落在中間的值（例如 0.125）才會進位。
    """
    return float(Decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP))


def generate_crash_point(rng: random.Random = None, min_point: float = MIN_CRASH_POINT) -> float:
    """
    抽新 round 的 crash point

    公式：
        r  ~ uniform [0, 1)
        cp = max(min_point, round2(1 / (1 - r)))

    大幅偏向低倍率、尾巴無上限：P(cp >= x) 約為 1/x。
    下限 1.01 排除 r -> 0 時第一個 tick 就 crash 的情況。

    參數：
        rng: 亂數來源（省略時用 random module）
        min_point: crash point 下限

    返回：
        小數兩位的 crash point
    """
    r = (rng or random).random()
    return max(min_point, round2(1.0 / (1.0 - r)))


def compute_multiplier(elapsed_seconds: float, base: float = DEFAULT_BASE) -> float:
    """
    跑了 elapsed_seconds 秒之後的倍率

        multiplier = round2(max(1.00, base ** elapsed_seconds))

    範例（base 1.05）：
        compute_multiplier(0)     -> 1.0
        compute_multiplier(12.05) -> 1.8
        compute_multiplier(18.8)  -> 2.5
    """
    return round2(max(1.0, base ** elapsed_seconds))


def compute_payout(bet: int, multiplier: float) -> int:
    """
    Cashout 派彩：floor(bet * multiplier)

    用 decimal 計算；用 float 的話 100 * 1.15 是 114.99999999999999，
    會少賠一箱。
    """
    product = Decimal(bet) * Decimal(repr(multiplier))
    return int(product.to_integral_value(rounding=ROUND_FLOOR))


def seconds_to_reach(multiplier: float, base: float = DEFAULT_BASE) -> float:
    """未取整的曲線到達 multiplier 需要的秒數"""
    if multiplier <= 1.0:
        return 0.0
    return math.log(multiplier) / math.log(base)
