import math
from decimal import ROUND_FLOOR, Decimal

from game_rewards.config import DEFAULT_CONVERSION_RULES, ConversionRules, GameProvider


def convert_to_points(provider: GameProvider, raw_value: float, rules: ConversionRules | None = None) -> int:
    """
    Convert a provider's raw reward value into whole platform points.

    Values below the provider's minimum convert to 0, which means "no credit"
    and is not an error. The result never exceeds ``maximum_credit``.
    """
    rules = rules or DEFAULT_CONVERSION_RULES[provider]
    if raw_value is None or not math.isfinite(raw_value) or raw_value < rules.minimum_value:
        return 0
    value = Decimal(str(raw_value))
    step = Decimal(str(rules.step)) if rules.step and rules.step > 0 else Decimal(1)
    steps = (value / step).to_integral_value(rounding=ROUND_FLOOR)
    points = int((steps * Decimal(str(rules.multiplier))).to_integral_value(rounding=ROUND_FLOOR))
    return max(0, min(points, rules.maximum_credit))
