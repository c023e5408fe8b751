import math

from blindtest.config import MIN_POINTS


def compute_points(elapsed_ms: float, answer_window_ms: int, base_points: int, is_test: bool = False) -> int:
    """Points for a correct answer given ``elapsed_ms`` since the round started.

    Linear decay from ``base_points`` at 0 ms, floored at MIN_POINTS once the
    window is exhausted. Test rounds never score.
    """
    if is_test:
        return 0
    elapsed = max(0, min(elapsed_ms, answer_window_ms))
    speed_factor = 1 - elapsed / answer_window_ms
    # Half-up so x.5 always rounds toward more points
    return max(MIN_POINTS, math.floor(base_points * speed_factor + 0.5))
