import math

BASE_POINTS = 100
MAX_SPEED_BONUS = 50


def compute_score(is_correct: bool, deadline_at: int, seconds_per_question: int, now: int) -> int:
    """Points for one answer: 0 if wrong, else 100 plus up to 50 for speed.

    ``deadline_at`` and ``now`` are epoch milliseconds. The bonus is the
    fraction of the answering window still left, so a correct answer always
    lands in [100, 150] however late or early the clock reads.
    """
    if not is_correct:
        return 0
    total_ms = seconds_per_question * 1000
    if total_ms <= 0:
        return BASE_POINTS
    remaining_ms = deadline_at - now
    speed_bonus = math.floor(remaining_ms / total_ms * MAX_SPEED_BONUS)
    speed_bonus = max(0, min(MAX_SPEED_BONUS, speed_bonus))
    return BASE_POINTS + speed_bonus
