import uuid
from typing import Tuple


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """(low, high) representative of an unordered pair under string ordering.

    Every place that keys storage on an unordered pair of users goes through
    this function so the ordering stays consistent.
    """
    if user_a == user_b:
        raise ValueError("a pair needs two distinct users")
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)
