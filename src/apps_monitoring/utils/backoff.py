def backoff_delay(failures: int, base: float, ceiling: float) -> float:
    """``min(base * 2**(failures - 1), ceiling)``; zero before the first failure."""
    if failures <= 0:
        return 0.0
    return min(base * (2 ** (failures - 1)), ceiling)
