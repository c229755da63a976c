import time


def get_current_timestamp() -> int:
    """Milliseconds since the epoch. All stored timestamps use this unit."""
    return int(time.time() * 1000)
