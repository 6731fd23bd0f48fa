"""
Bounded confirmation polling schedule.

Three reads of the entitlement store separated by two fixed waits
(2s, then 3s). Kept free of I/O so it can be tested without real delays.
"""
from typing import Optional, Tuple

# Wait before read N+1, indexed by the number of reads already made
POLL_WAITS: Tuple[float, ...] = (2.0, 3.0)
MAX_READS = len(POLL_WAITS) + 1
MAX_TOTAL_WAIT = sum(POLL_WAITS)


def next_poll_delay(reads_done: int, waited: float) -> Optional[float]:
    """
    Decide what to do after an unconfirmed read.

    Args:
        reads_done: Reads already performed (0 before the immediate read)
        waited: Seconds already spent waiting between reads

    Returns:
        Seconds to wait before the next read, or None to give up
    """
    if reads_done <= 0:
        return 0.0
    if reads_done >= MAX_READS:
        return None
    delay = POLL_WAITS[reads_done - 1]
    if waited + delay > MAX_TOTAL_WAIT:
        return None
    return delay
