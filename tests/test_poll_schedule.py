"""
Unit tests for the confirmation polling schedule.
"""
from app.services.poll_schedule import MAX_READS, MAX_TOTAL_WAIT, POLL_WAITS, next_poll_delay


def test_first_read_is_immediate():
    assert next_poll_delay(0, 0.0) == 0.0


def test_fixed_waits_between_reads():
    assert next_poll_delay(1, 0.0) == 2.0
    assert next_poll_delay(2, 2.0) == 3.0


def test_gives_up_after_three_reads():
    assert next_poll_delay(3, 5.0) is None
    assert next_poll_delay(10, 0.0) is None


def test_gives_up_when_wait_budget_exhausted():
    assert next_poll_delay(2, 4.0) is None


def test_full_schedule_is_bounded():
    reads, waited = 0, 0.0
    while True:
        delay = next_poll_delay(reads, waited)
        if delay is None:
            break
        waited += delay
        reads += 1

    assert reads == MAX_READS == 3
    assert waited == MAX_TOTAL_WAIT == 5.0
    assert POLL_WAITS == (2.0, 3.0)
