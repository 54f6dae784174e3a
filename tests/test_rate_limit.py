from api.rate_limit import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_budget_is_per_key():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_points=10, clock=clock)

    assert limiter.consume("alice", 6).allowed
    assert limiter.consume("alice", 4).allowed
    assert not limiter.consume("alice", 1).allowed
    assert limiter.consume("bob", 10).allowed


def test_points_expire_after_the_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_points=10, clock=clock)
    limiter.consume("alice", 8)

    clock.now += 20
    denied = limiter.consume("alice", 5)
    assert not denied.allowed
    assert denied.retry_after == 40
    assert denied.retry_after_seconds == 40

    clock.now += 40
    assert limiter.consume("alice", 5).allowed


def test_refusals_do_not_consume_points():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_points=10, clock=clock)
    limiter.consume("alice", 9)
    for _ in range(5):
        assert not limiter.consume("alice", 2).allowed
    assert limiter.consume("alice", 1).allowed


def test_retry_after_is_at_least_one_second():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_points=5, clock=clock)
    limiter.consume("alice", 5)
    clock.now += 59.5
    decision = limiter.consume("alice", 1)
    assert decision.retry_after == 1.0
    assert decision.retry_after_seconds == 1


def test_reset():
    limiter = SlidingWindowRateLimiter(max_points=1, clock=FakeClock())
    limiter.consume("alice", 1)
    limiter.reset()
    assert limiter.consume("alice", 1).allowed


def test_idle_callers_are_forgotten():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_points=10, clock=clock)
    for caller in ("alice", "bob", "carol"):
        limiter.consume(caller, 1)
    assert len(limiter) == 3

    clock.now += 60
    limiter.consume("dave", 1)
    assert len(limiter) == 1

    limiter.consume("erin", 11)
    assert len(limiter) == 1
