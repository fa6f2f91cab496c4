from cortex_chat.core.limiter import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_disabled_limiter_allows_everything():
    limiter = RateLimiter(0)

    assert limiter.enabled is False
    assert all(limiter.allow("k") for _ in range(100))


def test_window_slides_per_key():
    clock = FakeClock()
    limiter = RateLimiter(2, clock=clock)

    assert limiter.allow("a")
    clock.now += 10
    assert limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")
    assert limiter.retry_after("a") == 50

    clock.now += 50
    assert limiter.allow("a")
