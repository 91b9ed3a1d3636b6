import pytest

from landedcost.api.security import DEV_KEY, RateLimiter, RateLimitExceeded, configured_api_keys


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_dev_key_only_without_configuration(monkeypatch):
    monkeypatch.delenv("LC_API_KEYS", raising=False)
    assert configured_api_keys() == {DEV_KEY}
    monkeypatch.setenv("LC_API_KEYS", " a , ,b")
    assert configured_api_keys() == {"a", "b"}


def test_window_slides():
    clock = Clock()
    limiter = RateLimiter(rate_per_minute=2, clock=clock)

    limiter.check("k", "/api/chat")
    clock.now = 30
    limiter.check("k", "/api/chat")
    limiter.check("k", "/api/fx")
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.check("k", "/api/chat")
    assert excinfo.value.retry_after == 31

    clock.now = 60
    limiter.check("k", "/api/chat")
    limiter.check("other", "/api/chat")


def test_reset_clears_counters():
    limiter = RateLimiter(rate_per_minute=1, clock=Clock())
    limiter.check("k", "/api/chat")
    limiter.reset()
    limiter.check("k", "/api/chat")
