"""Token bucket limiter and its /api/ request hook."""

import pytest

from liquor_pos import create_app
from liquor_pos.rate_limit import InMemoryBucketStore, TokenBucketLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    # 2 tokens refilled over 4 seconds: one token every 2 seconds
    return TokenBucketLimiter(capacity=2, window_seconds=4, store=InMemoryBucketStore(), clock=clock)


class TestTokenBucket:

    def test_capacity_then_denied(self, limiter):
        first = limiter.hit("10.0.0.1")
        second = limiter.hit("10.0.0.1")
        third = limiter.hit("10.0.0.1")

        assert (first.allowed, first.remaining) == (True, 1)
        assert (second.allowed, second.remaining) == (True, 0)
        assert third.allowed is False
        assert third.retry_after == pytest.approx(2.0)

    def test_refill_over_time(self, limiter, clock):
        limiter.hit("10.0.0.1")
        limiter.hit("10.0.0.1")

        clock.advance(1)
        assert limiter.hit("10.0.0.1").allowed is False

        clock.advance(1)
        assert limiter.hit("10.0.0.1").allowed is True

    def test_refill_never_exceeds_capacity(self, limiter, clock):
        limiter.hit("10.0.0.1")
        clock.advance(3600)
        assert limiter.hit("10.0.0.1").remaining == 1

    def test_keys_are_independent(self, limiter):
        limiter.hit("10.0.0.1")
        limiter.hit("10.0.0.1")
        assert limiter.hit("10.0.0.1").allowed is False
        assert limiter.hit("10.0.0.2").allowed is True

    def test_rejects_bad_configuration(self):
        with pytest.raises(ValueError):
            TokenBucketLimiter(capacity=0, window_seconds=60)
        with pytest.raises(ValueError):
            TokenBucketLimiter(capacity=10, window_seconds=0)


class TestRequestHook:

    @pytest.fixture
    def limited_client(self, limiter):
        app = create_app({
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'RATE_LIMIT_ENABLED': True,
            'RATE_LIMITER': limiter,
        })
        assert app.extensions["rate_limiter"] is limiter
        return app.test_client()

    def test_429_after_capacity(self, limited_client):
        assert limited_client.get('/api/stock/summary').status_code == 401
        assert limited_client.get('/api/stock/summary').status_code == 401

        response = limited_client.get('/api/stock/summary')

        assert response.status_code == 429
        assert response.headers['Retry-After'] == '2'
        assert response.get_json() == {
            "success": False,
            "error": "Too many requests from this IP, please try again later.",
        }

    def test_non_api_paths_are_not_limited(self, limited_client):
        for _ in range(5):
            assert limited_client.get('/not-an-api-path').status_code == 404

    def test_disabled_by_config(self, app):
        assert "rate_limiter" not in app.extensions
