from fastapi import FastAPI
from fastapi.testclient import TestClient

from portal.core.config import Settings
from portal.core.middleware.ratelimit import RateLimitMiddleware
from portal.core.middleware.request_id import RequestIdMiddleware
from portal.core.ratelimit import (
    INVITE_PATH,
    WEBHOOK_PATH,
    InMemoryRateLimiter,
    RateLimitConfig,
    RoutePolicy,
    TokenBucket,
    build_rate_limit_config,
)

PRODUCTION = Settings(ENV="production", RATE_LIMIT_INVITES_PER_HOUR=20, RATE_LIMIT_INVITE_BURST=2, RATE_LIMIT_BURST_DEFAULT=3)


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _make_app(config: RateLimitConfig, clock=None):
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, config=config, time_fn=clock)
    app.add_middleware(RequestIdMiddleware)

    @app.post(INVITE_PATH)
    async def invite():
        return {"ok": True}

    @app.get("/api/team/invites")
    async def invites():
        return {"ok": True}

    @app.post(WEBHOOK_PATH)
    async def webhook():
        return {"received": True}

    return app


def test_ratelimit_only_enabled_in_production():
    assert not build_rate_limit_config(Settings(ENV="development", RATE_LIMIT_ENABLED=True)).enabled
    assert build_rate_limit_config(Settings(ENV="production", RATE_LIMIT_ENABLED=True)).enabled
    assert not build_rate_limit_config(Settings(ENV="production", RATE_LIMIT_ENABLED=False)).enabled


def test_policies_follow_settings():
    config = build_rate_limit_config(PRODUCTION)

    invite = config.policy_for("post", INVITE_PATH + "/")
    assert (invite.name, invite.capacity) == ("invite", 2)
    assert config.policy_for("POST", WEBHOOK_PATH).capacity == 3
    assert config.policy_for("GET", INVITE_PATH) is None


def test_disabled_limiter_never_blocks():
    config = build_rate_limit_config(Settings(ENV="development", RATE_LIMIT_INVITE_BURST=1))
    client = TestClient(_make_app(config))
    for _ in range(5):
        assert client.post(INVITE_PATH).status_code == 200


def test_invite_blocks_after_burst_with_retry_after():
    client = TestClient(_make_app(build_rate_limit_config(PRODUCTION), clock=Clock()))

    first = client.post(INVITE_PATH)
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert client.post(INVITE_PATH).status_code == 200

    blocked = client.post(INVITE_PATH)
    assert blocked.status_code == 429
    assert blocked.json()["code"] == "rate_limited"
    assert blocked.json()["request_id"] == blocked.headers["x-request-id"]
    # 20 per hour refills one token every 180 seconds
    assert blocked.headers["Retry-After"] == "180"
    assert blocked.headers["X-RateLimit-Limit"] == "2"
    assert blocked.headers["X-RateLimit-Remaining"] == "0"


def test_invite_budget_refills():
    clock = Clock()
    client = TestClient(_make_app(build_rate_limit_config(PRODUCTION), clock=clock))
    for _ in range(2):
        client.post(INVITE_PATH)
    assert client.post(INVITE_PATH).status_code == 429

    clock.now += 181
    assert client.post(INVITE_PATH).status_code == 200


def test_reads_are_not_limited():
    client = TestClient(_make_app(build_rate_limit_config(PRODUCTION)))
    for _ in range(5):
        assert client.get("/api/team/invites").status_code == 200


def test_limits_are_per_client_ip():
    client = TestClient(_make_app(build_rate_limit_config(PRODUCTION), clock=Clock()))

    for _ in range(2):
        assert client.post(INVITE_PATH, headers={"x-forwarded-for": "10.0.0.1"}).status_code == 200
    assert client.post(INVITE_PATH, headers={"x-forwarded-for": "10.0.0.2, 172.16.0.1"}).status_code == 200
    assert client.post(INVITE_PATH, headers={"x-forwarded-for": "10.0.0.1"}).status_code == 429


def test_webhook_budget_is_separate_from_invites():
    client = TestClient(_make_app(build_rate_limit_config(PRODUCTION), clock=Clock()))
    for _ in range(2):
        client.post(INVITE_PATH)

    statuses = [client.post(WEBHOOK_PATH).status_code for _ in range(4)]
    assert statuses == [200, 200, 200, 429]


def test_idle_buckets_are_evicted():
    clock = Clock()
    policy = RoutePolicy(name="invite", capacity=1, refill_per_sec=1.0)
    limiter = InMemoryRateLimiter(RateLimitConfig(enabled=True, max_buckets=2), time_fn=clock)

    limiter.check("10.0.0.1", policy)
    limiter.check("10.0.0.2", policy)
    clock.now = 5.0
    limiter.check("10.0.0.3", policy)

    assert list(limiter.buckets) == ["invite:10.0.0.3"]


def test_token_bucket_refills_over_time():
    clock = Clock()
    bucket = TokenBucket(capacity=1, refill_rate_per_sec=0.5, time_fn=clock)

    assert bucket.allow()
    assert not bucket.allow()
    assert bucket.seconds_until() == 2
    clock.now = 2.0
    assert bucket.allow()
