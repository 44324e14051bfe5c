"""
Locust Load Test Suite

Venues are managed outside this service, so pass the ids to hit:
  VENUE_IDS=<id>,<id> SECRET_KEY=<same as the API> locust -f locustfile.py

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test double check-ins
  locust -f locustfile.py --tags throughput   # Test crowd cache
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests
"""

import os
import random
import uuid
from datetime import datetime, timezone, timedelta

from jose import jwt
from locust import HttpUser, task, between, tag, events

SECRET_KEY = os.environ.get("SECRET_KEY", "super-secret-key-change-in-production")
ALGORITHM = os.environ.get("ALGORITHM", "HS256")
VENUE_IDS = [v for v in os.environ.get("VENUE_IDS", "").split(",") if v]


def mint_token(subject: str, anonymous: bool = False) -> str:
    """Sign a caller token the way the identity provider does."""
    expire = datetime.now(timezone.utc) + timedelta(hours=1)
    return jwt.encode(
        {"sub": subject, "is_anonymous": anonymous, "exp": expire},
        SECRET_KEY,
        algorithm=ALGORITHM,
    )


def auth_headers(anonymous: bool = False) -> dict:
    prefix = "anon" if anonymous else "load"
    return {"Authorization": f"Bearer {mint_token(f'{prefix}-{uuid.uuid4().hex[:12]}', anonymous)}"}


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Target venues: {VENUE_IDS or 'none (set VENUE_IDS)'}")
    print("=" * 60)


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - every user double-taps check-in

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify no caller got in twice:
      SELECT user_id, venue_id, COUNT(*) FROM checkins
      GROUP BY user_id, venue_id HAVING COUNT(*) > 1;
    Should return no rows
    """

    wait_time = between(0, 0.1)

    def on_start(self):
        self.headers = auth_headers()

    @tag("concurrency")
    @task
    def double_tap(self):
        """Same caller, same venue, back to back: one 200 then 429s."""
        if not VENUE_IDS:
            return

        venue_id = random.choice(VENUE_IDS)
        for _ in range(2):
            with self.client.post(
                "/api/v1/check-in",
                json={"venue_id": venue_id},
                headers=self.headers,
                catch_response=True,
                name="/api/v1/check-in [double tap]",
            ) as resp:
                if resp.status_code in (200, 429):
                    resp.success()
                else:
                    resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - Crowd level cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. Without Redis: REDIS_ENABLED=false on the API, run again

    Compare:
      - Avg response time
      - Requests/sec
      - P95/P99 latency
    """

    wait_time = between(0.1, 0.5)

    @tag("throughput", "read")
    @task(10)
    def poll_crowd_level(self):
        """Hammer the cached endpoint."""
        if VENUE_IDS:
            self.client.get(
                f"/api/v1/venues/{random.choice(VENUE_IDS)}/crowd",
                name="/api/v1/venues/{id}/crowd [cached]",
            )

    @tag("throughput", "read")
    @task(3)
    def recent_checkins(self):
        if VENUE_IDS:
            self.client.get(
                f"/api/v1/venues/{random.choice(VENUE_IDS)}/checkins?limit=10",
                name="/api/v1/venues/{id}/checkins",
            )

    @tag("throughput")
    @task(1)
    def health_check(self):
        """Monitor system health."""
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """

    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = auth_headers()

    def _expect(self, resp, codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_venue(self):
        with self.client.post(
            "/api/v1/check-in",
            json={"venue_id": "does-not-exist"},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))

    @tag("edge")
    @task
    def missing_venue_id(self):
        with self.client.post("/api/v1/check-in", json={}, headers=self.headers, catch_response=True) as resp:
            self._expect(resp, (400,))

    @tag("edge")
    @task
    def malformed_json(self):
        """Send garbage data."""
        with self.client.post(
            "/api/v1/check-in",
            data="not json at all",
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, (400, 422))

    @tag("edge")
    @task
    def missing_auth(self):
        with self.client.post("/api/v1/check-in", json={"venue_id": "any"}, catch_response=True) as resp:
            self._expect(resp, (401,))

    @tag("edge")
    @task
    def forged_token(self):
        headers = {"Authorization": "Bearer " + jwt.encode({"sub": "mallory"}, "wrong-secret", algorithm="HS256")}
        with self.client.post(
            "/api/v1/check-in", json={"venue_id": "any"}, headers=headers, catch_response=True
        ) as resp:
            self._expect(resp, (401,))

    @tag("edge")
    @task
    def anonymous_redeem(self):
        with self.client.post(
            "/api/v1/redeem-reward",
            json={"user_reward_id": "any"},
            headers=auth_headers(anonymous=True),
            catch_response=True,
        ) as resp:
            self._expect(resp, (401,))

    @tag("edge")
    @task
    def redeem_unknown(self):
        with self.client.post(
            "/api/v1/redeem-reward",
            json={"user_reward_id": str(uuid.uuid4())},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))


class RealisticUser(HttpUser):
    """
    TEST 4: Realistic mixed workload

    Run: locust -f locustfile.py -u 200 -r 20 --run-time 120s

    Simulates a night out:
      - Mostly watching crowd levels
      - Some check-ins, a share of them anonymous
      - Occasional reward checks and redemptions
    """

    wait_time = between(1, 3)

    def on_start(self):
        self.anonymous = random.random() < 0.3
        self.headers = auth_headers(anonymous=self.anonymous)

    @task(50)
    def browse_crowd(self):
        if VENUE_IDS:
            self.client.get(f"/api/v1/venues/{random.choice(VENUE_IDS)}/crowd", name="/api/v1/venues/{id}/crowd")

    @task(15)
    def check_in(self):
        if not VENUE_IDS:
            return
        with self.client.post(
            "/api/v1/check-in",
            json={"venue_id": random.choice(VENUE_IDS), "device_hash": f"device-{random.randint(1, 500)}"},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code in (200, 429):
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @task(10)
    def view_rewards(self):
        if VENUE_IDS:
            self.client.get(
                f"/api/v1/venues/{random.choice(VENUE_IDS)}/rewards",
                headers=self.headers,
                name="/api/v1/venues/{id}/rewards",
            )

    @task(3)
    def redeem_ready_rewards(self):
        if self.anonymous:
            return
        resp = self.client.get("/api/v1/rewards/me", headers=self.headers)
        if resp.status_code != 200:
            return
        for ledger in resp.json():
            if ledger["status"] == "redeemable":
                self.client.post(
                    "/api/v1/redeem-reward",
                    json={"user_reward_id": ledger["id"]},
                    headers=self.headers,
                )
