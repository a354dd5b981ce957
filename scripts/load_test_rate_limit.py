#!/usr/bin/env python3
"""Load test script — demonstrates rate limiting behavior.

RUN:  python scripts/load_test_rate_limit.py [BASE_URL] [TOTAL_REQUESTS]

Sends TOTAL_REQUESTS to GET / in rapid succession and prints how many
were allowed (200) vs. throttled (429).

Prerequisites:
  - The service must be running: ratelimiter-server (or
    uvicorn ratelimiter.main:app --port 3000)

Try it with each RATE_LIMIT_ALGORITHM to compare how they treat the
same burst.  This is a demo, not a load testing tool; use locust, k6
or wrk for real load tests.
"""

from __future__ import annotations

import sys
import time

import httpx

BASE_URL = "http://localhost:3000"
TOTAL_REQUESTS = 20


def main() -> None:
    base_url = sys.argv[1] if len(sys.argv) > 1 else BASE_URL
    total = int(sys.argv[2]) if len(sys.argv) > 2 else TOTAL_REQUESTS

    print("Rate Limit Load Test")
    print("=" * 50)
    print(f"Target: {base_url}/")
    print(f"Total requests: {total}")
    print()

    with httpx.Client(base_url=base_url, timeout=10) as client:
        health = client.get("/health")
        if health.status_code != 200:
            print(f"Health check failed: {health.status_code}")
            sys.exit(1)
        budget = health.json()["rate_limit"]
        print(
            f"Algorithm: {budget['algorithm']}  "
            f"budget: {budget['max_requests']} per {budget['window_ms']}ms"
        )
        print()

        results: dict[int, int] = {}
        start = time.monotonic()

        for i in range(total):
            resp = client.get("/")
            results[resp.status_code] = results.get(resp.status_code, 0) + 1

            if (i + 1) % 10 == 0:
                print(f"  Sent {i + 1}/{total} requests...")

        elapsed = time.monotonic() - start

    print()
    print(f"Results after {total} requests ({elapsed:.2f}s):")
    print("─" * 40)

    allowed = results.get(200, 0)
    throttled = results.get(429, 0)
    other = sum(v for k, v in results.items() if k not in (200, 429))

    print(f"  Allowed  (200): {allowed:>4}")
    print(f"  Throttled(429): {throttled:>4}")
    if other:
        print(f"  Other:          {other:>4}")

    print()
    if throttled > 0:
        print("Rate limiting is working.")
    elif allowed == total:
        print("WARNING: No requests were throttled.")
        print("The budget may be larger than the number of requests sent.")


if __name__ == "__main__":
    main()
