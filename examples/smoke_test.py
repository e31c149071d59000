#!/usr/bin/env python3
"""
Smoke Test - Exercise a running Request Shield service

Sends benign and hostile requests and reports how the pipeline answered.
"""

import os
import sys
import requests

# Configuration
SERVICE_URL = os.getenv("SERVICE_URL", "http://localhost:8080")
HEADERS = {"X-Forwarded-Proto": "https"}


def check_health() -> bool:
    """Check health endpoint"""
    print("🏥 Checking health endpoint...")
    try:
        response = requests.get(f"{SERVICE_URL}/health", timeout=5)
        print(f"   status={response.status_code} body={response.json().get('status')}")
        return response.status_code in (200, 503)
    except Exception as e:
        print(f"❌ Health check error: {e}")
        return False


def check_explain() -> bool:
    """Resolve a status code twice, the second time from cache"""
    print("\n📖 Checking explain endpoint...")
    sources = []
    for _ in range(2):
        response = requests.get(f"{SERVICE_URL}/api/explain/404", headers=HEADERS, timeout=5)
        if response.status_code != 200:
            print(f"❌ Explain failed: {response.status_code}")
            return False
        sources.append(response.json()["source"])
        print(f"   {response.json()['phrase']} (source={sources[-1]}, "
              f"remaining={response.headers.get('X-RateLimit-Remaining')})")
    return sources[-1] == "cache"


def check_blocking() -> bool:
    """Send hostile payloads and expect block responses"""
    print("\n🔒 Checking security gate...")
    cases = [
        ("XSS", {"comment": "<script>alert(1)</script>"}, 400),
        ("SQL injection", {"query": "1; DROP TABLE users"}, 403),
        ("Path traversal", {"file": "../../etc/passwd"}, 400),
    ]
    ok = True
    for label, payload, expected in cases:
        response = requests.post(f"{SERVICE_URL}/api/explain/404", json=payload, headers=HEADERS, timeout=5)
        passed = response.status_code == expected
        ok = ok and passed
        print(f"   {'✅' if passed else '❌'} {label}: {response.status_code} (expected {expected})")
    return ok


def check_rate_limit(limit: int) -> bool:
    """Exceed the per-minute limit and expect a 429"""
    print(f"\n⏱️  Sending {limit + 1} requests...")
    response = None
    for _ in range(limit + 1):
        response = requests.get(f"{SERVICE_URL}/", headers=HEADERS, timeout=5)
        if response.status_code == 429:
            break
    if response is not None and response.status_code == 429:
        print(f"✅ Rate limited, retry after {response.headers.get('Retry-After')}s")
        return True
    print("❌ Never rate limited")
    return False


def main():
    """Main smoke test function"""
    print("🛡️  Request Shield - Smoke Test")
    print("=" * 50)
    print(f"Service URL: {SERVICE_URL}")
    print("=" * 50)

    if not check_health():
        print("\n❌ Health check failed. Is the service running?")
        print("   Start with: python main.py")
        sys.exit(1)

    results = [check_explain(), check_blocking()]
    if "--rate-limit" in sys.argv:
        results.append(check_rate_limit(int(os.getenv("RATE_LIMIT_PER_MINUTE", "100"))))

    print(f"\n{requests.get(f'{SERVICE_URL}/status', headers=HEADERS, timeout=5).json()}")

    print("\n" + "=" * 50)
    print("✅ Smoke test passed!" if all(results) else "❌ Smoke test failed")
    print("=" * 50)
    sys.exit(0 if all(results) else 1)


if __name__ == "__main__":
    main()
