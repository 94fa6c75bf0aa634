"""
End-to-end smoke test against a running service tracker.
Validates that the HTTP surface is healthy and the sync channel opens with `init`.

Usage:
    python main.py &
    python tests/smoke_test.py [base_url]
"""
import asyncio
import json
import sys
import urllib.error
import urllib.request

import aiohttp


def check_endpoint(url: str, expected_status: int = 200) -> bool:
    try:
        req = urllib.request.urlopen(url, timeout=10)
        if req.status == expected_status:
            print(f"  OK: {url} -> {req.status}")
            return True
        print(f"  FAIL: {url} -> {req.status} (expected {expected_status})")
        return False
    except urllib.error.URLError as e:
        print(f"  FAIL: {url} unreachable: {e}")
        return False


def check_metrics_content(url: str, expected_metric: str) -> bool:
    """Verify that a specific metric name appears in /metrics output."""
    try:
        req = urllib.request.urlopen(url, timeout=10)
        content = req.read().decode("utf-8")
        if expected_metric in content:
            print(f"  OK: metric '{expected_metric}' found in /metrics")
            return True
        print(f"  FAIL: metric '{expected_metric}' NOT found in /metrics")
        return False
    except urllib.error.URLError as e:
        print(f"  FAIL: {url} unreachable: {e}")
        return False


async def _first_frame(ws_url: str) -> dict:
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(ws_url) as ws:
            frame = await ws.receive(timeout=10)
            return json.loads(frame.data)


def check_sync_init(ws_url: str) -> bool:
    try:
        payload = asyncio.run(_first_frame(ws_url))
    except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError, TypeError) as e:
        print(f"  FAIL: {ws_url} sync channel error: {e}")
        return False
    if payload.get("message") != "init":
        print(f"  FAIL: first frame was {payload.get('message')!r}, expected 'init'")
        return False
    print(f"  OK: init received with {len(payload.get('servers', []))} server(s)")
    return True


def run_smoke_tests(base_url: str) -> None:
    results: list[bool] = []
    ws_url = base_url.replace("http", "ws", 1) + "/"

    print("\n=== Smoke Test: Service Tracker ===\n")

    print("1. Checking /healthz...")
    results.append(check_endpoint(f"{base_url}/healthz"))

    print("2. Checking /readyz...")
    results.append(check_endpoint(f"{base_url}/readyz"))

    print("3. Checking /metrics has tracker data...")
    results.append(check_metrics_content(f"{base_url}/metrics", "tracker_tracked_services"))

    print("4. Checking sync channel sends init first...")
    results.append(check_sync_init(ws_url))

    passed = sum(results)
    total = len(results)
    print(f"\n=== Results: {passed}/{total} checks passed ===")

    if passed < total:
        print("FAILED: some checks did not pass. See output above for details.")
        sys.exit(1)
    else:
        print("ALL CHECKS PASSED")
        sys.exit(0)


if __name__ == "__main__":
    run_smoke_tests(sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080")
