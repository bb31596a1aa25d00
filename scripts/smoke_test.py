from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def request_json(
    *, url: str, method: str = "GET", token: str | None = None, tenant: str | None = None
) -> tuple[int, dict | None, str]:
    request = urllib.request.Request(url, method=method, data=b"" if method == "POST" else None)
    request.add_header("Accept", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    if tenant:
        request.add_header("X-Tenant-Id", tenant)
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            body = response.read().decode("utf-8")
            data = json.loads(body) if body.startswith("{") or body.startswith("[") else None
            return response.status, data, body
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            data = None
        return exc.code, data, body


def request_text(*, url: str) -> tuple[int, str]:
    request = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for the CounterHub API.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--token", default="")
    parser.add_argument("--tenant", default="smoke-test")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    token = args.token.strip() or None

    status, data, _ = request_json(url=f"{base_url}/health")
    assert_true(status == 200, f"/health expected 200, got {status}")
    assert_true(isinstance(data, dict) and data.get("status") == "ok", "/health invalid payload")
    print("OK /health")

    status, data, _ = request_json(url=f"{base_url}/health/ready")
    assert_true(status == 200, f"/health/ready expected 200, got {status}")
    assert_true(
        isinstance(data, dict) and data.get("status") == "ready",
        "/health/ready invalid payload",
    )
    print("OK /health/ready")

    status, before, _ = request_json(url=f"{base_url}/counters", token=token, tenant=args.tenant)
    assert_true(status == 200 and isinstance(before, dict), f"/counters expected 200, got {status}")
    deaths = before["counters"].get("deaths", 0)

    status, data, _ = request_json(
        url=f"{base_url}/counters/deaths/increment", method="POST", token=token, tenant=args.tenant
    )
    assert_true(status == 200, f"increment expected 200, got {status}")
    assert_true(
        isinstance(data, dict) and data.get("value") == deaths + 1 and data.get("change") == 1,
        f"increment returned unexpected payload: {data}",
    )
    request_json(
        url=f"{base_url}/counters/deaths/decrement", method="POST", token=token, tenant=args.tenant
    )
    print("OK increment/decrement round trip")

    status, body = request_text(url=f"{base_url}/metrics")
    assert_true(status == 200, f"/metrics expected 200, got {status}")
    assert_true("counterhub_requests_total" in body, "/metrics missing requests counter")
    assert_true("counterhub_mutations_applied_total" in body, "/metrics missing mutation counter")
    print("OK /metrics")

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)
