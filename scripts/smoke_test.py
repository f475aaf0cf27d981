from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
import uuid


def request_json(
    *, url: str, token: str | None = None, payload: dict | None = None
) -> tuple[int, dict | list | None, str]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method="POST" if data else "GET")
    request.add_header("Accept", "application/json")
    if data:
        request.add_header("Content-Type", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            body = response.read().decode("utf-8")
            parsed = json.loads(body) if body.startswith("{") or body.startswith("[") else None
            return response.status, parsed, body
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            parsed = None
        return exc.code, parsed, body


def request_text(*, url: str) -> tuple[int, str]:
    try:
        with urllib.request.urlopen(url, timeout=20) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for CRM SMS Inbox API.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--auth-mode", choices=["enabled", "disabled"], default="enabled")
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    token = args.token.strip() or None

    status, data, _ = request_json(url=f"{base_url}/health")
    assert_true(status == 200, f"/health expected 200, got {status}")
    assert_true(isinstance(data, dict) and data.get("status") == "ok", "/health invalid payload")
    print("OK /health")

    status, data, _ = request_json(url=f"{base_url}/health/ready")
    assert_true(status == 200, f"/health/ready expected 200, got {status}")
    print("OK /health/ready")

    # Unknown sender, so the delivery lands in the orphan queue and touches no owner.
    delivery = {
        "sender": "+447000000000",
        "text": "smoke test delivery",
        "messageId": f"SMsmoke{uuid.uuid4().hex[:12]}",
    }
    first_status, first, _ = request_json(url=f"{base_url}/sms/webhook", payload=delivery)
    second_status, second, _ = request_json(url=f"{base_url}/sms/webhook", payload=delivery)
    assert_true(first_status == 200, f"/sms/webhook expected 200, got {first_status}")
    assert_true(
        isinstance(second, dict) and second.get("status") == "duplicate_ignored",
        f"/sms/webhook redelivery not deduplicated: {second_status} {second}",
    )
    print(f"OK /sms/webhook status={first.get('status') if isinstance(first, dict) else first}")

    status, body = request_text(url=f"{base_url}/metrics")
    assert_true(status == 200, f"/metrics expected 200, got {status}")
    assert_true("sms_inbox_requests_total" in body, "/metrics missing requests counter")
    print("OK /metrics")

    protected_status, _, _ = request_json(url=f"{base_url}/sms/orphans?limit=1", token=token)
    if args.auth_mode == "enabled":
        if token:
            assert_true(
                protected_status == 200,
                f"/sms/orphans with token expected 200, got {protected_status}",
            )
            print("OK /sms/orphans with token")
        else:
            assert_true(
                protected_status in {401, 403},
                f"/sms/orphans without token expected 401/403, got {protected_status}",
            )
            print("OK /sms/orphans unauthorized")
    else:
        assert_true(
            protected_status == 200,
            f"/sms/orphans expected 200 with auth disabled, got {protected_status}",
        )
        print("OK /sms/orphans with auth disabled")

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)
