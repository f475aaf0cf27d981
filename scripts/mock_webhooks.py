from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request
from datetime import datetime, timezone


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock inbound SMS deliveries to local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--sender", default=None, help="Fixed sender; defaults to one per index.")
    parser.add_argument(
        "--repeat",
        type=int,
        default=1,
        help="Deliver each message this many times to exercise deduplication.",
    )
    parser.add_argument(
        "--no-message-id",
        action="store_true",
        help="Omit the provider message id so the server derives the identity key.",
    )
    parser.add_argument("--secret", default="")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/sms/webhook"
    sent_at = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    for index in range(args.start_index, args.start_index + args.count):
        payload = {
            "sender": args.sender or f"+4477009{index:05d}",
            "text": f"Mock reply {index}",
            "timestamp": sent_at,
        }
        if not args.no_message_id:
            payload["messageId"] = f"SMmock{index:06d}"
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers: dict[str, str] = {}
        if args.secret:
            headers["X-SMS-Signature"] = sign_payload(args.secret, body)
        for attempt in range(1, max(args.repeat, 1) + 1):
            status_code, response = post_json(endpoint, body, headers)
            print(f"{status_code} #{index} attempt={attempt} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
