from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request
from datetime import datetime, timezone
from uuid import uuid4


def sign_message(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    message = message_id.encode("utf-8") + timestamp.encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
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


def build_event(event_type: str, broadcaster_id: str, login: str, bits: int) -> dict:
    base = {
        "broadcaster_user_id": broadcaster_id,
        "broadcaster_user_login": login,
        "broadcaster_user_name": login,
    }
    if event_type == "stream.online":
        return {**base, "id": uuid4().hex, "type": "live", "started_at": datetime.now(timezone.utc).isoformat()}
    if event_type == "channel.cheer":
        return {**base, "is_anonymous": False, "user_login": "viewer", "message": "cheer", "bits": bits}
    return base


def main() -> int:
    parser = argparse.ArgumentParser(description="Send signed mock EventSub notifications to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument(
        "--event-type",
        choices=["stream.online", "stream.offline", "channel.cheer"],
        default="stream.online",
    )
    parser.add_argument("--broadcaster-id", default="dev-local")
    parser.add_argument("--login", default="devstreamer")
    parser.add_argument("--bits", type=int, default=100)
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--secret", default="")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhooks/twitch"
    for _ in range(args.count):
        message_id = uuid4().hex
        timestamp = datetime.now(timezone.utc).isoformat()
        payload = {
            "subscription": {"type": args.event_type, "version": "1", "status": "enabled"},
            "event": build_event(args.event_type, args.broadcaster_id, args.login, args.bits),
        }
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers = {
            "Twitch-Eventsub-Message-Id": message_id,
            "Twitch-Eventsub-Message-Timestamp": timestamp,
            "Twitch-Eventsub-Message-Type": "notification",
        }
        if args.secret:
            headers["Twitch-Eventsub-Message-Signature"] = sign_message(
                args.secret, message_id, timestamp, body
            )
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {args.event_type} {message_id} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
