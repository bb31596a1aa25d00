from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from counterhub.auth import STREAMER_ROLES
from counterhub.settings import load_settings


def build_claims(tenant_id: str, roles: list[str], hours: int) -> dict:
    return {
        "sub": tenant_id,
        "roles": sorted(set(roles)),
        "exp": datetime.now(timezone.utc) + timedelta(hours=hours),
    }


def overlay_url(base_url: str, tenant_id: str, token: str) -> str:
    origin = base_url.rstrip("/")
    if origin.startswith("https://"):
        origin = "wss://" + origin[len("https://"):]
    elif origin.startswith("http://"):
        origin = "ws://" + origin[len("http://"):]
    return f"{origin}/ws/overlay/{tenant_id}?token={token}"


def main(argv: Optional[list[str]] = None) -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Issue a CounterHub bearer token for one tenant.")
    parser.add_argument("--tenant", required=True, help="Tenant id, stored as the token subject.")
    parser.add_argument(
        "--role",
        dest="roles",
        action="append",
        choices=["streamer", "moderator", "admin", "service"],
        help=f"Repeat for several roles. Defaults to {', '.join(STREAMER_ROLES)}.",
    )
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--secret", default=settings.jwt_secret, help="Defaults to JWT_SECRET.")
    parser.add_argument("--algorithm", default=settings.jwt_algorithm)
    parser.add_argument("--overlay", metavar="BASE_URL", help="Print the overlay socket URL instead.")
    args = parser.parse_args(argv)

    claims = build_claims(args.tenant, args.roles or list(STREAMER_ROLES), args.hours)
    token = jwt.encode(claims, args.secret, algorithm=args.algorithm)
    if args.overlay:
        print(overlay_url(args.overlay, args.tenant, token))
    else:
        print(token)


if __name__ == "__main__":
    main()
