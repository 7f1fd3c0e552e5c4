#!/usr/bin/env python3
from __future__ import annotations

import argparse
import base64
import json
import sys
import uuid
from typing import Any
from urllib import error, request


def call(
    base_url: str,
    method: str,
    path: str,
    payload: dict[str, Any] | None = None,
    *,
    token: str | None = None,
) -> tuple[int, dict[str, Any] | str]:
    body = None
    headers = {"Accept": "application/json"}
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"

    req = request.Request(f"{base_url.rstrip('/')}{path}", data=body, headers=headers, method=method)
    try:
        with request.urlopen(req, timeout=15) as resp:
            raw = resp.read().decode("utf-8")
            return resp.status, json.loads(raw) if raw and raw.startswith(("{", "[")) else raw
    except error.HTTPError as exc:
        raw = exc.read().decode("utf-8")
        parsed: dict[str, Any] | str
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = raw
        return exc.code, parsed


class SmokeFailure(Exception):
    pass


def expect(
    base_url: str,
    method: str,
    path: str,
    payload: dict[str, Any] | None = None,
    *,
    token: str | None = None,
    statuses: tuple[int, ...] = (200,),
) -> dict[str, Any]:
    status, data = call(base_url, method, path, payload, token=token)
    if status not in statuses or not isinstance(data, dict):
        raise SmokeFailure(f"{method} {path} => {status} {data}")
    print(f"[PASS] {method} {path} => {status}")
    return data


def signup_and_login(base_url: str, email: str, password: str) -> tuple[str, str]:
    status, data = call(base_url, "POST", "/api/auth/signup", {"email": email, "password": password})
    if status not in {201, 409}:
        raise SmokeFailure(f"signup {email} => {status} {data}")
    login = expect(base_url, "POST", "/api/auth/login", {"email": email, "password": password})
    return str(login["user"]["id"]), str(login["token"])


def make_student(base_url: str, admin_token: str, email: str, password: str) -> tuple[str, str]:
    user_id, token = signup_and_login(base_url, email, password)
    document = base64.b64encode(f"student card for {email}".encode("utf-8")).decode("ascii")
    expect(base_url, "POST", "/api/verification", {"document": document, "documentName": "card.pdf"}, token=token)
    expect(
        base_url,
        "POST",
        f"/api/admin/verifications/{user_id}/approve",
        {"role": "student"},
        token=admin_token,
    )
    return user_id, token


def run_smoke(base_url: str, admin_email: str, password: str) -> None:
    status, health = call(base_url, "GET", "/health")
    if status != 200:
        raise SmokeFailure(f"/health => {status} {health}")

    _, admin_token = signup_and_login(base_url, admin_email, password)
    expect(base_url, "GET", "/api/admin/analytics", token=admin_token)

    suffix = uuid.uuid4().hex[:8]
    owner_id, owner_token = make_student(base_url, admin_token, f"owner-{suffix}@example.edu", password)
    joiner_id, joiner_token = make_student(base_url, admin_token, f"joiner-{suffix}@example.edu", password)

    group = expect(
        base_url,
        "POST",
        "/api/groups",
        {"name": f"Smoke group {suffix}", "introduction": "created by api_smoke"},
        token=owner_token,
        statuses=(201,),
    )["item"]
    group_id = group["id"]

    joined = expect(base_url, "POST", f"/api/groups/{group_id}/join", token=joiner_token)["item"]
    if joined["pendingRequests"] != [joiner_id]:
        raise SmokeFailure(f"unexpected pending requests: {joined['pendingRequests']}")

    approved = expect(
        base_url,
        "POST",
        f"/api/groups/{group_id}/requests/{joiner_id}/approve",
        token=owner_token,
    )["item"]
    if approved["members"] != [owner_id, joiner_id] or approved["pendingRequests"]:
        raise SmokeFailure(f"unexpected membership after approve: {approved}")

    status, again = call(base_url, "POST", f"/api/groups/{group_id}/join", token=joiner_token)
    if status != 409 or not isinstance(again, dict) or again.get("code") != "ALREADY_MEMBER":
        raise SmokeFailure(f"repeat join => {status} {again}")
    print("[PASS] repeat join rejected with ALREADY_MEMBER")


def main() -> int:
    parser = argparse.ArgumentParser(description="Minimal API smoke test for Career Compass backend")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="Backend base URL")
    parser.add_argument(
        "--admin-email",
        default="admin@example.edu",
        help="Email listed in CAREER_COMPASS_ADMIN_EMAILS on the server",
    )
    parser.add_argument("--password", default="smoke-pass-123", help="Password used for smoke accounts")
    args = parser.parse_args()

    try:
        run_smoke(args.base_url, args.admin_email, args.password)
    except SmokeFailure as exc:
        print(f"[FAIL] {exc}")
        return 1

    print("[PASS] smoke checks completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
