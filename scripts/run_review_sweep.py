#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("ALERTS_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/alerts"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/alerts"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    payload: dict[str, Any] | None = None,
    token: str | None = None,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json"}
    if payload is not None:
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=300) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Trigger one review-request sweep on the alerts backend and print the run summary."
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/alerts)."
        ),
    )
    parser.add_argument(
        "--job-token",
        default=None,
        help="Bearer token for the job endpoint. Defaults to INTERNAL_JOB_TOKEN from environment/.env.",
    )
    parser.add_argument(
        "--grace-days",
        type=int,
        default=None,
        help="Override REVIEW_REQUEST_GRACE_DAYS for this sweep only.",
    )
    parser.add_argument(
        "--now-override",
        default=None,
        help="ISO-8601 timestamp used as the sweep clock (backfills and dry testing).",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    if args.grace_days is not None and not 0 <= args.grace_days <= 365:
        raise SystemExit("--grace-days must be between 0 and 365")

    job_token = (args.job_token or os.getenv("INTERNAL_JOB_TOKEN", "")).strip()
    if not job_token:
        raise SystemExit("INTERNAL_JOB_TOKEN is required (set .env or pass --job-token)")

    payload: dict[str, Any] = {}
    if args.grace_days is not None:
        payload["grace_days"] = args.grace_days
    if args.now_override:
        payload["now_override"] = args.now_override

    summary = _request_json(
        "POST",
        _resolve_api_base_url(args.api_base_url),
        "jobs/review-requests/run",
        payload=payload,
        token=job_token,
    )
    print(json.dumps(summary, indent=2, sort_keys=True))
    failed = int(summary.get("failed_transport_count", 0)) + int(summary.get("failed_storage_count", 0))
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
