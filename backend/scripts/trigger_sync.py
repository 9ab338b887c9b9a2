#!/usr/bin/env python3
"""Call the sync trigger endpoint the way an external cron job does."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import requests


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="POST /sync/trigger and print one line per clinic+vendor."
    )
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000/api/v1",
        help="Backend API base URL (default: http://localhost:8000/api/v1)",
    )
    parser.add_argument(
        "--secret",
        default=os.getenv("SYNC_CRON_SECRET"),
        help="Cron shared secret (or set SYNC_CRON_SECRET env var).",
    )
    parser.add_argument("--clinic-id", type=int, help="Only sync this clinic.")
    parser.add_argument("--vendor-type", help="Only sync this vendor (cliniko, halaxy, nookal).")
    parser.add_argument(
        "--force-full",
        action="store_true",
        help="Ignore cursors and batch progress for this run.",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=600,
        help="Request timeout seconds (default: 600).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print full JSON output.",
    )
    return parser.parse_args()


def _trigger(
    *,
    base_url: str,
    secret: str,
    body: dict[str, Any],
    timeout: int,
) -> dict[str, Any]:
    url = f"{base_url.rstrip('/')}/sync/trigger"
    response = requests.post(
        url,
        headers={"Authorization": f"Bearer {secret}", "Content-Type": "application/json"},
        json=body,
        timeout=timeout,
    )
    if response.status_code >= 400:
        text = response.text.strip().replace("\n", " ")
        raise RuntimeError(f"HTTP {response.status_code} {url} -> {text[:400]}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise RuntimeError(f"Non-JSON response from {url}") from exc
    if not isinstance(payload, dict):
        raise RuntimeError("Trigger endpoint returned non-object response")
    return payload


def main() -> int:
    args = _parse_args()
    if not args.secret:
        print("Missing secret. Pass --secret or set SYNC_CRON_SECRET.", file=sys.stderr)
        return 2

    body: dict[str, Any] = {"forceFull": args.force_full}
    if args.clinic_id is not None:
        body["clinicId"] = args.clinic_id
    if args.vendor_type:
        body["vendorType"] = args.vendor_type

    try:
        payload = _trigger(
            base_url=args.base_url,
            secret=args.secret,
            body=body,
            timeout=args.timeout,
        )
    except Exception as exc:
        print(f"Sync trigger failed: {exc}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        for result in payload.get("results") or []:
            if result.get("skipped"):
                status = "SKIP"
            else:
                status = "PASS" if result.get("success") else "FAIL"
            print(
                f"[{status}] clinic={result.get('clinicId')} vendor={result.get('vendorType')} "
                f"strategy={result.get('strategy') or '-'} "
                f"patients={result.get('patientsProcessed', 0)} "
                f"appointments={result.get('appointmentsProcessed', 0)} "
                f"cases=+{result.get('casesCreated', 0)}/~{result.get('casesUpdated', 0)} "
                f"issues={result.get('issues', 0)}"
            )
            if result.get("error"):
                print(f"  error: {result['error']}")
        summary = payload.get("summary") or {}
        print(
            f"total={summary.get('total', 0)} succeeded={summary.get('succeeded', 0)} "
            f"failed={summary.get('failed', 0)} skipped={summary.get('skipped', 0)}"
        )

    summary = payload.get("summary") or {}
    return 1 if summary.get("failed") else 0


if __name__ == "__main__":
    raise SystemExit(main())
