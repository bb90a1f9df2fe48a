from __future__ import annotations

import argparse
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Sequence

import httpx


def _utc_now_compact() -> str:
    return datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")


def _lat_lng(raw: str) -> list[float]:
    try:
        lat_s, lng_s = raw.split(",")
        return [float(lat_s), float(lng_s)]
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected LAT,LNG, got {raw!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Request a heat-aware walking route and save it as GeoJSON."
    )
    parser.add_argument("--start", type=_lat_lng, required=True, help="LAT,LNG")
    parser.add_argument("--end", type=_lat_lng, required=True, help="LAT,LNG")
    parser.add_argument("--timestamp", default=None, help="ISO-8601; selects a day of observations")
    parser.add_argument("--backend-url", default="http://localhost:8000")
    parser.add_argument("--timeout-s", type=float, default=60.0)
    parser.add_argument("--save-dir", default="out/headless")
    return parser


def build_payload(args: argparse.Namespace) -> dict[str, Any]:
    payload: dict[str, Any] = {"start": args.start, "end": args.end}
    if args.timestamp:
        payload["timestamp"] = args.timestamp
    return payload


def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return resp.text


def execute_headless_route(
    payload: dict[str, Any],
    *,
    backend_url: str,
    save_dir: str,
    timeout_s: float = 60.0,
    client: httpx.Client | None = None,
) -> dict[str, Any]:
    base = backend_url.rstrip("/")
    own_client = client is None
    if client is None:
        client = httpx.Client(timeout=timeout_s)

    try:
        resp = client.post(f"{base}/find-route", json=payload)
    finally:
        if own_client:
            client.close()

    if resp.status_code != 200:
        return {"ok": False, "status_code": resp.status_code, "error": _error_text(resp)}

    feature = resp.json()
    out_dir = Path(save_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / f"route_{_utc_now_compact()}.geojson"
    out_path.write_text(json.dumps(feature, indent=2), encoding="utf-8")

    props = feature.get("properties", {})
    return {
        "ok": True,
        "status_code": resp.status_code,
        "route_file": str(out_path),
        "distance_m": props.get("distance"),
        "temperature": props.get("temperature"),
        "land_cover": props.get("landCover"),
    }


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    summary = execute_headless_route(
        build_payload(args),
        backend_url=args.backend_url,
        save_dir=args.save_dir,
        timeout_s=args.timeout_s,
    )
    if not summary["ok"]:
        print(f"find-route failed ({summary['status_code']}): {summary['error']}")
        return 1
    print(
        f"distance_m={summary['distance_m']} temperature={summary['temperature']} "
        f"land_cover={summary['land_cover']} saved={summary['route_file']}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
