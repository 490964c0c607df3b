#!/usr/bin/env python3
"""
Validate the candles endpoint of the server.

Checks performed:
- HTTP 200 and a JSON object with "candles" and "gaps"
- Required candle fields present with numeric types
- Logical OHLC consistency (high/low vs open/close; non-negative values)
- Timestamps aligned to the returned timeframe's grid
- Strictly increasing timestamps (oldest → newest)
- Every missing bucket accounted for by a reported gap

Usage examples:
  python scripts/validate_candles.py --symbol BTCUSDT --timeframe 15m --start-ms 0 --end-ms 10800000
  python scripts/validate_candles.py --host 127.0.0.1 --port 8000 --symbol ETHUSDT --timeframe 1h --max-bars 500
"""

import argparse
import sys
from typing import Any, List, Tuple

import httpx

from core.schemas import Timeframe


REQUIRED_FIELDS = [
    "timestamp_ms",
    "open",
    "high",
    "low",
    "close",
    "volume",
]


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Validate candles endpoint response.")
    p.add_argument("--host", default="localhost", help="Server host (default: localhost)")
    p.add_argument("--port", type=int, default=8000, help="Server port (default: 8000)")
    p.add_argument("--symbol", required=True, help="Symbol (e.g., BTCUSDT, ETH/USD)")
    p.add_argument("--timeframe", required=True, help="Timeframe (1m, 15m, 1h, 1d)")
    p.add_argument("--start-ms", type=int, default=None, help="Range start (epoch ms)")
    p.add_argument("--end-ms", type=int, default=None, help="Range end (epoch ms)")
    p.add_argument("--max-bars", type=int, default=5000, help="Downsample above this many bars")
    p.add_argument("--allow-gaps", action="store_true", help="Do not fail if the response reports gaps")
    p.add_argument("--print-sample", type=int, default=0, help="Print first N candles for visual inspection")
    return p.parse_args()


def is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def validate_item(item: dict, width_ms: int) -> Tuple[bool, str]:
    for f in REQUIRED_FIELDS:
        if f not in item:
            return False, f"missing field: {f}"

    if not isinstance(item["timestamp_ms"], int):
        return False, "timestamp_ms must be int"
    if not all(is_number(item[f]) for f in REQUIRED_FIELDS[1:]):
        return False, "OHLCV must be numbers"

    if item["timestamp_ms"] % width_ms != 0:
        return False, f"timestamp {item['timestamp_ms']} not aligned to {width_ms}ms grid"

    high = float(item["high"])
    low = float(item["low"])
    opn = float(item["open"])
    cls = float(item["close"])
    vol = float(item["volume"])
    if high < low:
        return False, f"high < low ({high} < {low})"
    if high < opn or high < cls:
        return False, f"high must be >= open/close ({high} < {opn}/{cls})"
    if low > opn or low > cls:
        return False, f"low must be <= open/close ({low} > {opn}/{cls})"
    if any(v < 0 for v in (opn, high, low, cls, vol)):
        return False, "negative values not allowed in OHLC/volume"

    return True, ""


def validate_continuity(items: List[dict], gaps: List[dict], width_ms: int) -> Tuple[bool, str]:
    times = [it["timestamp_ms"] for it in items]
    for i in range(1, len(times)):
        if times[i] <= times[i - 1]:
            return False, f"timestamps not strictly increasing at index {i}: {times[i-1]} -> {times[i]}"

    for i in range(1, len(times)):
        hole_start = times[i - 1] + width_ms
        if times[i] == hole_start:
            continue
        covered = any(g["start_ms"] <= hole_start and g["end_ms"] >= times[i] for g in gaps)
        if not covered:
            return False, f"unreported hole between {times[i-1]} and {times[i]}"
    return True, ""


def main() -> int:
    args = parse_args()
    url = f"http://{args.host}:{args.port}/candles/{args.symbol}/{args.timeframe}"
    params = {"max_bars": args.max_bars}
    if args.start_ms is not None:
        params["start_ms"] = args.start_ms
    if args.end_ms is not None:
        params["end_ms"] = args.end_ms
    print(f"[Info] Requesting: {url} {params}")

    try:
        resp = httpx.get(url, params=params, timeout=60.0)
    except httpx.HTTPError as e:
        print(f"[Error] Request failed: {e}")
        return 2

    if resp.status_code != 200:
        print(f"[Error] HTTP {resp.status_code}: {resp.text[:300]}")
        return 2

    try:
        data = resp.json()
    except ValueError as e:
        print(f"[Error] Invalid JSON: {e}")
        return 2

    if not isinstance(data, dict) or not isinstance(data.get("candles"), list):
        print("[Error] Response has no candles list")
        return 2

    candles = data["candles"]
    gaps = data.get("gaps") or []
    width_ms = Timeframe.parse(data["timeframe"]).ms

    for idx, item in enumerate(candles):
        ok, msg = validate_item(item, width_ms)
        if not ok:
            print(f"[Error] Candle {idx} invalid: {msg}")
            return 1

    ok, msg = validate_continuity(candles, gaps, width_ms)
    if not ok:
        print(f"[Error] Continuity check failed: {msg}")
        return 1

    if gaps:
        missing = sum(g.get("missing_bars", 0) for g in gaps)
        if not args.allow_gaps:
            print(f"[Error] {len(gaps)} gap(s), {missing} missing bar(s) (use --allow-gaps to accept).")
            return 1
        print(f"[Warn] {len(gaps)} gap(s), {missing} missing bar(s) (allowed by flag).")

    if args.print_sample > 0:
        sample = candles[: args.print_sample]
        print(f"[Info] Sample ({len(sample)} of {len(candles)}):")
        for it in sample:
            print(it)

    downsampled = " (downsampled)" if data.get("downsampled") else ""
    print(
        f"[OK] Validated {len(candles)} candles for {data.get('symbol')} "
        f"{data['timeframe']}{downsampled} from {data.get('source')}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
