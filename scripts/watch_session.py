#!/usr/bin/env python3
"""
Session watcher for:
  - /sessions/{id}/stream  (SSE, via StreamingClient with resume on reconnect)
  - /ws/sessions/status    (lifecycle notifications)

Creates a session unless --session-id is given, starts it, and prints events
until the session reaches a terminal status.

Usage examples:
  python scripts/watch_session.py --symbol BTCUSDT --timeframe 15m --bars 200 --speed 20
  python scripts/watch_session.py --host 127.0.0.1 --port 8000 --session-id 3f2a... --quiet-candles
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

import httpx
import websockets

from client.streaming_client import StreamingClient
from core.schemas import EventType, SessionEvent, Timeframe


async def status_loop(url: str, stop: asyncio.Event) -> None:
    """Print session_status notifications until stop is set."""
    try:
        async with websockets.connect(url) as ws:
            print(f"[STATUS] Connected: {url}")
            while not stop.is_set():
                try:
                    msg = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                data = json.loads(msg)
                print(f"[STATUS] {data['session_id'][:8]} {data['previous']} -> {data['status']} ({data.get('message')})")
    except (OSError, websockets.WebSocketException) as e:
        print(f"[STATUS] Disconnected ({e})")


def create_session(base: str, args: argparse.Namespace) -> str:
    width = Timeframe.parse(args.timeframe).ms
    body = {
        "symbol": args.symbol,
        "timeframe": args.timeframe,
        "start_time": args.start_ms,
        "end_time": args.start_ms + args.bars * width,
        "speed_multiplier": args.speed,
        "realtime": not args.no_realtime,
        "autostart": True,
    }
    resp = httpx.post(f"{base}/sessions", json=body, timeout=30.0)
    resp.raise_for_status()
    session = resp.json()
    print(f"[Info] Created session {session['id']} ({session['total_candles']} candles)")
    return session["id"]


def print_event(event: SessionEvent, quiet_candles: bool) -> None:
    if event.type == EventType.CANDLE and quiet_candles:
        return
    if event.type == EventType.CANDLE:
        c = event.payload["candle"]
        print(f"[{event.sequence_number:>6}] candle {c['timestamp_ms']} O={c['open']:.4f} C={c['close']:.4f}")
    else:
        print(f"[{event.sequence_number:>6}] {event.type.value} {event.payload}")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Create and follow a simulation session")
    parser.add_argument("--host", default="localhost", help="Server host (default: localhost)")
    parser.add_argument("--port", type=int, default=8000, help="Server port (default: 8000)")
    parser.add_argument("--session-id", default=None, help="Follow an existing session instead of creating one")
    parser.add_argument("--symbol", default="BTCUSDT", help="Symbol for a new session")
    parser.add_argument("--timeframe", default="15m", help="Timeframe for a new session (1m, 15m, 1h, 1d)")
    parser.add_argument("--start-ms", type=int, default=0, help="Range start for a new session (epoch ms)")
    parser.add_argument("--bars", type=int, default=200, help="Number of candles in a new session")
    parser.add_argument("--speed", type=float, default=10.0, help="Speed multiplier for a new session")
    parser.add_argument("--no-realtime", action="store_true", help="Replay as fast as possible")
    parser.add_argument("--quiet-candles", action="store_true", help="Do not print candle events")
    args = parser.parse_args()

    base = f"http://{args.host}:{args.port}"
    session_id: Optional[str] = args.session_id
    if session_id is None:
        try:
            session_id = create_session(base, args)
        except httpx.HTTPError as e:
            print(f"[Error] Could not create session: {e}")
            return 2

    stop = asyncio.Event()
    status_task = asyncio.create_task(status_loop(f"ws://{args.host}:{args.port}/ws/sessions/status", stop))

    client = StreamingClient(
        base,
        session_id,
        on_event=lambda event: print_event(event, args.quiet_candles),
        on_status=lambda status: print(f"[STREAM] {status.value}"),
    )
    try:
        await client.connect()
    finally:
        stop.set()
        await status_task

    equity = client.equity_history[-1]["equity"] if client.equity_history else None
    print(
        f"[Done] last_seq={client.last_seq} status={client.session_status} "
        f"markers={len(client.markers)} duplicates_skipped={client.duplicates_skipped} equity={equity}"
    )
    if client.gave_up or client.session_gone:
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n[Info] Interrupted. Bye.")
        sys.exit(0)
