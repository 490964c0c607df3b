"""
Client Package

Consumer-side helpers for session event streams:
- streaming_client: StreamingClient (resumable SSE subscription with reconnect)
- candle_window: RollingCandleWindow and TradeMarkerBuffer
"""
