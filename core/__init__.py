"""
Core Package

Contains the source-agnostic core logic including:
- CandleSource: Abstract capability every candle provider satisfies
- Source factory: Selects the CandleSource implementation from configuration
- Schemas: Pydantic models for candles, sessions and session events
- Errors: Provider, session and stream exception taxonomy
"""
