"""
Market Data Package

Candle sources and the services built on top of them:
- synthetic: DeterministicCandleSynthesizer (no network, reproducible)
- cryptocompare: CryptoCompareClient (paginated REST provider with retry)
- loader: Cache-backed loading with gap reporting and fallback
- aggregate: Timeframe escalation and candle downsampling
"""
