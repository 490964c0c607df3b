"""
Simulation Package

Live replay sessions:
- engine: SimulationSessionEngine (state machine + one asyncio task per session)
- event_stream: SessionEventStream (sequenced, resumable event logs)
- strategy / indicators: Candle-by-candle signal evaluator and paper portfolio
"""
