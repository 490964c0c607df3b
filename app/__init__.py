"""
FastAPI Application Package

This package contains the main FastAPI application and routing logic:
historical candle endpoints, simulation session control, and the
Server-Sent Events stream of each session's event log.
"""
