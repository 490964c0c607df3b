"""
Services Package

Application-facing services that sit beside the session engine:
- notifications: Topic pub/sub for session lifecycle notifications
"""
