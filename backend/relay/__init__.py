"""Chat relay backend.

Real-time buyer/seller chat for a marketplace: a WebSocket relay with
room-based routing and message persistence, plus a reconnecting client.
"""
