"""
Stina scheduling core.

Turns inbound messages into confirmed calendar bookings: a meeting request
lifecycle state machine plus an LLM-driven scheduling orchestrator.
"""

__version__ = "0.1.0"
