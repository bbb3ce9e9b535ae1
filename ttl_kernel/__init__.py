"""
TTL Kernel - persistence and shared infrastructure for the expiration engine.

Provides:
- The durable rule registry (expiration rules and their run statistics)
- Typed exceptions with machine-readable codes
- Structured JSON logging
- Injectable clocks
"""

__version__ = "0.1.0"
