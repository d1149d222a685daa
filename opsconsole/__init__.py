"""Outreach operator console.

A Telegram bot front end for a call/SMS/email outreach platform. This package
holds the session and callback protocol engine every menu and multi-step form
is built on.

Features:
- Environment-based configuration with Pydantic validation
- Signed, operation-bound inline button payloads within Telegram's 64-byte limit
- Alias indirection for oversized button payloads
- Stale/expired button detection and menu recovery
- Cooperative cancellation of work owned by a superseded operation
"""

__version__ = "0.1.0"
__license__ = "MIT"

# Development status indicator
__status__ = "Active Development"
