"""
Conversation Relay package.

Modules are imported directly (`src.relay.config`, `src.relay.router`, ...).
"""
