"""
Configuration module for the ConvAI relay.

This module provides centralized configuration management for the entire application,
including constants, logging setup, and environment-based settings.

Key components:
- constants: Defines application-wide constants used across modules, including
  provider endpoints, message types, and WebSocket close codes.
- logging_config: Provides a consistent logging infrastructure with support for
  console and file-based logging with rotation capabilities.
- settings: The immutable Settings model read once from the environment and
  passed to every component.

Usage examples:
```python
from convai_relay.config.settings import Settings
from convai_relay.config.logging_config import configure_logging

settings = Settings.from_env()
logger = configure_logging(settings.log_level)
logger.info("Relay starting")
```
"""

# Config module initialization
