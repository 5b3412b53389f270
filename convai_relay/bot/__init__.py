"""
Bot module for proxying ConvAI realtime conversations.

This module provides the components that relay a browser WebSocket to the
ElevenLabs ConvAI realtime endpoint.

Key components:
- SessionProxy: Owns one client socket and one upstream socket, drives the
  session state machine, keepalive pings, the idle watchdog and symmetric teardown.
- message_translation: Normalizes upstream audio payloads into one client shape
  and repackages client audio chunks and text messages for the provider.

Usage examples:
```python
from convai_relay.bot import SessionProxy

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    proxy = SessionProxy(websocket, settings, negotiator, store=store, project="cyber")
    await proxy.run()
```
"""

from convai_relay.bot.session_proxy import SessionProxy

__all__ = ["SessionProxy"]
