"""
Handlers module for one-shot knowledge base operations of the ConvAI relay.

Key components:
- push_handlers: Assembles a project's knowledge base and pushes it either to the
  ConvAI webhook (HMAC-signed when a secret is configured) or to text-to-speech,
  storing the rendered MP3 under the output directory.
- webhook_handlers: Receives ConvAI webhook deliveries, verifies their signature
  and replaces the agent's knowledge base document.

Usage examples:
```python
from convai_relay.handlers import PushDispatcher, sign_payload

dispatcher = PushDispatcher(settings, store, client)
result = await dispatcher.push("cyber", "convai")

header = sign_payload("secret", '{"title": "cyber"}', 1700000000)
```
"""

from convai_relay.handlers.push_handlers import PushDispatcher, sign_payload, tts_filename
from convai_relay.handlers.webhook_handlers import (
    ConvaiWebhookHandler,
    find_signature_header,
    parse_signature_header,
)

__all__ = [
    "PushDispatcher",
    "sign_payload",
    "tts_filename",
    "ConvaiWebhookHandler",
    "find_signature_header",
    "parse_signature_header",
]
