"""
Services module for external integrations of the ConvAI relay.

Key components:
- elevenlabs_client: Async REST client for the ElevenLabs API (signed URLs,
  text-to-speech, speech-to-text and knowledge base management).
- negotiator: Resolves the upstream WebSocket endpoint for an agent, preferring a
  signed URL and falling back to header-authenticated public agent mode.
- projects: Discovers project directories and assembles their knowledge bases.

Usage examples:
```python
from convai_relay.config.settings import Settings
from convai_relay.services import ElevenLabsClient, ProjectStore, SessionNegotiator

settings = Settings.from_env()
store = ProjectStore(settings)
kb = await store.assemble_kb("cyber")

negotiator = SessionNegotiator(settings, ElevenLabsClient(settings))
target = await negotiator.negotiate(settings.agent_id)
```
"""

from convai_relay.services.elevenlabs_client import ElevenLabsClient
from convai_relay.services.negotiator import SessionNegotiator, UpstreamTarget
from convai_relay.services.projects import ProjectStore, extract_docx_text

__all__ = [
    "ElevenLabsClient",
    "SessionNegotiator",
    "UpstreamTarget",
    "ProjectStore",
    "extract_docx_text",
]
