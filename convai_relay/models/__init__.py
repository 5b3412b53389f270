"""
Data models for the ConvAI relay.

Key components:
- schemas: Pydantic models for REST request and response bodies, the assembled
  knowledge base and push results.
- session: The proxy session state machine and its transition table.
"""

from convai_relay.models.schemas import (
    ConvaiPushResult,
    KnowledgeBase,
    KnowledgeBaseUpdate,
    ProjectSummary,
    PushRequest,
    PushResult,
    RealtimeSessionPayload,
    TtsPushResult,
    TtsRequest,
    WebhookPayload,
)
from convai_relay.models.session import TRANSITIONS, SessionInfo, SessionState

__all__ = [
    "ConvaiPushResult",
    "KnowledgeBase",
    "KnowledgeBaseUpdate",
    "ProjectSummary",
    "PushRequest",
    "PushResult",
    "RealtimeSessionPayload",
    "TtsPushResult",
    "TtsRequest",
    "WebhookPayload",
    "TRANSITIONS",
    "SessionInfo",
    "SessionState",
]
