"""
Pydantic models for the relay's REST surface and knowledge base data.

This module defines structured data models for request bodies, responses and the
assembled knowledge base, providing type validation and documentation.
"""

from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

from convai_relay.config.constants import DEFAULT_PROVIDER


class ProjectSummary(BaseModel):
    """A discoverable project."""

    key: str = Field(..., description="Project directory name")
    title: str = Field(..., description="Display title, defaults to the key")


class KnowledgeBase(BaseModel):
    """Concatenated reference text for one project."""

    title: str = Field(..., description="Knowledge base title")
    text: str = Field(..., description="Newline-joined document contents")


class PushRequest(BaseModel):
    """Body of POST /push."""

    project: Optional[str] = Field(None, description="Project key")
    mode: Optional[str] = Field(None, description="Either 'convai' or 'tts'")


class TtsRequest(BaseModel):
    """Body of POST /tts."""

    project: Optional[str] = Field(None, description="Project key")


class ConvaiPushResult(BaseModel):
    """Result of pushing a knowledge base to the ConvAI webhook."""

    mode: Literal["convai"] = "convai"
    success: bool = True
    status: int = Field(..., description="Webhook HTTP status")
    message: str = "Knowledge base updated via webhook"
    title: str
    content_length: int


class TtsPushResult(BaseModel):
    """Result of rendering a knowledge base to speech."""

    mode: Literal["tts"] = "tts"
    success: bool = True
    file: str = Field(..., description="Media reference of the generated audio")
    message: str = "TTS file generated successfully"


PushResult = Union[ConvaiPushResult, TtsPushResult]


class WebhookPayload(BaseModel):
    """Body posted to the ConvAI knowledge base webhook."""

    title: str
    knowledge_base: str
    timestamp: str
    mode: Literal["convai"] = "convai"


class RealtimeQuery(BaseModel):
    model: str
    agent_id: str


class RealtimeSessionPayload(BaseModel):
    """Bootstrap payload returned by GET /realtime/{project}."""

    provider: str = DEFAULT_PROVIDER
    ws: str = Field(..., description="WebSocket endpoint the client should open")
    query: RealtimeQuery
    initial_knowledge_base: KnowledgeBase
    meta: Dict[str, str]


class KnowledgeBaseUpdate(BaseModel):
    """Outcome of replacing an agent's knowledge base document."""

    document_id: str
    name: str
    agent_id: str
    method: str = "prompt_knowledge_base"
    associated: bool
