"""
Constants and configuration values used throughout the application.

This module defines constants that are used across different parts of the application,
providing a centralized location for provider endpoints, wire message types and
WebSocket close codes.
"""

# Logger name used throughout the application
LOGGER_NAME = "convai_relay"

# Provider defaults
DEFAULT_PROVIDER = "elevenlabs"
DEFAULT_BASE_HOST = "api.elevenlabs.io"
DEFAULT_MODEL_ID = "eleven_flash_v2"
TTS_MODEL_ID = "eleven_multilingual_v2"
DEFAULT_STT_MODEL_ID = "scribe_v1"
DEFAULT_AUDIO_MIME = "audio/mpeg"

# Fixed voice parameters for knowledge base renders
TTS_VOICE_SETTINGS = {"stability": 0.3, "similarity_boost": 0.75}

# Header names
API_KEY_HEADER = "xi-api-key"
SIGNATURE_HEADER = "elevenlabs-signature"
ACCEPTED_SIGNATURE_HEADERS = (
    "elevenlabs-signature",
    "x-elevenlabs-signature",
    "x-webhook-signature",
)
WEBHOOK_USER_AGENT = "ElevenLabs-KB-Pusher/1.0"
PROXY_USER_AGENT = "ConvAI-Proxy/1.0"

# Client handshake headers passed on to the upstream handshake
FORWARDED_HANDSHAKE_HEADERS = ("user-agent", "accept-language")

# Supported project document types
TEXT_EXTENSIONS = (".txt", ".md")
DOCX_EXTENSION = ".docx"
URL_EXTENSION = ".url"
DOCUMENT_EXTENSIONS = TEXT_EXTENSIONS + (DOCX_EXTENSION, URL_EXTENSION)

# Push modes
PUSH_MODE_CONVAI = "convai"
PUSH_MODE_TTS = "tts"

# Message type constants
MESSAGE_TYPE_INFO = "info"
MESSAGE_TYPE_ERROR = "error"
MESSAGE_TYPE_AUDIO = "audio"
MESSAGE_TYPE_PING = "ping"
MESSAGE_TYPE_PONG = "pong"
MESSAGE_TYPE_USER_MESSAGE = "user_message"
MESSAGE_TYPE_CONTEXTUAL_UPDATE = "contextual_update"

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

# WebSocket configuration for the upstream connection
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio chunks
