"""
ConvAI Relay - Web/voice frontend to ElevenLabs ConvAI bridge

This application sits between a browser or voice frontend and the ElevenLabs
conversational AI API. It turns folders of project documents into knowledge
bases, delivers them to the provider and proxies realtime conversation sessions.

Architecture Overview:
- FastAPI server exposing REST endpoints and a WebSocket proxy endpoint
- Knowledge base assembly from .txt, .md, .docx and .url documents
- Signed-URL negotiation with a public-URL fallback for upstream sessions
- Bidirectional message relay with audio normalization, keepalive and idle timeout

Key Components:
- bot: The session proxy and the message translation rules
- config: Immutable settings, constants and logging setup
- handlers: Knowledge base pushes and the ConvAI webhook receiver
- models: API schemas and the session state machine
- services: ElevenLabs REST client, project store and session negotiator
- websocket_manager: Creates and tracks one proxy per WebSocket connection

Getting Started:
1. Set up environment variables (or a .env file):
   - ELEVENLABS_API_KEY: Your ElevenLabs API key
   - ELEVENLABS_AGENT_ID: The ConvAI agent to connect sessions to
   - ELEVENLABS_VOICE_ID: Voice used for text-to-speech pushes
   - ELEVENLABS_CONVAI_WEBHOOK / ELEVENLABS_WEBHOOK_SECRET: Webhook push target
   - PORT: Port to run the server on (default 8080)

2. Put each project's documents in its own folder under ./projects

3. Start the server:
   ```bash
   python run.py
   ```

4. Point the frontend at ws://your-server:8080/ws?project=<key>
"""
