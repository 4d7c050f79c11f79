"""
RAGCHAT APPLICATION PACKAGE
===========================

Main Python package for the conversational backend:

  from ragchat.main import app
  from ragchat.models import ChatRequest
  from ragchat.services.conversation_service import ConversationService

FILE STRUCTURE:
  ragchat/
    __init__.py    - This file; marks 'ragchat' as a package.
    main.py        - FastAPI app, service wiring and all HTTP endpoints.
    models.py      - Pydantic models for requests, responses and chat messages.
    exceptions.py  - Error types shared by services and the HTTP layer.
    services/      - Sessions, knowledge base, completion, rate limiting.
    utils/         - Helpers: retry with backoff.
"""
