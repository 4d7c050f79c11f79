"""
DATA MODELS MODULE
==================

Pydantic models used for API requests, responses, and the in-memory chat
history. FastAPI uses these to validate incoming JSON and to serialize
responses; the session store keeps ChatMessage instances in order.

MODELS:
  ChatMessage          - One message in a conversation (role + content). Immutable.
  ChatRequest          - Body of POST /chat and POST /chat/stream.
  ChatResponse         - Body returned by POST /chat.
  ChatHistory          - session_id + ordered list of ChatMessage (GET /chat/history/{id}).
  RagToggleRequest     - Body of PUT /chat/{id}/rag.
  AddKnowledgeRequest  - Body of POST /knowledge.
  SearchRequest        - Body of POST /knowledge/search.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional

from config import MAX_MESSAGE_LENGTH

Role = Literal["system", "user", "assistant"]

# ==============================================================================
# MESSAGE AND REQUEST/RESPONSE MODELS
# ==============================================================================

class ChatMessage(BaseModel):
    """
    A single message in a conversation. Frozen: once appended to a session it
    is never edited, only dropped by history trimming or eviction.
    """
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ChatRequest(BaseModel):
    """
    Request body for POST /chat and POST /chat/stream.

    - message: Required, 1-32,000 characters (empty or too long returns 422).
    - session_id: Optional. Omitted means the shared default session.
    """
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    session_id: Optional[str] = Field(default=None, max_length=128)


class ChatResponse(BaseModel):
    """Response body for POST /chat."""
    response: str
    session_id: str


class ChatHistory(BaseModel):
    """Full conversation of one session, system prompt first."""
    session_id: str
    messages: List[ChatMessage]


class RagToggleRequest(BaseModel):
    """Request body for PUT /chat/{id}/rag. enabled=False sends the raw message to the model."""
    enabled: bool


class AddKnowledgeRequest(BaseModel):
    """
    Request body for POST /knowledge.

    - title: Required, 1-200 characters. Stored with every segment.
    - content: Required. Split into overlapping segments before embedding.
    """
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)


class SearchRequest(BaseModel):
    """Request body for POST /knowledge/search. max_results is 1-50 (default 5)."""
    query: str = Field(..., min_length=1)
    max_results: int = Field(default=5, ge=1, le=50)
