"""
RAGCHAT MAIN API
================

FastAPI application and all HTTP endpoints. Routes are thin: they validate the
request, pass the admission check where declared, call one service method and
shape the response.

ENDPOINTS:
  GET    /                           - API name and list of endpoints.
  GET    /health                     - Whether each service is initialized.
  POST   /chat                       - Multi-turn chat with session memory (+ RAG).
  POST   /chat/stream                - Same, streamed as server-sent events.
  GET    /chat/history/{session_id}  - All stored messages of a session.
  GET    /chat/{session_id}          - Whether a session exists.
  DELETE /chat/{session_id}          - Clear a session (idempotent).
  GET    /chat/{session_id}/rag      - Is RAG on for this session?
  PUT    /chat/{session_id}/rag      - Turn RAG on/off for this session.
  GET    /sessions                   - Live session ids and count.
  POST   /knowledge                  - Add knowledge (chunked + embedded).
  GET    /knowledge                  - List knowledge entries, newest first.
  GET    /knowledge/stats            - Entry / segment / character totals.
  GET    /knowledge/{id}             - One entry with its segments.
  DELETE /knowledge/{id}             - Delete an entry's metadata.
  POST   /knowledge/search           - Relevant segments for a query.

SESSION:
  Omit session_id to use the shared default session. Sessions live in memory,
  expire after SESSION_EXPIRE_MINUTES idle and are not kept across restarts.

STARTUP:
  The lifespan function loads the vector index, restores knowledge metadata,
  creates the Groq, session, conversation and rate-limit services, and starts
  the session sweeper. On shutdown it stops the sweeper.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

import config
from ragchat.exceptions import (
    ChatServerException,
    ClientException,
    InvalidRequestException,
    KnowledgeNotFoundException,
    RateLimitExceeded,
    ServerException,
)
from ragchat.models import (
    AddKnowledgeRequest,
    ChatHistory,
    ChatRequest,
    ChatResponse,
    RagToggleRequest,
    SearchRequest,
)
from ragchat.services.conversation_service import ConversationService, QueueSink
from ragchat.services.groq_service import GroqService
from ragchat.services.knowledge_service import KnowledgeService
from ragchat.services.rate_limiter import RateLimiter, RouteLimit, rate_limited
from ragchat.services.session_store import SessionStore
from ragchat.services.vector_store import VectorStoreService


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("ragchat")


# -----------------------------------------------------------------------------
# GLOBAL SERVICE REFERENCES
# -----------------------------------------------------------------------------
# Set during startup (lifespan) and used by all route handlers.
vector_store_service: Optional[VectorStoreService] = None
knowledge_service: Optional[KnowledgeService] = None
groq_service: Optional[GroqService] = None
session_store: Optional[SessionStore] = None
conversation_service: Optional[ConversationService] = None
rate_limiter: Optional[RateLimiter] = None


# -----------------------------------------------------------------------------
# ROUTE LIMITS
# -----------------------------------------------------------------------------
CHAT_LIMIT = RouteLimit(config.CHAT_REQUESTS_PER_MINUTE, "chat-conversation")
STREAM_LIMIT = RouteLimit(config.STREAM_REQUESTS_PER_MINUTE, "chat-stream")
KNOWLEDGE_LIMIT = RouteLimit(config.KNOWLEDGE_REQUESTS_PER_MINUTE, "knowledge-write")


def _current_rate_limiter() -> Optional[RateLimiter]:
    return rate_limiter


# -------------------------------------------------------------------------
# LIFESPAN (STARTUP / SHUTDOWN)
# -------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build every service in dependency order, start the session sweeper, and
    stop it again on shutdown.

    Order matters:
    - VectorStoreService before KnowledgeService (it stores the segments)
    - GroqService and SessionStore before ConversationService
    """
    global vector_store_service, knowledge_service, groq_service
    global session_store, conversation_service, rate_limiter

    logger.info("=" * 60)
    logger.info("RAG chat server - Starting Up...")
    logger.info("=" * 60)

    try:
        logger.info("Initializing vector store service...")
        vector_store_service = VectorStoreService(
            store_dir=config.VECTOR_STORE_DIR,
            model_name=config.EMBEDDING_MODEL,
        )
        vector_store_service.load()

        logger.info("Initializing knowledge service...")
        knowledge_service = KnowledgeService(
            vector_store_service,
            segment_size=config.CHUNK_SIZE,
            segment_overlap=config.CHUNK_OVERLAP,
            min_score=config.RAG_MIN_SCORE,
            max_results=config.RAG_MAX_RESULTS,
        )
        knowledge_service.restore_from_vector_store()

        logger.info("Initializing Groq service...")
        groq_service = GroqService(config.GROQ_API_KEYS, config.GROQ_MODEL)

        logger.info("Initializing session store...")
        session_store = SessionStore(
            system_prompt=config.SYSTEM_PROMPT,
            max_history=config.MAX_HISTORY,
            ttl_seconds=config.SESSION_EXPIRE_MINUTES * 60,
            max_sessions=config.MAX_SESSIONS,
            sweep_interval_seconds=config.SESSION_CLEANUP_INTERVAL_MINUTES * 60,
        )
        session_store.start()

        conversation_service = ConversationService(
            session_store,
            completion=groq_service,
            knowledge_service=knowledge_service,
            streaming=groq_service,
        )

        rate_limiter = RateLimiter(
            enabled=config.RATE_LIMIT_ENABLED,
            idle_seconds=config.RATE_LIMIT_IDLE_MINUTES * 60,
            max_buckets=config.RATE_LIMIT_MAX_BUCKETS,
        )

        logger.info("=" * 60)
        logger.info("Service Status:")
        logger.info("    - Vector Store: Ready (%d segments)", vector_store_service.count())
        logger.info("    - Knowledge Base: Ready (%d entries)", knowledge_service.get_stats().total_entries)
        logger.info("    - Groq AI: Ready")
        logger.info("    - Sessions: Ready")
        logger.info("    - Rate Limiting: %s", "On" if rate_limiter.enabled else "Off")
        logger.info("=" * 60)

        yield

        logger.info("Shutting down...")
        if session_store:
            session_store.shutdown()
        logger.info("Goodbye!")

    except Exception as e:
        logger.error(f"Fatal error during startup: {e}", exc_info=True)
        raise


# -------------------------------------------------------------------------
# FASTAPI APP, CORS AND ERROR MAPPING
# -------------------------------------------------------------------------
app = FastAPI(
    title="RAG Chat API",
    description="Multi-turn chat with session memory, knowledge retrieval and rate limiting",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(exc: ChatServerException) -> dict:
    return {
        "message": exc.message,
        "code": exc.__class__.__name__,
        "trace_id": uuid.uuid4().hex[:8],
    }


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded):
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return JSONResponse(status_code=429, content=_error_body(exc), headers=headers)


@app.exception_handler(KnowledgeNotFoundException)
async def not_found_exception_handler(request: Request, exc: KnowledgeNotFoundException):
    return JSONResponse(status_code=404, content=_error_body(exc))


@app.exception_handler(ClientException)
async def client_exception_handler(request: Request, exc: ClientException):
    logger.warning(f"Client exception: {exc.message}")
    return JSONResponse(status_code=400, content=_error_body(exc))


@app.exception_handler(ServerException)
async def server_exception_handler(request: Request, exc: ServerException):
    logger.error(f"Server exception: {exc.message}")
    return JSONResponse(status_code=500, content=_error_body(exc))


def _chat_service() -> ConversationService:
    if not conversation_service:
        raise HTTPException(status_code=503, detail="Chat service not initialized")
    return conversation_service


def _knowledge_service() -> KnowledgeService:
    if not knowledge_service:
        raise HTTPException(status_code=503, detail="Knowledge service not initialized")
    return knowledge_service


def _require_text(value: str, field: str) -> str:
    if not value.strip():
        raise InvalidRequestException(f"{field} must not be blank")
    return value


def _sse_event(data: str, event: Optional[str] = None) -> str:
    """Format one server-sent event; multi-line data becomes several data: lines."""
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


# =========================================================================
# API ENDPOINTS
# =========================================================================

@app.get("/")
async def root():
    """Return the API name and a short description of each endpoint (for discovery)."""
    return {
        "message": "RAG Chat API",
        "endpoints": {
            "/chat": "Multi-turn chat with session memory",
            "/chat/stream": "Streaming multi-turn chat (server-sent events)",
            "/chat/history/{session_id}": "Get chat history",
            "/chat/{session_id}/rag": "Get or set RAG for a session",
            "/sessions": "List live sessions",
            "/knowledge": "Manage the knowledge base",
            "/health": "System health check"
        }
    }


@app.get("/health")
async def health():
    """Return 'healthy' and whether each service is initialized."""
    return {
        "status": "healthy",
        "vector_store": vector_store_service is not None,
        "knowledge_service": knowledge_service is not None,
        "groq_service": groq_service is not None,
        "conversation_service": conversation_service is not None,
        "rate_limiter": rate_limiter is not None,
    }


# ---------------------------- chat -----------------------------------------

@app.post("/chat", response_model=ChatResponse, dependencies=[Depends(rate_limited(_current_rate_limiter, CHAT_LIMIT))])
def chat(request: ChatRequest):
    """
    Send a message and get the assistant's reply.

    The session is created on first use and keeps the last MAX_HISTORY messages.
    If RAG is on for the session, relevant knowledge is added to the message
    before it is stored and sent. Model failures come back as an apology text.
    """
    service = _chat_service()
    session_id = request.session_id or config.DEFAULT_SESSION_ID
    response_text = service.chat(session_id, _require_text(request.message, "message"))
    return ChatResponse(response=response_text, session_id=session_id)


@app.post(
    "/chat/stream",
    dependencies=[Depends(rate_limited(_current_rate_limiter, STREAM_LIMIT))],
    responses={200: {"content": {"text/event-stream": {}}}},
)
async def chat_stream(request: ChatRequest):
    """
    Streaming version of /chat. Emits `data:` events with partial text, then
    either `event: done` (data [DONE]) or `event: error` with the error message.
    """
    service = _chat_service()
    session_id = request.session_id or config.DEFAULT_SESSION_ID
    sink = QueueSink()
    await run_in_threadpool(service.stream_chat, session_id, _require_text(request.message, "message"), sink)

    async def event_generator():
        async for kind, payload in sink.events():
            if kind == "data":
                yield _sse_event(payload)
            elif kind == "done":
                yield _sse_event("[DONE]", event="done")
            else:
                yield _sse_event(str(payload), event="error")

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@app.get("/chat/history/{session_id}", response_model=ChatHistory)
async def get_chat_history(session_id: str):
    """All messages of a session, system prompt first. Unknown sessions return an empty list."""
    service = _chat_service()
    return ChatHistory(session_id=session_id, messages=service.get_history(session_id))


@app.get("/chat/{session_id}")
async def get_session_info(session_id: str):
    service = _chat_service()
    return {"session_id": session_id, "exists": service.session_exists(session_id)}


@app.delete("/chat/{session_id}")
async def clear_session(session_id: str):
    """Forget a session and its RAG setting. Clearing an unknown session is fine."""
    service = _chat_service()
    service.clear_session(session_id)
    return {"message": "Session cleared", "session_id": session_id}


@app.get("/chat/{session_id}/rag")
async def get_rag(session_id: str):
    service = _chat_service()
    return {"session_id": session_id, "enabled": service.is_rag_enabled(session_id)}


@app.put("/chat/{session_id}/rag")
async def set_rag(session_id: str, request: RagToggleRequest):
    service = _chat_service()
    service.set_rag_enabled(session_id, request.enabled)
    return {"session_id": session_id, "enabled": request.enabled}


@app.get("/sessions")
async def list_sessions():
    service = _chat_service()
    return {"total": service.session_count(), "sessions": sorted(service.session_ids())}


# ---------------------------- knowledge ------------------------------------

@app.post("/knowledge", dependencies=[Depends(rate_limited(_current_rate_limiter, KNOWLEDGE_LIMIT))])
def add_knowledge(request: AddKnowledgeRequest):
    """Chunk, embed and store a piece of knowledge. Fails with 500 if storing fails."""
    service = _knowledge_service()
    entry_id = service.add_knowledge(request.title, _require_text(request.content, "content"))
    return {"success": True, "id": entry_id, "message": "Knowledge added"}


@app.get("/knowledge")
def list_knowledge():
    entries = _knowledge_service().list_knowledge()
    return {"success": True, "data": entries, "total": len(entries)}


@app.get("/knowledge/stats")
def knowledge_stats():
    return {"success": True, "data": _knowledge_service().get_stats()}


@app.get("/knowledge/{entry_id}")
def get_knowledge_detail(entry_id: str):
    detail = _knowledge_service().get_knowledge_detail(entry_id)
    if detail is None:
        raise KnowledgeNotFoundException(f"Knowledge entry {entry_id} not found")
    return {"success": True, "data": detail}


@app.delete("/knowledge/{entry_id}")
def delete_knowledge(entry_id: str):
    """Delete an entry's metadata. Its segments stay in the vector store."""
    deleted = _knowledge_service().delete_knowledge(entry_id)
    return {"success": deleted, "message": "Deleted" if deleted else "Knowledge entry not found"}


@app.post("/knowledge/search")
def search_knowledge(request: SearchRequest):
    results = _knowledge_service().retrieve_knowledge(request.query, request.max_results)
    return {"success": True, "data": results, "total": len(results)}


# -------------------------------------------------------------------------
# STANDALONE RUN (python -m ragchat.main)
# -------------------------------------------------------------------------
def run():
    """Start the uvicorn server (same as run.py); used if someone does python -m ragchat.main"""
    uvicorn.run(
        "ragchat.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

if __name__ == "__main__":
    run()
