"""
SERVICES PACKAGE
=================

Business logic lives here. The API layer (ragchat.main) calls these services;
they don't handle HTTP, only sessions, retrieval, LLM calls and admission.

MODULES:
    chunker              - Splits knowledge text into overlapping segments
    vector_store         - Embeds segments and runs similarity search (FAISS)
    knowledge_service    - Knowledge base CRUD and prompt augmentation (RAG)
    session_store        - Per-session history with TTL / capacity eviction
    groq_service         - Completion capability, plain and streaming
    conversation_service - Orchestrates a chat turn end to end
    rate_limiter         - Token-bucket admission per route and client
"""
