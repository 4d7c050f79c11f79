"""
RUN SCRIPT - Start the RAG chat server
======================================

PURPOSE:
  Single entry point to start the backend. The server then handles all chat,
  streaming and knowledge requests for this instance.

WHAT IT DOES:
  - Imports the FastAPI app from ragchat.main.
  - Runs it with uvicorn on host 0.0.0.0 (accept connections from any interface) and port 8000.
  - reload=True means any change to Python files will restart the server (handy for development).

USAGE:
  python run.py

  Then use the API from another app, or run the interactive client: python cli.py
  API docs: http://localhost:8000/docs

NOTE:
  Before running, set GROQ_API_KEY in .env. Sessions live in memory only;
  the knowledge index is saved under VECTOR_STORE_DIR.
"""

import uvicorn

# ------------------------------------------------------------------------------
# ENTRY POINT
# ------------------------------------------------------------------------------
# Only run uvicorn when this file is executed directly (python run.py),
# not when it is imported by another module.
if __name__ == "__main__":
    uvicorn.run(
        "ragchat.main:app",  # String path to the FastAPI app instance (module:variable).
        host="0.0.0.0",
        port=8000,           # HTTP port; change if 8000 is already in use.
        reload=True
    )
