"""
RAG CHAT CLI - Interactive client for the chat server
=====================================================

PURPOSE:
A command-line interface for talking to the server without building a
frontend. Messages go to /chat, or to /chat/stream when streaming is on; both
use the same session id, so the conversation carries over when you switch.

USAGE:
    python cli.py

    Make sure the server is running first: python run.py

COMMANDS:
    /stream        - Toggle streaming replies on/off
    /rag on|off    - Turn knowledge retrieval on/off for this session
    /history       - View chat history for the current session
    /clear         - Clear the session on the server and start fresh
    /add <title>   - Add knowledge; the next line you type is the content
    /knowledge     - List knowledge entries
    /quit or /exit - Exit
"""

import requests
from uuid import uuid4

from config import ASSISTANT_NAME


# -----------------------------------------------------------------------------
# CONFIGURATION
# -----------------------------------------------------------------------------
# API base URL; change if your server runs on a different host or port.
BASE_URL = "http://localhost:8000"
SESSION_ID = str(uuid4())
STREAMING = False


# -----------------------------------------------------------------------------
# UI HELPERS
# -----------------------------------------------------------------------------

def print_header():
    print("\n" + "=" * 60)
    print(f"{ASSISTANT_NAME} - RAG Chat")
    print("=" * 60)
    print("\nCommands:")
    print("  /stream      - Toggle streaming replies")
    print("  /rag on|off  - Knowledge retrieval for this session")
    print("  /history     - See chat history")
    print("  /clear       - Start new session")
    print("  /add <title> - Add knowledge (content on the next line)")
    print("  /knowledge   - List knowledge entries")
    print("  /quit        - Exit")
    print("=" * 60 + "\n")


def get_user_input(prompt="\nYou: "):
    try:
        return input(prompt).strip()
    except (KeyboardInterrupt, EOFError):
        return None


def _error_text(response):
    """Readable error from a non-200 response (server errors carry a 'message' field)."""
    try:
        body = response.json()
    except ValueError:
        return f"Error: {response.status_code} - {response.text}"
    message = body.get("message") or body.get("detail")
    if isinstance(message, str):
        return f"Error ({response.status_code}): {message}"
    return f"Error: {response.status_code} - {body}"


# -----------------------------------------------------------------------------
# API CALLS
# -----------------------------------------------------------------------------

def send_message(message):
    """POST /chat and return the reply text (or an error text)."""
    try:
        response = requests.post(
            f"{BASE_URL}/chat",
            json={"message": message, "session_id": SESSION_ID},
            timeout=60
        )
        if response.status_code == 200:
            return response.json().get("response", "No response")
        return _error_text(response)
    except requests.exceptions.ConnectionError:
        return "Cannot connect to backend. Start it with: python run.py"
    except requests.exceptions.Timeout:
        return "Request timed out. Try again."


def stream_message(message):
    """
    POST /chat/stream and print chunks as they arrive.

    The server sends `data:` lines per chunk, then `event: done` or
    `event: error` followed by one data line.
    """
    try:
        with requests.post(
            f"{BASE_URL}/chat/stream",
            json={"message": message, "session_id": SESSION_ID},
            stream=True,
            timeout=120
        ) as response:
            if response.status_code != 200:
                print(_error_text(response))
                return

            event = None
            data_lines = []
            for line in response.iter_lines(decode_unicode=True):
                if line.startswith("event: "):
                    event = line[len("event: "):]
                elif line.startswith("data: "):
                    data_lines.append(line[len("data: "):])
                elif line == "" and data_lines:
                    data = "\n".join(data_lines)
                    if event == "error":
                        print(f"\n[stream error] {data}")
                    elif event != "done":
                        print(data, end="", flush=True)
                    event, data_lines = None, []
            print()
    except requests.exceptions.ConnectionError:
        print("Cannot connect to backend. Start it with: python run.py")
    except requests.exceptions.Timeout:
        print("\nStream timed out.")


def get_chat_history():
    """Fetch and format the current session's history."""
    try:
        response = requests.get(f"{BASE_URL}/chat/history/{SESSION_ID}", timeout=10)
        if response.status_code != 200:
            return "Could not retrieve history"
        messages = response.json().get("messages", [])
        if not messages:
            return "No messages in this session"

        output = f"\nChat History ({len(messages)} messages):\n"
        output += "-" * 60 + "\n"
        for i, msg in enumerate(messages, 1):
            role = {"user": "You", "system": "System"}.get(msg.get("role"), ASSISTANT_NAME)
            output += f"{i}. {role}: {msg.get('content', '')}\n"
        output += "-" * 60 + "\n"
        return output
    except requests.exceptions.RequestException as e:
        return f"Error retrieving history: {e}"


def clear_session():
    try:
        requests.delete(f"{BASE_URL}/chat/{SESSION_ID}", timeout=10)
    except requests.exceptions.RequestException as e:
        print(f"Could not clear session on the server: {e}")


def set_rag(enabled):
    try:
        response = requests.put(
            f"{BASE_URL}/chat/{SESSION_ID}/rag",
            json={"enabled": enabled},
            timeout=10
        )
        if response.status_code == 200:
            return f"RAG {'enabled' if enabled else 'disabled'} for this session"
        return _error_text(response)
    except requests.exceptions.RequestException as e:
        return f"Error: {e}"


def add_knowledge(title, content):
    try:
        response = requests.post(
            f"{BASE_URL}/knowledge",
            json={"title": title, "content": content},
            timeout=120
        )
        if response.status_code == 200:
            return f"Knowledge added (id {response.json().get('id')})"
        return _error_text(response)
    except requests.exceptions.RequestException as e:
        return f"Error: {e}"


def list_knowledge():
    try:
        response = requests.get(f"{BASE_URL}/knowledge", timeout=10)
        if response.status_code != 200:
            return _error_text(response)
        entries = response.json().get("data", [])
        if not entries:
            return "Knowledge base is empty"
        lines = [f"\nKnowledge ({len(entries)} entries):"]
        for entry in entries:
            lines.append(f"  {entry['id']}  {entry['title']}  ({entry['segment_count']} segments)")
        return "\n".join(lines)
    except requests.exceptions.RequestException as e:
        return f"Error: {e}"


# -----------------------------------------------------------------------------
# MAIN LOOP
# -----------------------------------------------------------------------------

def main():
    """Read commands and messages until /quit, /exit or end of input."""
    global SESSION_ID, STREAMING

    print_header()
    print(f"Session: {SESSION_ID}\n")

    while True:
        user_input = get_user_input()
        if user_input is None or user_input in ("/quit", "/exit"):
            print("\nGoodbye!")
            break
        if not user_input:
            continue

        if user_input == "/stream":
            STREAMING = not STREAMING
            print(f"Streaming {'on' if STREAMING else 'off'}")
        elif user_input in ("/rag on", "/rag off"):
            print(set_rag(user_input.endswith("on")))
        elif user_input == "/history":
            print(get_chat_history())
        elif user_input == "/clear":
            clear_session()
            SESSION_ID = str(uuid4())
            print(f"\nSession cleared. New session: {SESSION_ID}")
        elif user_input.startswith("/add "):
            content = get_user_input("Content: ")
            if content:
                print(add_knowledge(user_input[len("/add "):].strip(), content))
        elif user_input == "/knowledge":
            print(list_knowledge())
        elif user_input.startswith("/"):
            print(f"Unknown command: {user_input}")
        elif STREAMING:
            print(f"{ASSISTANT_NAME}: ", end="", flush=True)
            stream_message(user_input)
        else:
            print(f"{ASSISTANT_NAME}: {send_message(user_input)}")


# Run the interactive loop when this file is executed (python cli.py).
if __name__ == "__main__":
    main()
