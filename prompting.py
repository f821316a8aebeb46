import time
import uuid
from typing import Any, Dict, List

TELEGRAM_MAX_LEN = 4096

# -------------------------
# System directive
# -------------------------
SYSTEM_PROMPT = (
    "Aim to provide answers within the specified token limit. If the content exceeds the limit, "
    "continue the response from where it left off when the user inputs \"continue.\" "
    "As an AI system, your role is to provide direct, concise, and conversational answers. "
    "Avoid providing opposing views, warnings, or summarizations. "
    "Do not provide abstract or overly detailed explanations, nor trace the origins of a question. "
    "Answer the user's questions in a clear and straightforward manner."
)

# -------------------------
# Turns and content parts (OpenAI chat message shape)
# -------------------------
def text_content(text: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": text}]

def image_content(url: str) -> List[Dict[str, Any]]:
    return [{"type": "image_url", "image_url": {"url": url}}]

def user_turn(content: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"role": "user", "content": content}

def assistant_turn(text: str) -> Dict[str, Any]:
    return {"role": "assistant", "content": text}

def make_turn_pair(user: Dict[str, Any], assistant: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}",
        "created": time.time(),
        "turns": [user, assistant],
    }

def build_messages(
    history: List[Dict[str, Any]],
    new_turn: Dict[str, Any],
    system_prompt: str = SYSTEM_PROMPT,
) -> List[Dict[str, Any]]:
    return [{"role": "system", "content": system_prompt}, *history, new_turn]

# -------------------------
# Display helpers
# -------------------------
def turn_text(turn: Dict[str, Any]) -> str:
    content = turn.get("content")
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for part in content or []:
        if part.get("type") == "text":
            parts.append(part.get("text", ""))
        elif part.get("type") == "image_url":
            url = (part.get("image_url") or {}).get("url", "")
            # data URLs are huge; just mark them
            parts.append("[image]" if url.startswith("data:") else f"[image] {url}")
    return " ".join(p for p in parts if p)

def chunk_text(text: str, limit: int = TELEGRAM_MAX_LEN) -> List[str]:
    return [text[i:i+limit] for i in range(0, len(text), limit)]

def format_history(turns: List[Dict[str, Any]], max_len: int = 240) -> str:
    if not turns:
        return "(no messages in the current topic)"
    lines = []
    for idx, turn in enumerate(turns, start=1):
        txt = turn_text(turn).replace("\n", " ")
        if len(txt) > max_len:
            txt = txt[:max_len] + "…"
        lines.append(f"{idx:02d}. [{turn.get('role', '?')}] {txt}")
    return "\n".join(lines)
