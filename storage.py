import hashlib
import json
import logging
import os
import re
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ARCHIVE_MARKER = "[X]"
TAIL_BLOCK_SIZE = 4096

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")

# -------------------------
# Identity
# -------------------------
def derive_user_key(platform_user_id: str) -> str:
    return hashlib.sha256(platform_user_id.encode("utf-8")).hexdigest()

def _ensure_dir(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path

def _atomic_write_json(path: str, obj: Any) -> None:
    tmp = f"{path}.{uuid.uuid4().hex[:8]}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)

def is_safe_name(name: str) -> bool:
    return bool(name) and name not in (".", "..") and bool(_SAFE_NAME.match(name))

# -------------------------
# Per-user config (selected model)
# -------------------------
class ConfigStore:
    def __init__(self, root: str, default_model: str, known_models: Optional[Iterable[str]] = None) -> None:
        self.root = _ensure_dir(root)
        self.default_model = default_model
        self.known_models = set(known_models) if known_models else None

    def _path(self, key: str) -> str:
        return os.path.join(self.root, f"{key}.json")

    def get(self, key: str) -> Dict[str, str]:
        path = self._path(key)
        if not os.path.exists(path):
            return {"model": self.default_model}
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return {"model": str(data.get("model", ""))}

    def set_model(self, key: str, model: str) -> str:
        model = (model or "").strip()
        if not model or (self.known_models is not None and model not in self.known_models):
            logger.info("Unrecognized model %r for %s…, storing default %s", model, key[:8], self.default_model)
            model = self.default_model
        _atomic_write_json(self._path(key), {"model": model})
        return model

# -------------------------
# Conversation history (append-only JSONL per user)
# -------------------------
class HistoryStore:
    def __init__(self, root: str) -> None:
        self.root = _ensure_dir(root)

    def _active_path(self, key: str) -> str:
        return os.path.join(self.root, f"{key}.jsonl")

    def append(self, key: str, pair: Dict[str, Any]) -> None:
        line = (json.dumps(pair, ensure_ascii=False) + "\n").encode("utf-8")
        with open(self._active_path(key), "a+b") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            if size:
                f.seek(size - 1)
                if f.read(1) != b"\n":
                    # torn last record; start ours on a fresh line
                    line = b"\n" + line
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def _decode(self, key: str, raw: bytes) -> Optional[Dict[str, Any]]:
        if not raw.strip():
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Skipping unreadable history record for %s…", key[:8])
            return None

    def _tail_records(self, key: str, path: str, count: int) -> List[Dict[str, Any]]:
        # Reads backwards from EOF until `count` decodable records are collected.
        newest_first: List[Dict[str, Any]] = []
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            pos = f.tell()
            carry = b""
            while pos > 0 and len(newest_first) < count:
                step = min(TAIL_BLOCK_SIZE, pos)
                pos -= step
                f.seek(pos)
                lines = (f.read(step) + carry).split(b"\n")
                # first piece may be a partial line unless we reached the start
                carry = lines.pop(0) if pos > 0 else b""
                for raw in reversed(lines):
                    record = self._decode(key, raw)
                    if record is not None:
                        newest_first.append(record)
        return list(reversed(newest_first[:count]))

    def recent_pairs(self, key: str, limit: int) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        try:
            return self._tail_records(key, self._active_path(key), limit)
        except FileNotFoundError:
            return []

    def recent_window(self, key: str, limit: int) -> List[Dict[str, Any]]:
        turns: List[Dict[str, Any]] = []
        for pair in self.recent_pairs(key, limit):
            turns.extend(pair.get("turns") or [])
        return turns

    def reset(self, key: str) -> Optional[str]:
        archived = f"{ARCHIVE_MARKER}{key}_{time.time_ns()}_{uuid.uuid4().hex[:6]}.jsonl"
        try:
            os.rename(self._active_path(key), os.path.join(self.root, archived))
        except FileNotFoundError:
            return None
        logger.info("Archived history for %s… as %s", key[:8], archived)
        return archived

# -------------------------
# Media: user uploads and generated images
# -------------------------
class UploadStore:
    def __init__(self, root: str) -> None:
        self.root = _ensure_dir(root)

    def save(self, key: str, data: bytes, ext: str = "jpg") -> str:
        directory = _ensure_dir(os.path.join(self.root, key))
        name = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}.{ext}"
        with open(os.path.join(directory, name), "wb") as f:
            f.write(data)
        return name

    def path_for(self, key: str, name: str) -> Optional[str]:
        if not is_safe_name(key) or not is_safe_name(name):
            return None
        path = os.path.join(self.root, key, name)
        return path if os.path.isfile(path) else None

class ImageArchive:
    def __init__(self, root: str) -> None:
        self.root = _ensure_dir(root)

    def save(self, key: str, image: bytes, record: Dict[str, Any]) -> str:
        directory = _ensure_dir(os.path.join(self.root, key))
        stem = f"{record.get('created') or int(time.time())}_{uuid.uuid4().hex[:6]}"
        with open(os.path.join(directory, f"{stem}.jpg"), "wb") as f:
            f.write(image)
        _atomic_write_json(os.path.join(directory, f"{stem}.json"), record)
        return stem
