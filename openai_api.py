import asyncio
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

SAMPLING_PARAMS: Dict[str, Any] = {
    "temperature": 0.9,
    "max_tokens": 256 * 3,
    "top_p": 1,
    "frequency_penalty": 0,
    "presence_penalty": 0.6,
}

class UpstreamError(Exception):
    """Error payload (or unusable response) returned by the upstream API."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(f"[{kind}]{message}")
        self.kind = kind
        self.message = message

    def notice(self) -> str:
        return f"[{self.kind}]{self.message}"

class CompletionTimeout(Exception):
    """The upstream call did not finish in time. Safe to retry."""

    retryable = True

def _check_body(status: int, body: Any) -> Dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        err = body["error"]
        kind = err.get("type") or err.get("code") or "error"
        raise UpstreamError(str(kind), str(err.get("message", "")))
    if status >= 400:
        raise UpstreamError("http_error", f"HTTP {status}")
    if not isinstance(body, dict):
        raise UpstreamError("invalid_response", "Response body is not a JSON object")
    return body

def parse_completion(status: int, body: Any) -> str:
    data = _check_body(status, body)
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise UpstreamError("invalid_response", "Completion response has no message content")
    return content or ""

def parse_image(status: int, body: Any) -> Dict[str, Any]:
    data = _check_body(status, body)
    try:
        item = data["data"][0]
        url = item["url"]
    except (KeyError, IndexError, TypeError):
        raise UpstreamError("invalid_response", "Image response has no url")
    return {
        "url": url,
        "revised_prompt": item.get("revised_prompt", ""),
        "created": data.get("created"),
    }

# -------------------------
# OpenAI-compatible HTTP client
# -------------------------
class OpenAIClient:
    def __init__(
        self,
        endpoint: str,
        api_key: str,
        timeout_secs: float = 60,
        image_timeout_secs: float = 120,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout_secs = timeout_secs
        self.image_timeout_secs = image_timeout_secs

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def _post_json(self, path: str, payload: Dict[str, Any], timeout: float) -> Tuple[int, Any]:
        url = f"{self.endpoint}{path}"
        timeout_obj = aiohttp.ClientTimeout(total=timeout)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload, headers=self._headers(), timeout=timeout_obj) as resp:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        raise UpstreamError("invalid_response", f"HTTP {resp.status}: body is not JSON")
                    return resp.status, body
        except asyncio.TimeoutError as e:
            raise CompletionTimeout(f"{path} timed out after {timeout}s") from e

    async def complete(self, model: str, messages: List[Dict[str, Any]], user: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {"model": model, "messages": messages, **SAMPLING_PARAMS}
        if user:
            payload["user"] = user
        status, body = await self._post_json("/v1/chat/completions", payload, self.timeout_secs)
        return parse_completion(status, body)

    # size: 1024x1024, 1024x1792 or 1792x1024 for dall-e-3
    async def generate_image(self, prompt: str, size: str = "1024x1024", model: str = "dall-e-3") -> Dict[str, Any]:
        payload = {"model": model, "prompt": prompt, "n": 1, "size": size}
        status, body = await self._post_json("/v1/images/generations", payload, self.image_timeout_secs)
        return parse_image(status, body)

    async def download(self, url: str) -> bytes:
        timeout_obj = aiohttp.ClientTimeout(total=self.image_timeout_secs)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=timeout_obj) as resp:
                    resp.raise_for_status()
                    return await resp.read()
        except asyncio.TimeoutError as e:
            raise CompletionTimeout(f"download timed out after {self.image_timeout_secs}s") from e
