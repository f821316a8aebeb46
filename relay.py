import asyncio
import base64
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from openai_api import CompletionTimeout, OpenAIClient, UpstreamError
from prompting import (
    assistant_turn,
    build_messages,
    format_history,
    image_content,
    make_turn_pair,
    text_content,
    user_turn,
)
from storage import ConfigStore, HistoryStore, ImageArchive, UploadStore, derive_user_key

logger = logging.getLogger(__name__)

Reply = Dict[str, str]
Send = Callable[[Reply], Awaitable[None]]

MODEL_SHORTCUTS: Dict[str, str] = {
    "gpt4o": "gpt-4o",
    "gpt4turbo": "gpt-4-turbo-preview",
    "gpt35turbo": "gpt-3.5-turbo",
}

HELP_TEXT = (
    "Commands:\n"
    "• /newtopic - start a new topic (current history is archived)\n"
    "• /model - show the current model\n"
    "• /model <name> - switch model\n"
    "• /models - pick a model from a list\n"
    "• /gpt4o, /gpt4turbo, /gpt35turbo - quick model switch\n"
    "• /image - image mode: describe what you want drawn\n"
    "• /history - show the messages used as context\n"
    "• /whoami - your Telegram user ID"
)

def text_reply(text: str) -> Reply:
    return {"kind": "text", "text": text}

def image_reply(url: str) -> Reply:
    return {"kind": "image", "url": url}

def selectable_models(default_model: str, vision_model: str, image_model: str) -> List[str]:
    models = [default_model, *MODEL_SHORTCUTS.values(), vision_model, image_model]
    return list(dict.fromkeys(models))

def parse_command(text: str) -> Optional[Tuple[str, str]]:
    text = text.strip()
    if not text.startswith("/"):
        return None
    head, _, rest = text[1:].partition(" ")
    name = head.split("@", 1)[0].lower()
    return name, rest.strip()

# -------------------------
# Relay core
# -------------------------
class ChatRelay:
    def __init__(
        self,
        config_store: ConfigStore,
        history_store: HistoryStore,
        api: OpenAIClient,
        *,
        default_model: str,
        image_model: str = "dall-e-3",
        vision_model: str = "gpt-4o",
        window: int = 3,
        image_size: str = "1792x1024",
        upload_store: Optional[UploadStore] = None,
        image_archive: Optional[ImageArchive] = None,
        public_base_url: str = "",
    ) -> None:
        self.configs = config_store
        self.histories = history_store
        self.api = api
        self.default_model = default_model
        self.image_model = image_model
        self.vision_model = vision_model
        self.window = window
        self.image_size = image_size
        self.uploads = upload_store
        self.archive = image_archive
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def known_models(self) -> List[str]:
        return selectable_models(self.default_model, self.vision_model, self.image_model)

    async def current_model(self, platform_user_id: str) -> str:
        config = await asyncio.to_thread(self.configs.get, derive_user_key(platform_user_id))
        return config["model"]

    async def switch_model(self, platform_user_id: str, model: str) -> str:
        key = derive_user_key(platform_user_id)
        stored = await asyncio.to_thread(self.configs.set_model, key, model)
        logger.info("Model for %s… set to %s", key[:8], stored)
        return stored

    # -------------------------
    # Inbound events
    # -------------------------
    async def handle_text(self, platform_user_id: str, text: str, send: Send) -> None:
        key = derive_user_key(platform_user_id)
        cmd = parse_command(text)
        logger.info("[query] %s… %s", key[:8], f"/{cmd[0]}" if cmd else f"{len(text)} chars")
        if cmd is not None:
            await self._command(platform_user_id, key, cmd[0], cmd[1], send)
            return

        model = await self.current_model(platform_user_id)
        prompt = text.strip()
        if model == self.image_model and prompt:
            await self._draw(key, prompt, send)
            return
        await self._converse(key, text_content(text), model, send)

    async def handle_image(self, platform_user_id: str, image: bytes, send: Send) -> None:
        key = derive_user_key(platform_user_id)
        if self.uploads is not None and self.public_base_url:
            name = await asyncio.to_thread(self.uploads.save, key, image)
            url = f"{self.public_base_url}/images/{key}/{name}"
        else:
            url = "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii")
        await self._converse(key, image_content(url), self.vision_model, send)

    async def _command(self, platform_user_id: str, key: str, name: str, arg: str, send: Send) -> None:
        if name in ("start", "help"):
            await send(text_reply(HELP_TEXT))
        elif name == "newtopic":
            await asyncio.to_thread(self.histories.reset, key)
            await send(text_reply("Started a new topic!"))
        elif name == "model":
            if not arg:
                await send(text_reply(f"Currently using: {await self.current_model(platform_user_id)}"))
            else:
                stored = await self.switch_model(platform_user_id, arg)
                await send(text_reply(f"Switched to: {stored}"))
        elif name in MODEL_SHORTCUTS:
            stored = await self.switch_model(platform_user_id, MODEL_SHORTCUTS[name])
            await send(text_reply(f"Switched to: {stored}"))
        elif name == "image":
            await self.switch_model(platform_user_id, self.image_model)
            await send(text_reply("Tell me what you want me to draw."))
        elif name == "history":
            turns = await asyncio.to_thread(self.histories.recent_window, key, self.window)
            await send(text_reply(format_history(turns)))
        else:
            await send(text_reply(f"Unknown command: /{name}\n\n{HELP_TEXT}"))

    async def _converse(self, key: str, content: List[Dict[str, Any]], model: str, send: Send) -> None:
        history = await asyncio.to_thread(self.histories.recent_window, key, self.window)
        turn = user_turn(content)
        messages = build_messages(history, turn)
        try:
            answer = await self.api.complete(model, messages, user=key)
        except UpstreamError as e:
            logger.warning("Completion failed for %s…: %s", key[:8], e)
            await send(text_reply(e.notice()))
            return
        # only completed exchanges are persisted
        pair = make_turn_pair(turn, assistant_turn(answer))
        await asyncio.to_thread(self.histories.append, key, pair)
        await send(text_reply(answer.strip()))

    async def _draw(self, key: str, prompt: str, send: Send) -> None:
        await send(text_reply("Drawing, please wait…"))
        try:
            result = await self.api.generate_image(prompt, self.image_size, model=self.image_model)
        except UpstreamError as e:
            logger.warning("Image generation failed for %s…: %s", key[:8], e)
            await send(text_reply(e.notice()))
            return
        await send(image_reply(result["url"]))
        if self.archive is not None:
            await self._archive(key, prompt, result)

    async def _archive(self, key: str, prompt: str, result: Dict[str, Any]) -> None:
        try:
            image = await self.api.download(result["url"])
        except (aiohttp.ClientError, CompletionTimeout) as e:
            logger.warning("Could not archive generated image for %s…: %s", key[:8], e)
            return
        record = {
            "user": key,
            "prompt": prompt,
            "image": result["url"],
            "revised_prompt": result.get("revised_prompt", ""),
            "created": result.get("created") or int(time.time()),
        }
        await asyncio.to_thread(self.archive.save, key, image, record)
