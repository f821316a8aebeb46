"""Tests for the Telegram front end: webhook/image routes and the model picker."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import aiohttp
import pytest
from aiohttp import web
from telegram.error import BadRequest

import bot
from bot import SECRET_HEADER, build_models_keyboard, build_web_app, models_callback
from relay import ChatRelay, selectable_models
from storage import ConfigStore, HistoryStore, UploadStore, derive_user_key


@pytest.fixture
async def server(tmp_path):
    ptb = SimpleNamespace(update_queue=asyncio.Queue(), bot=None)
    uploads = UploadStore(str(tmp_path / "uploads"))
    runner = web.AppRunner(build_web_app(ptb, uploads, secret="s3cret"))
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    yield SimpleNamespace(base=f"http://{host}:{port}", ptb=ptb, uploads=uploads)
    await runner.cleanup()


class TestWebhook:
    async def test_update_is_queued(self, server):
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{server.base}/webhook", json={"update_id": 7},
                                    headers={SECRET_HEADER: "s3cret"}) as resp:
                assert resp.status == 200
        update = server.ptb.update_queue.get_nowait()
        assert update.update_id == 7

    async def test_bad_secret_rejected(self, server):
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{server.base}/webhook", json={"update_id": 7},
                                    headers={SECRET_HEADER: "nope"}) as resp:
                assert resp.status == 403
        assert server.ptb.update_queue.empty()

    async def test_invalid_json(self, server):
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{server.base}/webhook", data="not json",
                                    headers={SECRET_HEADER: "s3cret"}) as resp:
                assert resp.status == 400


class TestImageRoute:
    async def test_serves_upload(self, server):
        key = derive_user_key("tg_1")
        name = server.uploads.save(key, b"\xff\xd8jpeg")
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{server.base}/images/{key}/{name}") as resp:
                assert resp.status == 200
                assert await resp.read() == b"\xff\xd8jpeg"

    async def test_missing_file(self, server):
        key = derive_user_key("tg_1")
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{server.base}/images/{key}/nothing.jpg") as resp:
                assert resp.status == 404
                assert await resp.text() == "File not found"

    async def test_health(self, server):
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{server.base}/health") as resp:
                assert await resp.json() == {"status": "ok"}


class TestModelsKeyboard:
    def test_rows_and_refresh(self):
        kb = build_models_keyboard(["a", "b", "c"], per_row=2)
        rows = kb.inline_keyboard
        assert [[b.text for b in r] for r in rows] == [["a", "b"], ["c"], ["🔄 Refresh"]]
        assert rows[0][0].callback_data == "setmodel:a"
        assert rows[-1][0].callback_data == "models:refresh"


# ── Model picker callbacks ────────────────────────────────────────


@pytest.fixture
def picker(tmp_path, monkeypatch):
    monkeypatch.setattr(bot, "ALLOWED_USER_IDS", [])
    known = selectable_models("gpt-3.5-turbo", "gpt-4o", "dall-e-3")
    relay = ChatRelay(
        ConfigStore(str(tmp_path / "configs"), "gpt-3.5-turbo", known),
        HistoryStore(str(tmp_path / "histories")),
        None,
        default_model="gpt-3.5-turbo",
    )
    context = SimpleNamespace(application=SimpleNamespace(bot_data={"relay": relay}))
    return SimpleNamespace(relay=relay, context=context)


def _callback_update(data):
    query = SimpleNamespace(data=data, answer=AsyncMock(), edit_message_text=AsyncMock())
    return SimpleNamespace(callback_query=query, effective_user=SimpleNamespace(id=1))


class TestModelsCallback:
    async def test_setmodel_switches(self, picker):
        update = _callback_update("setmodel:gpt-4o")
        await models_callback(update, picker.context)
        assert await picker.relay.current_model("tg_1") == "gpt-4o"
        update.callback_query.edit_message_text.assert_awaited_once_with(text="✅ Switched to: gpt-4o")

    async def test_refresh_with_unchanged_list_is_quiet(self, picker):
        update = _callback_update("models:refresh")
        update.callback_query.edit_message_text.side_effect = BadRequest(
            "Message is not modified: specified new message content and reply markup are exactly "
            "the same as a current content and reply markup of the message"
        )
        await models_callback(update, picker.context)
        update.callback_query.answer.assert_awaited_once_with("Refreshed")
        update.callback_query.edit_message_text.assert_awaited_once()

    async def test_refresh_other_bad_request_propagates(self, picker):
        update = _callback_update("models:refresh")
        update.callback_query.edit_message_text.side_effect = BadRequest("Message to edit not found")
        with pytest.raises(BadRequest):
            await models_callback(update, picker.context)
