import asyncio
import logging
import os
import signal
from typing import List, Optional

from aiohttp import web
from dotenv import load_dotenv
from telegram import (
    Update,
    InlineKeyboardMarkup,
    InlineKeyboardButton,
    ReplyKeyboardMarkup,
)
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    MessageHandler,
    CallbackQueryHandler,
    ContextTypes,
    filters,
)

from openai_api import CompletionTimeout, OpenAIClient
from prompting import chunk_text
from relay import ChatRelay, Reply, Send, selectable_models
from storage import ConfigStore, HistoryStore, ImageArchive, UploadStore

load_dotenv()

# -------------------------
# Configuration (env-based)
# -------------------------
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
ALLOWED_USER_IDS = [
    int(uid.strip()) for uid in os.environ.get("ALLOWED_USER_IDS", "").split(",") if uid.strip()
]
OPENAI_END_POINT = os.environ.get("OPENAI_END_POINT", "https://api.openai.com")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-3.5-turbo")
IMAGE_MODEL = os.environ.get("IMAGE_MODEL", "dall-e-3")
VISION_MODEL = os.environ.get("VISION_MODEL", "gpt-4o")
IMAGE_SIZE = os.environ.get("IMAGE_SIZE", "1792x1024")
OPENAI_TIMEOUT_SECS = int(os.environ.get("OPENAI_TIMEOUT_SECS", "60"))
IMAGE_TIMEOUT_SECS = int(os.environ.get("IMAGE_TIMEOUT_SECS", "120"))
HISTORY_WINDOW = int(os.environ.get("HISTORY_WINDOW", "3"))

# Persistence
DATA_DIR = os.environ.get("DATA_DIR", "./data")
HISTORIES_DIR = os.path.join(DATA_DIR, "histories")
CONFIGS_DIR = os.path.join(DATA_DIR, "configs")
UPLOADS_DIR = os.path.join(DATA_DIR, "images_upload")
IMAGES_DIR = os.path.join(DATA_DIR, "images")

# Webhook mode when a public URL is set, polling otherwise
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "").rstrip("/")
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

QUICK_REPLY = ReplyKeyboardMarkup(
    [["/newtopic", "/model"], ["/gpt4o", "/image"]],
    resize_keyboard=True,
)

logger = logging.getLogger("relaybot")

# -------------------------
# Utils
# -------------------------
def is_authorized(update: Update) -> bool:
    user = update.effective_user
    if not user:
        return False
    return not ALLOWED_USER_IDS or user.id in ALLOWED_USER_IDS

def platform_id(update: Update) -> str:
    return f"tg_{update.effective_user.id}"

def get_relay(context: ContextTypes.DEFAULT_TYPE) -> ChatRelay:
    return context.application.bot_data["relay"]

def make_sender(update: Update) -> Send:
    async def send(reply: Reply) -> None:
        message = update.effective_message
        if reply["kind"] == "image":
            await message.reply_photo(photo=reply["url"], reply_markup=QUICK_REPLY)
            return
        for chunk in chunk_text(reply["text"] or "(empty reply)"):
            await message.reply_text(chunk, reply_markup=QUICK_REPLY)
    return send

def build_relay() -> ChatRelay:
    api = OpenAIClient(
        OPENAI_END_POINT, OPENAI_API_KEY,
        timeout_secs=OPENAI_TIMEOUT_SECS, image_timeout_secs=IMAGE_TIMEOUT_SECS,
    )
    configs = ConfigStore(CONFIGS_DIR, OPENAI_MODEL, selectable_models(OPENAI_MODEL, VISION_MODEL, IMAGE_MODEL))
    return ChatRelay(
        configs,
        HistoryStore(HISTORIES_DIR),
        api,
        default_model=OPENAI_MODEL,
        image_model=IMAGE_MODEL,
        vision_model=VISION_MODEL,
        window=HISTORY_WINDOW,
        image_size=IMAGE_SIZE,
        upload_store=UploadStore(UPLOADS_DIR),
        image_archive=ImageArchive(IMAGES_DIR),
        public_base_url=PUBLIC_BASE_URL,
    )

# -------------------------
# UI Bits (models list)
# -------------------------
def build_models_keyboard(models: List[str], per_row: int = 2) -> InlineKeyboardMarkup:
    buttons: List[List[InlineKeyboardButton]] = []
    row: List[InlineKeyboardButton] = []
    for name in models:
        row.append(InlineKeyboardButton(text=name, callback_data=f"setmodel:{name}"))
        if len(row) >= per_row:
            buttons.append(row)
            row = []
    if row:
        buttons.append(row)
    buttons.append([InlineKeyboardButton(text="🔄 Refresh", callback_data="models:refresh")])
    return InlineKeyboardMarkup(buttons)

# -------------------------
# Handlers / Commands
# -------------------------
async def whoami_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    if user:
        await update.effective_message.reply_text(f"Your Telegram user ID is: {user.id}")
    else:
        await update.effective_message.reply_text("Could not determine your Telegram user ID.")

async def models_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_authorized(update):
        return
    relay = get_relay(context)
    await update.effective_message.reply_text(
        text=f"Select a model (current: {await relay.current_model(platform_id(update))}):",
        reply_markup=build_models_keyboard(relay.known_models),
    )

async def models_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if not query:
        return
    if not is_authorized(update):
        await query.answer()
        return

    relay = get_relay(context)
    data = query.data or ""

    if data.startswith("setmodel:"):
        new_model = data.split("setmodel:", 1)[1].strip()
        if not new_model:
            await query.answer("Invalid model", show_alert=True)
            return
        stored = await relay.switch_model(platform_id(update), new_model)
        await query.edit_message_text(text=f"✅ Switched to: {stored}")
        await query.answer("Model updated")
        return

    if data == "models:refresh":
        await query.answer("Refreshed")
        try:
            await query.edit_message_text(
                text=f"Select a model (current: {await relay.current_model(platform_id(update))}):",
                reply_markup=build_models_keyboard(relay.known_models),
            )
        except BadRequest as e:
            # nothing changed since the list was shown
            if "not modified" not in str(e).lower():
                raise

async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_authorized(update):
        return
    text = update.effective_message.text or ""
    await get_relay(context).handle_text(platform_id(update), text, make_sender(update))

async def handle_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_authorized(update):
        return
    photo = update.effective_message.photo[-1]
    tg_file = await photo.get_file()
    data = await tg_file.download_as_bytearray()
    await get_relay(context).handle_image(platform_id(update), bytes(data), make_sender(update))

async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    err = context.error
    if isinstance(err, CompletionTimeout):
        logger.warning("[handler] Upstream timeout: %s", err)
        text = "⏳ The model took too long to answer, please try again."
    else:
        logger.error("[handler] Unhandled error", exc_info=err)
        text = "❌ Something went wrong, please try again later."
    if isinstance(update, Update) and update.effective_chat:
        try:
            await context.bot.send_message(chat_id=update.effective_chat.id, text=text)
        except TelegramError as e:
            logger.warning("[handler] Could not deliver error notice: %s", e)

def register_handlers(app: Application) -> None:
    app.add_handler(CommandHandler("whoami", whoami_cmd))
    app.add_handler(CommandHandler("models", models_cmd))
    app.add_handler(CallbackQueryHandler(models_callback, pattern="^(setmodel:|models:refresh)"))
    # every other command goes to the relay
    app.add_handler(MessageHandler(filters.TEXT, handle_message))
    app.add_handler(MessageHandler(filters.PHOTO, handle_photo))
    app.add_error_handler(error_handler)

# -------------------------
# Webhook server (aiohttp)
# -------------------------
def build_web_app(app: Application, uploads: Optional[UploadStore], secret: str = "") -> web.Application:
    async def webhook(request: web.Request) -> web.Response:
        if secret and request.headers.get(SECRET_HEADER) != secret:
            logger.warning("[webhook] Rejected request with bad secret token")
            return web.Response(status=403)
        try:
            data = await request.json()
        except ValueError:
            return web.Response(status=400, text="Invalid JSON")
        await app.update_queue.put(Update.de_json(data, app.bot))
        return web.Response()

    async def image(request: web.Request) -> web.StreamResponse:
        path = uploads.path_for(request.match_info["key"], request.match_info["name"]) if uploads else None
        if path is None:
            return web.Response(status=404, text="File not found")
        return web.FileResponse(path)

    async def health(request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    web_app = web.Application()
    web_app.router.add_post("/webhook", webhook)
    web_app.router.add_get("/images/{key}/{name}", image)
    web_app.router.add_get("/health", health)
    return web_app

async def run_webhook(app: Application, uploads: Optional[UploadStore]) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    runner = web.AppRunner(build_web_app(app, uploads, WEBHOOK_SECRET))
    await runner.setup()
    site = web.TCPSite(runner, HOST, PORT)

    async with app:
        await app.bot.set_webhook(
            url=f"{PUBLIC_BASE_URL}/webhook",
            secret_token=WEBHOOK_SECRET or None,
            allowed_updates=Update.ALL_TYPES,
        )
        await app.start()
        await site.start()
        logger.info("[startup] Listening on %s:%s, webhook at %s/webhook", HOST, PORT, PUBLIC_BASE_URL)
        try:
            await stop_event.wait()
        finally:
            await app.stop()
            await runner.cleanup()

# -------------------------
# Entrypoint
# -------------------------
def main() -> None:
    logging.basicConfig(level=LOG_LEVEL.upper(), format="[%(asctime)s] %(levelname)s - %(message)s")

    if not TELEGRAM_BOT_TOKEN or not OPENAI_API_KEY:
        raise SystemExit("Please set TELEGRAM_BOT_TOKEN and OPENAI_API_KEY environment variables.")

    relay = build_relay()
    logger.info("[startup] Default model: %s, data dir: %s", OPENAI_MODEL, DATA_DIR)

    builder = ApplicationBuilder().token(TELEGRAM_BOT_TOKEN).concurrent_updates(True)
    if PUBLIC_BASE_URL:
        builder = builder.updater(None)
    app: Application = builder.build()
    app.bot_data["relay"] = relay
    register_handlers(app)

    if PUBLIC_BASE_URL:
        asyncio.run(run_webhook(app, relay.uploads))
    else:
        logger.info("[startup] PUBLIC_BASE_URL not set, using long polling")
        app.run_polling(allowed_updates=Update.ALL_TYPES)
    logger.info("[shutdown] Bot stopped.")

if __name__ == "__main__":
    main()
