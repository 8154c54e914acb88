import os
import asyncio
import hashlib
import json
import logging
from aiohttp import web
from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import ApplicationBuilder, CommandHandler, MessageHandler, ContextTypes, CallbackQueryHandler, filters
from telegram.error import Conflict, TelegramError, NetworkError, TimedOut, RetryAfter
from txflow.assets import list_assets
from txflow.config import (
    get_api_key,
    get_database_url,
    get_http_bind,
    get_ledger_gateway_url,
    get_wallet_service_url,
    load_env,
    load_flow_settings,
    resolve_inner_calls_key_with_source,
)
from txflow.errors import GatewayUnavailable
from txflow.flows import FlowMachine
from txflow.gateway import HttpLedgerGateway
from txflow.journal import TransactionJournal
from txflow.models import FinalityEvent, Prompt
from txflow.prompts import CONFIRM_TOKEN, MAX_TOKEN, finality_text
from txflow.service import FlowService
from txflow.sessions import SessionStore
from txflow.state_machine import FlowKind, FlowStep
from txflow.tracker import ExecutionTracker
from txflow.wallets import HttpWalletClient

load_env()

logger = logging.getLogger("bot")

_flow_service: FlowService | None = None
_wallet_client: HttpWalletClient | None = None
_ledger_gateway: HttpLedgerGateway | None = None
_journal: TransactionJournal | None = None
_application = None
_sweeper_task: asyncio.Task | None = None
_http_runner: web.AppRunner | None = None

MENU_TEXT = "🚀 ROOT Network Bot\n\nChoose an action:"
HELP_TEXT = (
    "🤖 ROOT Network Bot Help\n\n"
    "Commands:\n"
    "• /start - Create your wallet or show the main menu\n"
    "• /send - Transfer tokens to another address\n"
    "• /stake - Stake ROOT\n"
    "• /swap - Exchange one token for another\n"
    "• /cancel - Abandon the current action\n"
    "• /help - Show this help message\n\n"
    "Security:\n"
    "🛡️ Never share your recovery phrase with anyone\n"
    "⚠️ Always verify recipient addresses before sending"
)
NO_FLOW_HINT = "Use /send, /stake or /swap to start, or /help for more."


def _mask_secret(value: str, visible: int = 4) -> str:
    if not value:
        return "(missing)"
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"


def _key_fingerprint(value: str) -> str:
    if not value:
        return "(missing)"
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:6]


def _log_runtime_env_snapshot() -> None:
    key, key_source = resolve_inner_calls_key_with_source()
    settings = load_flow_settings()
    http_host, http_port = get_http_bind()
    logger.info("[ENV][BOT] runtime configuration snapshot")
    logger.info("[ENV][BOT] LEDGER_GATEWAY_URL=%s", get_ledger_gateway_url())
    logger.info("[ENV][BOT] WALLET_SERVICE_URL=%s", get_wallet_service_url())
    logger.info("[ENV][BOT] INNER_CALLS_KEY source=%s preview=%s", key_source, _mask_secret(key))
    logger.info("[ENV][BOT] INNER_CALLS_KEY sha256_prefix=%s", _key_fingerprint(key))
    logger.info("[ENV][BOT] HTTP bind host=%s port=%s", http_host, http_port)
    logger.info("[ENV][BOT] DATABASE_URL configured=%s", bool(get_database_url()))
    logger.info(
        "[ENV][BOT] session_idle_timeout=%ss swap_slippage_bps=%s swap_deadline=%ss finality_timeout=%ss",
        settings.idle_timeout_seconds,
        settings.swap_slippage_bps,
        settings.swap_deadline_seconds,
        settings.finality_timeout_seconds,
    )


def get_flow_service() -> FlowService:
    """Get or create the process-wide flow service and its collaborators."""
    global _flow_service, _wallet_client, _ledger_gateway, _journal
    if _flow_service is None:
        settings = load_flow_settings()
        api_key = get_api_key()
        _wallet_client = HttpWalletClient(get_wallet_service_url(), api_key=api_key)
        _ledger_gateway = HttpLedgerGateway(
            get_ledger_gateway_url(),
            api_key=api_key,
            timeout_s=settings.ledger_timeout_seconds,
            max_retries=settings.ledger_max_retries,
            retry_base_delay_s=settings.ledger_retry_base_delay_seconds,
        )
        _journal = TransactionJournal(get_database_url())
        tracker = ExecutionTracker(
            _ledger_gateway,
            on_finality=notify_finality,
            journal=_journal if _journal.enabled else None,
            finality_timeout_s=settings.finality_timeout_seconds,
        )
        _flow_service = FlowService(
            store=SessionStore(idle_timeout_seconds=settings.idle_timeout_seconds),
            machine=FlowMachine(_ledger_gateway, settings),
            wallets=_wallet_client,
            tracker=tracker,
            settings=settings,
        )
    return _flow_service


def build_menu_keyboard() -> InlineKeyboardMarkup:
    keyboard = [
        [InlineKeyboardButton("📤 Send", callback_data="flow:send")],
        [InlineKeyboardButton("🔄 Swap", callback_data="flow:swap")],
        [InlineKeyboardButton("📥 Stake", callback_data="flow:stake")],
        [InlineKeyboardButton("ℹ️ Help", callback_data="help")],
    ]
    return InlineKeyboardMarkup(keyboard)


def build_prompt_keyboard(prompt: Prompt) -> InlineKeyboardMarkup:
    token = prompt.session_token
    cancel_row = [InlineKeyboardButton("❌ Cancel", callback_data=f"cancel:{token}")]
    if prompt.step in (FlowStep.SELECT_ASSET, FlowStep.SELECT_COUNTER_ASSET):
        stakeable_only = prompt.flow_kind == FlowKind.STAKE and prompt.step == FlowStep.SELECT_ASSET
        asset_row = [
            InlineKeyboardButton(asset.symbol, callback_data=f"asset:{asset.asset_id}:{token}")
            for asset in list_assets(stakeable_only)
        ]
        return InlineKeyboardMarkup([asset_row, cancel_row])
    if prompt.step == FlowStep.ENTER_AMOUNT and prompt.flow_kind == FlowKind.SEND:
        return InlineKeyboardMarkup([[InlineKeyboardButton("Max", callback_data=f"max:{token}")], cancel_row])
    if prompt.step == FlowStep.CONFIRM:
        return InlineKeyboardMarkup([[
            InlineKeyboardButton("✅ Confirm", callback_data=f"confirm:{token}"),
            InlineKeyboardButton("❌ Cancel", callback_data=f"cancel:{token}"),
        ]])
    return InlineKeyboardMarkup([cancel_row])


async def send_flow_reply(message, reply) -> None:
    if isinstance(reply, Prompt):
        await message.reply_text(reply.text, reply_markup=build_prompt_keyboard(reply))
        return
    await message.reply_text(reply.text)


async def notify_finality(user_id: str | None, event: FinalityEvent) -> None:
    if _application is None or not user_id:
        logger.info("[BOT] finality for tx=%s not delivered: no chat to notify", event.transaction_id)
        return
    try:
        await _application.bot.send_message(chat_id=int(user_id), text=finality_text(event))
    except (TelegramError, ValueError) as e:
        logger.warning("[BOT] could not deliver finality for tx=%s: %s", event.transaction_id, e)


def _cors_headers() -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, X-API-Key",
    }


def _with_cors(resp: web.StreamResponse) -> web.StreamResponse:
    for key, value in _cors_headers().items():
        resp.headers[key] = value
    return resp


def _json_response(payload: dict, status: int = 200) -> web.Response:
    return _with_cors(
        web.Response(
            text=json.dumps(payload, ensure_ascii=False),
            status=status,
            content_type="application/json",
        )
    )


def _authorize_request(request: web.Request) -> tuple[bool, web.Response | None]:
    api_key = get_api_key()
    path = request.path
    if not api_key:
        logger.warning("[BOT_HTTP_API] auth failed: INNER_CALLS_KEY (or aliases) not configured (path=%s)", path)
        return False, _json_response(
            {"error": "INNER_CALLS_KEY is not configured on this service."},
            status=503
        )
    incoming = (request.headers.get("X-API-Key") or "").strip()
    if not incoming:
        logger.warning("[BOT_HTTP_API] auth failed: missing X-API-Key header (path=%s)", path)
        return False, _json_response(
            {"error": "X-API-Key header is required."},
            status=401
        )
    if incoming != api_key:
        logger.warning("[BOT_HTTP_API] auth failed: invalid X-API-Key (path=%s)", path)
        return False, _json_response(
            {"error": "Invalid API key."},
            status=403
        )
    return True, None


async def http_root_handler(request: web.Request) -> web.Response:
    return _json_response({"status": "ok", "service": "bot-api"})


async def http_health_handler(request: web.Request) -> web.Response:
    service = _flow_service
    return _json_response({
        "status": "ok",
        "service": "bot-api",
        "active_sessions": len(service.store) if service else 0,
        "finality_subscriptions": service.tracker.active_subscriptions if service else 0,
        "security": {
            "self_api_key_configured": bool(get_api_key()),
        },
    })


async def http_options_handler(request: web.Request) -> web.Response:
    return _with_cors(web.Response(status=200))


async def http_flow_event_handler(request: web.Request) -> web.Response:
    authorized, auth_error = _authorize_request(request)
    if not authorized:
        return auth_error  # type: ignore[return-value]

    try:
        payload = await request.json()
    except Exception:
        return _json_response({"error": "Invalid JSON body."}, status=400)
    if not isinstance(payload, dict):
        return _json_response({"error": "Invalid JSON body."}, status=400)

    user_id = payload.get("user_id")
    if user_id is None or not str(user_id).strip():
        return _json_response({"error": "user_id is required."}, status=400)

    flow = payload.get("flow")
    if flow is not None and flow not in {kind.value for kind in FlowKind}:
        return _json_response({"error": "flow must be one of send, stake, swap."}, status=400)

    text = payload.get("text") or ""
    if not isinstance(text, str):
        return _json_response({"error": "text must be a string."}, status=400)

    session_token = payload.get("session_token")
    if session_token is not None:
        try:
            session_token = int(session_token)
        except (TypeError, ValueError):
            return _json_response({"error": "session_token must be an integer."}, status=400)

    reply = await get_flow_service().route_event(
        str(user_id).strip(),
        flow,
        text,
        session_token=session_token,
    )
    return _json_response(reply.to_dict())


async def start_http_api_server() -> None:
    global _http_runner
    if _http_runner is not None:
        return

    app = web.Application()
    app.router.add_get("/", http_root_handler)
    app.router.add_get("/health", http_health_handler)
    app.router.add_post("/flows/event", http_flow_event_handler)
    app.router.add_options("/flows/event", http_options_handler)
    app.router.add_options("/", http_options_handler)
    app.router.add_options("/health", http_options_handler)

    _http_runner = web.AppRunner(app)
    await _http_runner.setup()
    host, port = get_http_bind()
    site = web.TCPSite(_http_runner, host=host, port=port)
    await site.start()
    logger.info("Bot HTTP API started at http://%s:%s", host, port)


async def stop_http_api_server() -> None:
    global _http_runner
    if _http_runner is not None:
        await _http_runner.cleanup()
        _http_runner = None
        logger.info("Bot HTTP API stopped")


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    err = context.error
    if isinstance(err, Conflict):
        logger.error("[bot_error] fatal Conflict: %s", err)
        logger.error("Stopping bot: another instance is already consuming updates for this token.")
        if context.application:
            asyncio.create_task(context.application.stop())
        return
    if isinstance(err, (NetworkError, TimedOut, RetryAfter)):
        logger.warning("[bot_error] transient: %s: %s", type(err).__name__, err)
        return
    logger.error("[bot_error] %s: %s", type(err).__name__, err)
    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text(
                "❌ An unexpected error occurred. Please try again or contact support if the issue persists."
            )
        except TelegramError:
            pass


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Create the user's wallet on first contact and show the menu."""
    user_id = str(update.effective_user.id)
    get_flow_service()
    try:
        wallet = await _wallet_client.ensure_wallet(user_id)
    except GatewayUnavailable as e:
        logger.warning("[BOT] wallet ensure failed user=%s: %s", user_id, e)
        await update.message.reply_text("❌ An error occurred while setting up your wallet. Please try again.")
        return

    if wallet.created:
        await update.message.reply_text(
            "🆕 New ROOT Wallet Created!\n\n"
            f"📬 Address:\n{wallet.address}\n\n"
            "🔐 Your wallet is encrypted and stored securely. Never share your recovery phrase with anyone!"
        )
    else:
        await update.message.reply_text(f"💼 Welcome Back!\n\n📬 Your Wallet:\n{wallet.address}")
    await update.message.reply_text(MENU_TEXT, reply_markup=build_menu_keyboard())


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.effective_message.reply_text(HELP_TEXT)


async def flow_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/send, /stake and /swap: open a fresh flow, replacing any other one."""
    command = (update.message.text or "").split()[0].lstrip("/").split("@")[0].lower()
    reply = await get_flow_service().route_event(update.effective_user.id, FlowKind(command))
    await send_flow_reply(update.message, reply)


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    result = await get_flow_service().cancel(update.effective_user.id)
    await update.message.reply_text(result.text)


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Feed free text into the user's active flow."""
    if not update.message or not update.message.text:
        return

    message_text = update.message.text.strip()
    if not message_text or message_text.startswith('/'):
        return

    service = get_flow_service()
    user_id = update.effective_user.id
    if not await service.has_session(user_id):
        await update.message.reply_text(NO_FLOW_HINT, reply_markup=build_menu_keyboard())
        return

    reply = await service.route_event(user_id, None, message_text)
    await send_flow_reply(update.message, reply)


async def handle_flow_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Inline buttons: flow:<kind>, asset:<id>:<token>, max|confirm|cancel:<token>."""
    query = update.callback_query
    if not query or not query.data or not query.message:
        return
    # Always ack callback immediately to prevent Telegram retry/spinner loops.
    try:
        await query.answer()
    except TelegramError:
        pass

    service = get_flow_service()
    user_id = update.effective_user.id
    parts = query.data.split(":")
    action = parts[0]

    if action == "help":
        await query.message.reply_text(HELP_TEXT)
        return
    if action == "flow" and len(parts) == 2:
        reply = await service.route_event(user_id, FlowKind(parts[1]))
        await send_flow_reply(query.message, reply)
        return

    try:
        token = int(parts[-1])
    except ValueError:
        return
    if action == "cancel" and len(parts) == 2:
        result = await service.cancel(user_id, session_token=token)
        await query.message.reply_text(result.text)
        return
    if action == "asset" and len(parts) == 3:
        text = parts[1]
    elif action == "max" and len(parts) == 2:
        text = MAX_TOKEN
    elif action == "confirm" and len(parts) == 2:
        text = CONFIRM_TOKEN
    else:
        return

    reply = await service.route_event(user_id, None, text, session_token=token)
    await send_flow_reply(query.message, reply)


async def post_init(app):
    """Delete webhook, initialize the journal and background tasks on startup"""
    global _application, _sweeper_task
    _application = app
    try:
        await app.bot.delete_webhook(drop_pending_updates=True)
        logger.info("Webhook deleted (if it existed)")
        await asyncio.sleep(1)
    except Exception as e:
        logger.info("Note: Could not delete webhook: %s", e)

    service = get_flow_service()
    try:
        if await _journal.init():
            logger.info("Transaction journal connected")
        else:
            logger.info("Bot will continue without a transaction journal")
    except Exception as e:
        logger.warning("Could not initialize transaction journal: %s", e)
        logger.warning("Bot will continue but transactions won't be journaled")

    _sweeper_task = asyncio.create_task(service.store.run_sweeper(service.settings.sweep_interval_seconds))

    # If port is in use, another bot instance is likely running; exit to avoid duplicate replies.
    try:
        await start_http_api_server()
    except OSError as e:
        if e.errno in (98, 10048):  # Address already in use (Unix, Windows)
            logger.error("Another bot instance is using the HTTP port. Exiting to avoid duplicate replies.")
            import sys
            sys.exit(1)
        raise
    except Exception as e:
        logger.warning("Could not start HTTP API server: %s", e)


async def shutdown(app):
    """Stop background work and close clients on shutdown"""
    global _sweeper_task
    await stop_http_api_server()
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        _sweeper_task = None
    if _flow_service is not None:
        await _flow_service.tracker.aclose()
    if _ledger_gateway is not None:
        await _ledger_gateway.aclose()
    if _wallet_client is not None:
        await _wallet_client.aclose()
    if _journal is not None:
        await _journal.close()
    logger.info("Clients closed")


def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    bot_token = os.getenv('BOT_TOKEN')
    if not bot_token:
        raise ValueError("Environment variable 'BOT_TOKEN' is not set")

    app = (
        ApplicationBuilder()
        .token(bot_token)
        .concurrent_updates(True)
        .post_init(post_init)
        .post_shutdown(shutdown)
        .build()
    )
    app.add_error_handler(error_handler)

    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler(["send", "stake", "swap"], flow_command))
    app.add_handler(CommandHandler("cancel", cancel_command))
    app.add_handler(CallbackQueryHandler(handle_flow_callback, pattern=r"^(help|flow:(send|stake|swap)|asset:\d+:\d+|(max|confirm|cancel):\d+)$"))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    logger.info("Bot starting...")
    _log_runtime_env_snapshot()
    try:
        app.run_polling(drop_pending_updates=True, allowed_updates=Update.ALL_TYPES)
    except Conflict as e:
        logger.error("Error: Another bot instance is already running or webhook conflict exists.")
        logger.error("Details: %s", e)
        return
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")


if __name__ == '__main__':
    main()
