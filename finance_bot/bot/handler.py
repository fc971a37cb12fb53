from loguru import logger
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Message, Update
from telegram.ext import Application, ContextTypes, TypeHandler

from finance_bot.deps import Services
from finance_bot.errors import RejectionReason
from finance_bot.models.schemas import (
    CommandEvent,
    ConfirmationCallback,
    InboundMessage,
    OutboundReply,
)

Event = InboundMessage | CommandEvent | ConfirmationCallback


def _services(context: ContextTypes.DEFAULT_TYPE) -> Services:
    return context.application.bot_data["services"]


def _reply_markup(reply: OutboundReply) -> InlineKeyboardMarkup | None:
    if not reply.actions:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(a.label, callback_data=a.callback_data) for a in reply.actions]]
    )


def _thread_id(message: Message) -> str | None:
    if message.is_topic_message and message.message_thread_id:
        return str(message.message_thread_id)
    return None


def _callback_event(update: Update) -> ConfirmationCallback | None:
    query = update.callback_query
    parts = (query.data or "").split(":")
    if len(parts) != 3 or parts[0] != "confirm":
        return None
    return ConfirmationCallback(
        conversation_id=update.effective_chat.id,
        token=parts[1],
        action="cancel" if parts[2] == "cancel" else "confirm",
        by_user=query.from_user.id,
    )


async def to_event(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Event | None:
    """Translate a Telegram update into a pipeline event, or None to ignore it."""
    if update.callback_query is not None:
        return _callback_event(update)

    message = update.effective_message
    user = update.effective_user
    chat = update.effective_chat
    if message is None or user is None or user.is_bot:
        return None
    title = chat.title or user.full_name

    if message.text and message.text.startswith("/"):
        words = message.text.split()
        return CommandEvent(
            conversation_id=chat.id,
            user_id=user.id,
            username=user.username or "",
            chat_title=title,
            command=words[0].lstrip("/").split("@")[0],
            args=words[1:],
        )

    event = InboundMessage(
        conversation_id=chat.id,
        user_id=user.id,
        username=user.username or "",
        display_name=user.full_name,
        chat_title=title,
        text=message.text.strip() if message.text else None,
        thread_id=_thread_id(message),
    )
    if message.voice is not None:
        event.voice_ref = message.voice.file_id
        if _services(context).settings.enable_voice:
            voice_file = await message.voice.get_file()
            event.voice_data = bytes(await voice_file.download_as_bytearray())
        return event
    return event if event.text else None


async def _answer_callback(update: Update, reply: OutboundReply) -> None:
    query = update.callback_query
    # Someone else pressed the button: leave the prompt for its owner.
    if reply.rejection == RejectionReason.NOT_OWNER:
        await query.answer(reply.text, show_alert=True)
        return
    await query.answer()
    await query.edit_message_text(
        reply.text,
        parse_mode=reply.parse_mode,
        reply_markup=_reply_markup(reply),
    )


async def handle_update(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Single entry point for every Telegram update."""
    event = await to_event(update, context)
    if event is None:
        if update.callback_query is not None:
            await update.callback_query.answer()
        return

    logger.info("Telegram {} from chat {}", type(event).__name__, event.conversation_id)
    if isinstance(event, InboundMessage):
        await update.effective_chat.send_action("typing")

    reply = await _services(context).orchestrator.dispatch(event)
    if isinstance(event, ConfirmationCallback):
        await _answer_callback(update, reply)
        return
    if reply is None:
        return
    await update.effective_message.reply_text(
        reply.text,
        parse_mode=reply.parse_mode,
        reply_markup=_reply_markup(reply),
        disable_notification=reply.silent,
    )


def build_bot_app(services: Services) -> Application:
    """Build and return the Telegram bot application."""
    app = Application.builder().token(services.settings.telegram_bot_token).build()
    app.bot_data["services"] = services
    app.add_handler(TypeHandler(Update, handle_update))
    return app
