"""
Telegram message and command handlers.

ARCHITECTURE: Direct function calls - NO HTTP to our own API!
- Dialog text goes to the dialog SaaS (services/dialog.py)
- Button presses are decoded once (callbacks.py) and dispatched by kind
- Ledger calls are synchronous supabase-py, run via asyncio.to_thread

TWO-PHASE CALLBACKS:
====================
Vote/unvote buttons are acknowledged immediately (query.answer) so the
Telegram spinner stops, then the ledger mutation runs as a tracked
background task. Outcomes other than success (already voted, request gone,
errors) reach the voter as a follow-up private message; success is visible
as the re-rendered tally on the channel post.

PAYMENTS (Telegram Stars):
==========================
1. "⭐ priority" button → invoice sent to the user's private chat
2. pre_checkout_query → validate payload, amount, request
3. successful_payment → ledger.apply_payment(charge_id, ...) exactly once
"""

import asyncio
import json
import time

from telegram import LabeledPrice, Update
from telegram.error import Forbidden, TelegramError
from telegram.ext import ContextTypes

from ideabot.config import get_settings
from ideabot.errors import (
    DuplicateVote, LedgerError, NotFound, UnknownCallback, UpstreamError, ValidationError
)
from ideabot.services.conversation_log import log_turn, make_session_id
from ideabot.services.dialog import get_dialog_client, parse_draft
from ideabot.services.extraction import (
    MAX_DOC_MB, MAX_IMG_MB, extract_text, is_too_large, log_extracted, sanitize_filename
)
from ideabot.services.ledger import get_ledger_service
from ideabot.services.publisher import get_publisher
from ideabot.services.top_ideas import message_link, refresh_top_ideas
from .callbacks import CallbackAction, CallbackKind, parse_callback_data
from .context import clear_context, load_context, next_turn, save_context, user_lock
from .logging_config import bot_logger as logger

TELEGRAM_MAX_MESSAGE = 4096

NO_DIALOG_TEXT = (
    "Я получил данные, но диалоговый сервис не вернул текстовый ответ. "
    "Попробуйте переформулировать."
)


async def handle_start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command."""
    user = update.effective_user
    settings = get_settings()

    logger.info(f"/start from user_id={user.id} ({user.first_name})")

    welcome_text = f"""Привет, {user.first_name}! 👋

Я бот для сбора идей ИИ-продуктов для медицины от сообщества.

💡 Просто опиши свою идею, и я:
• задам уточняющие вопросы
• опубликую её в канале для голосования
• дам возможность другим проголосовать

⭐ За {settings.priority_price_stars} Telegram Stars можно поднять идею в приоритет (+{settings.priority_boost_votes} голосов сразу).

📝 Напиши свою идею прямо сейчас — текстом или файлом (PDF, DOCX)."""

    await update.message.reply_text(welcome_text)


async def handle_help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help command."""
    help_text = """📖 <b>Как пользоваться</b>

<b>Описать идею:</b>
Пишите текстом или пришлите PDF/DOCX — я передам содержимое в диалог.

<b>Голосование:</b>
В канале под каждой идеей есть кнопки 👍 / 👎 и «Снять голос».
Один пользователь — один голос за идею, его можно поменять.

<b>Приоритет:</b>
Кнопка ⭐ под идеей отправит счёт в Telegram Stars.

<b>Команды:</b>
/start — о боте
/help — эта справка
/publish — опубликовать готовое описание идеи
/reset — начать диалог заново"""

    await update.message.reply_text(help_text, parse_mode="HTML")


async def handle_reset_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /reset command - clear dialog context."""
    user_id = str(update.effective_user.id)
    await clear_context(user_id)

    await update.message.reply_text(
        "✅ Контекст диалога очищен.\n"
        "Начнём сначала!"
    )


async def handle_top_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /top command - refresh pinned top ideas post (admins only)."""
    user = update.effective_user
    settings = get_settings()

    if user.id not in settings.admin_tg_ids:
        await update.message.reply_text("Команда доступна только администраторам.")
        return

    try:
        message_id = await refresh_top_ideas()
    except Exception as e:
        logger.error(f"Top ideas refresh failed: {e}", exc_info=True)
        await update.message.reply_text(f"❌ Не удалось обновить топ: {str(e)[:200]}")
        return

    if message_id is None:
        await update.message.reply_text("📭 Пока нет опубликованных идей.")
    else:
        await update.message.reply_text(f"✅ Топ обновлён (message_id={message_id})")


async def handle_publish_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /publish command - publish the draft the dialog produced."""
    user = update.effective_user
    user_context = await load_context(str(user.id))
    draft = user_context.get("draft")

    if not draft:
        await update.message.reply_text(
            "Пока нет готового описания идеи. Опишите её в диалоге, "
            "и когда описание будет готово, я предложу опубликовать."
        )
        return

    try:
        result = await get_publisher().publish(
            author_id=user.id,
            author_username=user.username,
            title=draft["title"],
            description=draft["description"],
            tags=draft.get("tags", [])
        )
    except ValidationError as e:
        await update.message.reply_text(f"❌ {e}")
        return
    except Exception as e:
        logger.error(f"Publish from bot failed for user_id={user.id}: {e}", exc_info=True)
        await update.message.reply_text("❌ Не удалось опубликовать идею. Попробуйте позже.")
        return

    await save_context(str(user.id), {"draft": None})

    settings = get_settings()
    link = message_link(result.channel_chat_id, result.channel_message_id, settings.channel_public_username)
    await update.message.reply_text(
        f"✅ Идея опубликована (ID: {result.request_id})" + (f"\n{link}" if link else "")
    )


# ----------------------------------------------------------------------
# Dialog relay
# ----------------------------------------------------------------------

async def reply_segments(update: Update, messages: list[str]) -> None:
    """Send dialog reply segments verbatim, splitting over-long ones."""
    for message in messages:
        for start in range(0, len(message), TELEGRAM_MAX_MESSAGE):
            await update.effective_message.reply_text(message[start:start + TELEGRAM_MAX_MESSAGE])


async def relay_to_dialog(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str) -> None:
    """
    Send user text to the dialog SaaS and relay the reply.

    Calls for one user are strictly sequential (per-user lock); different
    users are independent.
    """
    user = update.effective_user
    user_id = str(user.id)

    async with user_lock(user_id):
        user_context = await load_context(user_id)
        session_id = user_context.get("session_id")
        if not session_id:
            session_id = make_session_id(user.id, time.time())
            await save_context(user_id, {"session_id": session_id})
            user_context["session_id"] = session_id

        await update.effective_chat.send_action("typing")

        try:
            reply = await get_dialog_client().interact(user_id, text, user_context)
        except UpstreamError as e:
            logger.error(f"Dialog relay failed for user_id={user.id}: {e}")
            await update.effective_message.reply_text(e.user_message)
            return

        updates = dict(reply.context_updates)
        draft = parse_draft(reply.text) if reply.ended else None
        if draft:
            updates["draft"] = draft
        if updates:
            await save_context(user_id, updates)

        turn = await next_turn(user_id)

    await reply_segments(update, reply.messages or [NO_DIALOG_TEXT])

    if draft:
        await update.effective_message.reply_text(
            f"📝 Описание готово: «{draft['title']}».\n"
            "Отправьте /publish, чтобы опубликовать идею в канале."
        )

    await asyncio.to_thread(
        log_turn, user.id, session_id, turn, text, reply.text, bool(draft) or reply.ended
    )


async def handle_text_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle incoming text message: relay to the dialog SaaS."""
    user = update.effective_user
    message_text = update.message.text

    logger.info(f"Received message from user_id={user.id}, username={user.username}, text_len={len(message_text)}")
    log_extracted(str(user.id), "text", None, message_text)

    await relay_to_dialog(update, context, message_text)


async def handle_photo_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """
    Handle photos/screenshots.

    Images are not OCR'd; the caption (if any) is relayed as the user's turn.
    """
    user = update.effective_user
    photo = update.message.photo[-1]

    if is_too_large(photo.file_size, MAX_IMG_MB):
        await update.message.reply_text(f"Файл слишком большой. Пришлите изображение до {MAX_IMG_MB}MB.")
        return

    caption = (update.message.caption or "").strip()
    log_extracted(str(user.id), "photo", f"photo_{photo.file_unique_id}.jpg", caption)

    if not caption:
        await update.message.reply_text(
            "Я не умею читать текст с изображений 😕\n"
            "Пришлите PDF/DOCX или опишите идею текстом (можно подписью к фото)."
        )
        return

    await relay_to_dialog(update, context, caption)


async def handle_document_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle documents: download → extract text → relay as the user's turn."""
    user = update.effective_user
    document = update.message.document

    if is_too_large(document.file_size, MAX_DOC_MB):
        await update.message.reply_text(f"Файл слишком большой. Пришлите документ до {MAX_DOC_MB}MB.")
        return

    await update.message.reply_text("Принял файл. Извлекаю текст…")

    file_name = sanitize_filename(document.file_name or f"doc_{document.file_id}")

    try:
        file = await context.bot.get_file(document.file_id)
        data = bytes(await file.download_as_bytearray())
        extracted = await asyncio.to_thread(extract_text, data, file_name, document.mime_type)
    except Exception as e:
        logger.error(f"Document extraction failed for user_id={user.id}: {e}", exc_info=True)
        await update.message.reply_text(
            "Не получилось обработать файл. Лучше всего подходят PDF (текстовый) или DOCX."
        )
        return

    log_extracted(str(user.id), "document", document.file_name or file_name, extracted)

    if not extracted:
        await update.message.reply_text(
            "Я не смог извлечь текст из файла 😕\n"
            "Лучше всего подходят PDF (текстовый) или DOCX. Если это скан — опишите идею текстом."
        )
        return

    await relay_to_dialog(update, context, extracted)


# ----------------------------------------------------------------------
# Callbacks: votes and payment buttons
# ----------------------------------------------------------------------

async def notify_user(context: ContextTypes.DEFAULT_TYPE, user_id: int, text: str) -> None:
    """Private follow-up message. Users who never started the bot can't be reached."""
    try:
        await context.bot.send_message(chat_id=user_id, text=text)
    except Forbidden:
        logger.info(f"Cannot message user_id={user_id}: bot not started")
    except TelegramError as e:
        logger.warning(f"Follow-up to user_id={user_id} failed: {e}")


async def maybe_refresh_top_ideas() -> None:
    if not get_settings().top_ideas_auto_refresh:
        return
    try:
        await refresh_top_ideas()
    except Exception as e:
        logger.warning(f"Top ideas auto-refresh failed: {e}")


async def process_vote_action(
    context: ContextTypes.DEFAULT_TYPE,
    action: CallbackAction,
    voter_id: int
) -> None:
    """
    Phase two of a vote/unvote press: ledger mutation, then re-render.

    The re-render is best-effort and cannot undo the committed vote.
    """
    ledger = get_ledger_service()

    try:
        if action.kind is CallbackKind.VOTE:
            tally = await asyncio.to_thread(ledger.cast_vote, action.request_id, voter_id, action.direction)
        else:
            tally = await asyncio.to_thread(ledger.remove_vote, action.request_id, voter_id)
    except DuplicateVote as e:
        logger.info(f"Duplicate vote: request={action.request_id} voter={voter_id}")
        await notify_user(context, voter_id, f"{e.user_message} (идея #{action.request_id}, всего: {e.tally})")
        return
    except LedgerError as e:
        await notify_user(context, voter_id, e.user_message)
        return
    except Exception as e:
        logger.error(f"Vote processing failed: request={action.request_id} voter={voter_id}: {e}", exc_info=True)
        await notify_user(context, voter_id, "⚠️ Ошибка обработки голосования. Попробуйте ещё раз.")
        return

    await get_publisher().render_and_sync(action.request_id, tally)
    await maybe_refresh_top_ideas()


async def send_priority_invoice(
    context: ContextTypes.DEFAULT_TYPE,
    action: CallbackAction,
    user_id: int
) -> str:
    """Send a Stars invoice for a paid boost. Returns the callback answer text."""
    ledger = get_ledger_service()

    try:
        payment_kind = ledger.get_payment_kind(action.payment_kind)
        await asyncio.to_thread(ledger.get_request, action.request_id)
    except LedgerError as e:
        return e.user_message

    try:
        await context.bot.send_invoice(
            chat_id=user_id,
            title=payment_kind.title,
            description=f"Идея #{action.request_id}: {payment_kind.description}",
            payload=json.dumps({"request_id": action.request_id, "kind": payment_kind.name}),
            provider_token="",  # not needed for Stars
            currency="XTR",
            prices=[LabeledPrice(payment_kind.title, payment_kind.price)]
        )
    except Forbidden:
        return "⚠️ Сначала начните диалог с ботом в ЛС: /start"
    except TelegramError as e:
        logger.error(f"Invoice error for user_id={user_id}: {e}")
        return "⚠️ Не удалось отправить счёт. Попробуйте позже."

    logger.info(f"Invoice sent: request={action.request_id} kind={payment_kind.name} user={user_id}")
    return "💳 Счёт отправлен в личные сообщения!"


async def handle_callback_query(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """
    Handle inline keyboard button callbacks.

    Callback data format: see callbacks.py
    - vote:up:<id>, vote:down:<id> — vote (phase two runs in background)
    - unvote:<id> — remove vote (phase two runs in background)
    - pay:priority:<id> — send Stars invoice
    """
    query = update.callback_query
    user = update.effective_user

    logger.info(f"Callback from user_id={user.id}: {query.data}")

    try:
        action = parse_callback_data(query.data)
    except UnknownCallback as e:
        logger.warning(str(e))
        await query.answer(e.user_message)
        return

    if action.kind is CallbackKind.PAY:
        answer_text = await send_priority_invoice(context, action, user.id)
        await query.answer(answer_text, show_alert=answer_text.startswith("⚠️"))
        return

    # Phase one: acknowledge receipt
    await query.answer("⏳ Голос принят")

    # Phase two: ledger mutation + re-render
    context.application.create_task(
        process_vote_action(context, action, user.id),
        update=update
    )


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------

def parse_invoice_payload(raw: str) -> tuple[int, str]:
    """Decode our invoice payload into (request_id, kind)."""
    try:
        payload = json.loads(raw)
        return int(payload["request_id"]), str(payload.get("kind", "priority"))
    except (ValueError, KeyError, TypeError):
        raise ValidationError(f"Bad invoice payload: {raw!r}", field="invoice_payload")


async def handle_pre_checkout_query(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Validate the order before Telegram charges the user."""
    query = update.pre_checkout_query
    ledger = get_ledger_service()

    try:
        request_id, kind = parse_invoice_payload(query.invoice_payload)
        payment_kind = ledger.get_payment_kind(kind)
        await asyncio.to_thread(ledger.get_request, request_id)

        if query.currency != "XTR" or query.total_amount != payment_kind.price:
            raise ValidationError(f"Amount mismatch: {query.total_amount} {query.currency}", field="amount")
    except NotFound:
        await query.answer(ok=False, error_message="Идея не найдена.")
        return
    except LedgerError as e:
        logger.warning(f"Pre-checkout rejected for user_id={query.from_user.id}: {e}")
        await query.answer(ok=False, error_message="Некорректный заказ. Попробуйте ещё раз.")
        return
    except Exception as e:
        logger.error(f"Pre-checkout check failed: {e}", exc_info=True)
        await query.answer(ok=False, error_message="Сервис временно недоступен. Попробуйте позже.")
        return

    await query.answer(ok=True)


async def handle_successful_payment(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Credit a completed Stars payment (idempotent on the charge id)."""
    payment = update.message.successful_payment
    user = update.effective_user

    logger.info(
        f"Payment received from user_id={user.id}: charge={payment.telegram_payment_charge_id} "
        f"amount={payment.total_amount} {payment.currency}"
    )

    ledger = get_ledger_service()

    try:
        request_id, kind = parse_invoice_payload(payment.invoice_payload)
        tally = await asyncio.to_thread(
            ledger.apply_payment,
            payment.telegram_payment_charge_id,
            request_id,
            user.id,
            payment.total_amount,
            kind,
            payment.currency,
            payment.provider_payment_charge_id
        )
    except Exception as e:
        logger.error(
            f"Payment {payment.telegram_payment_charge_id} not applied: {e}", exc_info=True
        )
        await update.message.reply_text(
            "⚠️ Оплата получена, но не удалось начислить приоритет. "
            f"Мы разберёмся вручную. Код платежа: {payment.telegram_payment_charge_id}"
        )
        return

    await get_publisher().render_and_sync(request_id, tally)
    await maybe_refresh_top_ideas()

    boost = ledger.get_payment_kind(kind).boost
    await update.message.reply_text(
        "Спасибо за поддержку! 🙏⭐\n\n"
        f"Идея #{request_id} получила клинический приоритет и +{boost} голосов.\n"
        f"Текущий рейтинг: {tally}"
    )


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle errors in handlers."""
    logger.error(f"Bot error: {context.error}", exc_info=context.error)

    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text(
                "❌ Ошибка обработки сообщения.\n"
                "Попробуйте ещё раз или используйте /help"
            )
        except TelegramError as e:
            logger.warning(f"Could not send error reply: {e}")
