"""
Main Telegram bot handler.

Uses python-telegram-bot library with webhook mode (FastAPI receives the
POST, see ideabot.main). For local development run polling instead:

    python -m ideabot.telegram_bot.bot
"""

from telegram import Update
from telegram.ext import (
    Application, CallbackQueryHandler, CommandHandler, MessageHandler,
    PreCheckoutQueryHandler, filters
)

from ideabot.config import get_settings
from .logging_config import bot_logger as logger
from .handlers import (
    handle_start_command,
    handle_help_command,
    handle_reset_command,
    handle_top_command,
    handle_publish_command,
    handle_text_message,
    handle_photo_message,
    handle_document_message,
    handle_callback_query,
    handle_pre_checkout_query,
    handle_successful_payment,
    handle_error,
)

WEBHOOK_PATH = "/telegram/webhook"

# Update kinds we consume
ALLOWED_UPDATES = ["message", "callback_query", "pre_checkout_query"]

# Global application instance (initialized once)
_application: Application | None = None


def build_application(token: str) -> Application:
    """Create the application and register handlers."""
    application = (
        Application.builder()
        .token(token)
        .concurrent_updates(True)
        .build()
    )

    application.add_handler(CommandHandler("start", handle_start_command))
    application.add_handler(CommandHandler("help", handle_help_command))
    application.add_handler(CommandHandler("reset", handle_reset_command))
    application.add_handler(CommandHandler("top", handle_top_command))
    application.add_handler(CommandHandler("publish", handle_publish_command))

    # Payments
    application.add_handler(PreCheckoutQueryHandler(handle_pre_checkout_query))
    application.add_handler(
        MessageHandler(filters.SUCCESSFUL_PAYMENT, handle_successful_payment)
    )

    # Text messages
    application.add_handler(
        MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text_message)
    )

    # Photos and documents
    application.add_handler(MessageHandler(filters.PHOTO, handle_photo_message))
    application.add_handler(MessageHandler(filters.Document.ALL, handle_document_message))

    # Callback queries (inline keyboard buttons)
    application.add_handler(CallbackQueryHandler(handle_callback_query))

    application.add_error_handler(handle_error)

    return application


def get_bot_application() -> Application:
    """Get or create telegram bot application."""
    global _application

    if _application is None:
        settings = get_settings()
        _application = build_application(settings.telegram_bot_token)
        logger.info("Telegram bot application initialized")

    return _application


async def handle_telegram_update(update_data: dict) -> None:
    """
    Process incoming webhook update from Telegram.

    This is called by FastAPI webhook endpoint in a background task.
    """
    try:
        app = get_bot_application()

        update = Update.de_json(update_data, app.bot)

        if update:
            await app.process_update(update)
        else:
            logger.warning("Received invalid update data")

    except Exception as e:
        logger.error(f"Failed to process update: {e}", exc_info=True)


async def initialize_bot() -> None:
    """
    Initialize bot application (call on startup).

    Registers the webhook when webhook_base_url is configured.
    """
    settings = get_settings()
    app = get_bot_application()
    await app.initialize()

    if settings.webhook_base_url:
        webhook_url = settings.webhook_base_url.rstrip("/") + WEBHOOK_PATH
        await app.bot.set_webhook(
            webhook_url,
            secret_token=settings.telegram_webhook_secret or None,
            allowed_updates=ALLOWED_UPDATES
        )
        logger.info(f"Telegram webhook set to: {webhook_url}")

    logger.info("Bot initialized successfully")


async def shutdown_bot() -> None:
    """
    Shutdown bot application (call on shutdown).
    """
    global _application
    if _application:
        await _application.shutdown()
        _application = None
        logger.info("Bot shut down")


def run_polling() -> None:
    """Development mode: drop the webhook and long-poll."""
    app = get_bot_application()
    logger.info("Bot is running in POLLING mode...")
    app.run_polling(allowed_updates=ALLOWED_UPDATES, drop_pending_updates=True)


if __name__ == "__main__":
    run_polling()
