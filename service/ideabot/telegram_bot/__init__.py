"""
Telegram Bot module for the ideas relay.

ARCHITECTURE: Thin routing layer - business logic lives in services/.
- Receives webhook updates (or polls in development)
- Relays dialog text to the dialog SaaS (services/dialog.py)
- Decodes button presses into typed actions (callbacks.py)
- Runs vote/payment ledger mutations (services/ledger.py)
- Re-renders the channel post (services/publisher.py)

Import submodules directly (ideabot.telegram_bot.bot, ...); this package
init stays empty so services can import callbacks/telegram_api without
pulling in the handlers.
"""
