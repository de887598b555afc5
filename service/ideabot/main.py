import asyncio
from fastapi import FastAPI, Request, Header, HTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ideabot.config import get_settings
from ideabot.api.submit import limiter, router as submit_router
from ideabot.telegram_bot.bot import WEBHOOK_PATH, handle_telegram_update, initialize_bot, shutdown_bot
from ideabot.telegram_bot.logging_config import bot_logger as logger

app = FastAPI(
    title="Idea Relay Bot",
    description="Crowdsourced feature requests with channel voting",
    version="0.1.0"
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Background webhook tasks; kept referenced until done
_background_tasks: set[asyncio.Task] = set()


# Lifecycle events
@app.on_event("startup")
async def startup_event():
    """Initialize bot on startup."""
    logger.info("[STARTUP] Initializing Telegram bot...")
    await initialize_bot()
    logger.info("[STARTUP] Bot ready")


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown bot on application shutdown."""
    logger.info("[SHUTDOWN] Shutting down Telegram bot...")
    await shutdown_bot()
    logger.info("[SHUTDOWN] Bot stopped")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    settings = get_settings()
    return {
        "status": "ok",
        "environment": settings.environment,
        "version": "0.1.0"
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "ok": True,
        "status": "running",
        "service": "Idea Relay Bot"
    }


# Telegram webhook endpoint
@app.post(WEBHOOK_PATH)
@app.post("/webhook", include_in_schema=False)
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str = Header(None)
):
    """
    Webhook endpoint for Telegram updates.

    Telegram sends updates here when messages arrive.
    """
    settings = get_settings()

    # Verify secret token if configured
    if settings.telegram_webhook_secret:
        if x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
            raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        update_data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    # Handle update in background (fire-and-forget for fast 200 OK)
    task = asyncio.create_task(handle_telegram_update(update_data))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    return {"ok": True}


app.include_router(submit_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
