import asyncio

import uvicorn
from fastapi import FastAPI
from loguru import logger

import config
from api.webhook import app as webhook_app
from database import SessionLocal, init_db
from services import broadcast, jobs, notifications

# job handlers register themselves on import
import handlers.bookings  # noqa: F401
import handlers.inspections  # noqa: F401

logger.add(config.LOG_PATH, rotation="10 MB", compression="zip")


async def main():
    # create tables once
    logger.info("Creating tables...")
    init_db()

    fastapi_app = FastAPI()
    fastapi_app.mount("/api", webhook_app)

    server_config = uvicorn.Config(fastapi_app, host=config.WEBHOOK_HOST, port=config.WEBHOOK_PORT, log_level="info")
    server = uvicorn.Server(server_config)

    loop = asyncio.get_running_loop()
    loop.create_task(jobs.run_forever(SessionLocal))
    loop.create_task(broadcast.pump())

    bot = notifications.create_bot()
    if bot is None:
        logger.warning("BOT_TOKEN is not set, notifications will only be logged")
    loop.create_task(notifications.deliver(bot))

    logger.info(f"Engine started with FastAPI webhook server on port {config.WEBHOOK_PORT}")
    try:
        await server.serve()
    finally:
        if bot is not None:
            await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
