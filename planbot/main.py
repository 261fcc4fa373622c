import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from planbot.core.config import settings, validate_config
from planbot.core.database import create_all_tables
from planbot.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from planbot.core.logging import configure_logging
from planbot.core.middleware.request_id import RequestIdMiddleware
from planbot.core.validation import validate_env
from planbot.api import chat, health, plan, premium, sync, telegram, user
from planbot.workers.quota_sweep import QuotaSweeper

configure_logging(settings.ENV)
validate_env()
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("planbot")
    logger.info("Starting planbot backend...")
    create_all_tables()
    sweeper = None
    if settings.QUOTA_SWEEP_ENABLED:
        sweeper = QuotaSweeper()
        sweeper.start()
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        logger.info("Stopping planbot backend...")


app = FastAPI(title="planbot - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(user.router)
app.include_router(plan.router)
app.include_router(chat.router)
app.include_router(premium.router)
app.include_router(sync.router)
app.include_router(telegram.router)
