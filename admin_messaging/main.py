import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from admin_messaging.config import get_settings
from admin_messaging.database.connection import close_mongo_connection, connect_to_mongo, get_database
from admin_messaging.repositories.conversation_repository import MongoConversationRepository
from admin_messaging.repositories.message_repository import MongoMessageRepository
from admin_messaging.routers.conversations import router as conversations_router
from admin_messaging.routers.messages import router as messages_router
from admin_messaging.routers.notifications import router as notifications_router
from admin_messaging.routers.users import router as users_router
from admin_messaging.services.errors import MessagingError

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/messaging"


@asynccontextmanager
async def lifespan(app: FastAPI):

    if settings.storage_backend == "mongo":
        await connect_to_mongo()
        db = get_database()
        await MongoConversationRepository(db).ensure_indexes()
        await MongoMessageRepository(db).ensure_indexes()
    try:
        yield
    finally:
        if settings.storage_backend == "mongo":
            await close_mongo_connection()


app = FastAPI(title=settings.app_name, lifespan=lifespan)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": exc.code, "message": exc.message, "retryable": exc.retryable},
    )


app.include_router(conversations_router, prefix=API_PREFIX)
app.include_router(messages_router, prefix=API_PREFIX)
app.include_router(users_router, prefix=API_PREFIX)
app.include_router(notifications_router, prefix=API_PREFIX)


@app.get("/")
async def root():

    return {"message": f"{settings.app_name} is running", "storage_backend": settings.storage_backend}
