from clinic_chat.config import get_settings
from clinic_chat.utils.logger import get_logger
from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

logger = get_logger("database")

_mongo_client: AsyncIOMotorClient | None = None


def _document_models() -> list:
    from clinic_chat.models import User, ChatSession, ChatMessage
    return [User, ChatSession, ChatMessage]


def database_name(uri: str) -> str:
    """Extract database name from URI, default to 'clinic_chat' if not specified."""
    db_name = uri.rsplit("/", 1)[-1].split("?")[0]
    return db_name or "clinic_chat"


async def init_db(client: AsyncIOMotorClient | None = None) -> None:
    """Initialize MongoDB (Beanie) and register document models.

    A pre-built client can be passed in (tests hand in an in-memory one).
    """
    global _mongo_client
    settings = get_settings()
    _mongo_client = client or AsyncIOMotorClient(settings.MONGODB_URI)
    db_name = database_name(settings.MONGODB_URI)
    await init_beanie(
        database=_mongo_client[db_name],
        document_models=_document_models(),
    )
    logger.info(f"Beanie initialized on database '{db_name}'")


async def ping_db() -> bool:
    """Check MongoDB connectivity."""
    if not _mongo_client:
        return False
    try:
        await _mongo_client.admin.command("ping")
        return True
    except Exception:
        return False


def close_db() -> None:
    global _mongo_client
    if _mongo_client is not None:
        _mongo_client.close()
        _mongo_client = None
