import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import mongomock
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from config import get_config

logger = logging.getLogger("estoque_api.db")

settings = get_config()
MONGO_URI = settings.MONGO_URI
MONGO_DB = settings.MONGO_DB


class Database:
    client: AsyncIOMotorClient = None
    db = None
    is_mock: bool = False


db = Database()


class _AsyncMockCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, key_or_list, direction=None):
        if direction is None:
            self._cursor = self._cursor.sort(key_or_list)
        else:
            self._cursor = self._cursor.sort(key_or_list, direction)
        return self

    def skip(self, n: int):
        self._cursor = self._cursor.skip(n)
        return self

    def limit(self, n: int):
        self._cursor = self._cursor.limit(n)
        return self

    async def to_list(self, length: Optional[int] = None):
        items = list(self._cursor)
        if length is None:
            return items
        return items[:length]


class _AsyncMockCollection:
    def __init__(self, collection):
        self._collection = collection

    async def find_one(self, *args, **kwargs):
        return self._collection.find_one(*args, **kwargs)

    def find(self, *args, **kwargs):
        return _AsyncMockCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, pipeline, *args, **kwargs):
        return _AsyncMockCursor(self._collection.aggregate(pipeline, *args, **kwargs))

    async def insert_one(self, *args, **kwargs):
        return self._collection.insert_one(*args, **kwargs)

    async def insert_many(self, *args, **kwargs):
        return self._collection.insert_many(*args, **kwargs)

    async def update_one(self, *args, **kwargs):
        return self._collection.update_one(*args, **kwargs)

    async def update_many(self, *args, **kwargs):
        return self._collection.update_many(*args, **kwargs)

    async def find_one_and_update(self, *args, **kwargs):
        return self._collection.find_one_and_update(*args, **kwargs)

    async def delete_one(self, *args, **kwargs):
        return self._collection.delete_one(*args, **kwargs)

    async def count_documents(self, *args, **kwargs):
        return self._collection.count_documents(*args, **kwargs)

    async def create_index(self, *args, **kwargs):
        return self._collection.create_index(*args, **kwargs)


class _AsyncMockDatabase:
    def __init__(self, database):
        self._database = database

    def __getitem__(self, name: str):
        return _AsyncMockCollection(self._database[name])

    def __getattr__(self, name: str):
        return _AsyncMockCollection(getattr(self._database, name))


def use_mock_database(name: Optional[str] = None) -> None:
    db.client = None
    db.db = _AsyncMockDatabase(mongomock.MongoClient()[name or MONGO_DB])
    db.is_mock = True


async def connect() -> None:
    db.is_mock = False
    try:
        db.client = AsyncIOMotorClient(MONGO_URI, serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS)
        db.db = db.client[MONGO_DB]
        await db.client.admin.command("ping")
        logger.info("Conectado ao MongoDB Async: %s", MONGO_DB)
    except Exception as exc:
        if db.client:
            db.client.close()
        db.client = None
        if not settings.ALLOW_MOCK_DB:
            raise
        use_mock_database()
        logger.warning("Falha ao conectar no MongoDB Async: %s", exc)
        logger.warning("Usando banco mock em memória (mongomock)")
    await ensure_indexes()


async def close() -> None:
    if db.client:
        db.client.close()


async def ensure_indexes() -> None:
    await db.db.estoque_saldos.create_index(
        [("produto_id", ASCENDING), ("estoque_local_id", ASCENDING)], unique=True
    )
    await db.db.estoque_locais.create_index([("tipo", ASCENDING), ("loja_id", ASCENDING)])
    await db.db.estoque_movimentos.create_index([("referencia_tipo", ASCENDING), ("referencia_id", ASCENDING)])
    await db.db.estoque_movimentos.create_index([("created_at", DESCENDING)])
    await db.db.estoque_solicitacao_itens.create_index([("solicitacao_id", ASCENDING)])
    await db.db.estoque_solicitacao_status_logs.create_index(
        [("solicitacao_id", ASCENDING), ("created_at", DESCENDING)]
    )
    await db.db.users_regras.create_index([("user_ref", ASCENDING)])


def _norm_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_utc_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        else:
            dt = dt.astimezone(timezone.utc)
        out = dt.isoformat()
        if out.endswith("+00:00"):
            out = out[:-6] + "Z"
        return out
    if isinstance(value, str):
        return value
    return str(value)


def _public_id(doc: Optional[Dict[str, Any]]) -> Optional[str]:
    if not doc:
        return None
    if doc.get("id") is not None:
        return str(doc.get("id"))
    if doc.get("_id") is not None:
        return str(doc.get("_id"))
    return None


def _build_id_query(value: str) -> Dict[str, Any]:
    value = str(value)
    ors: List[Dict[str, Any]] = [{"id": value}, {"_id": value}]
    if ObjectId.is_valid(value):
        ors.append({"_id": ObjectId(value)})
    return {"$or": ors}


async def _find_one_by_id(coll: str, value: Optional[str]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    return await db.db[coll].find_one(_build_id_query(value))


def serializar(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Converte um documento Mongo em dict serializável (id público, datas ISO)."""
    if doc is None:
        return None
    out: Dict[str, Any] = {}
    for key, value in doc.items():
        if key == "_id":
            continue
        if isinstance(value, datetime):
            out[key] = _dt_to_utc_iso(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        elif isinstance(value, dict):
            out[key] = serializar(value)
        elif isinstance(value, list):
            out[key] = [serializar(v) if isinstance(v, dict) else v for v in value]
        else:
            out[key] = value
    if "_id" in doc or "id" in doc:
        out["id"] = _public_id(doc)
    return out


def paginacao(total: int, page: int, per_page: int) -> Dict[str, Any]:
    pages = (total + per_page - 1) // per_page if per_page else 0
    return {"total": total, "page": page, "pages": pages, "per_page": per_page}
