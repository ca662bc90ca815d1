"""
app.db.message_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

消息持久化仓库 —— 封装 MongoDB ``messages`` 集合的增查操作。

每条消息一个文档（扁平设计），避免 16MB 文档限制且便于分页查询。
集合在首次写入时自动创建并建立索引。
"""
from __future__ import annotations

from datetime import datetime, timezone

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from app.core.exceptions import PersistenceError
from app.core.logging import get_logger
from app.db import next_sequence
from app.services.ports import MessageRecord

logger = get_logger(__name__)

_COLLECTION_NAME = "messages"
_CONVERSATIONS_COLLECTION = "conversations"
_SEQUENCE_NAME = "message_id"


class MessageRepository:
    """消息持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index([("id", ASCENDING)], name="idx_id", unique=True)
        # 复合索引：按会话分区 + 按时间排序
        await self._collection.create_index(
            [("conversation_id", ASCENDING), ("created_at", ASCENDING)],
            name="idx_conversation_time",
        )
        await self._collection.create_index(
            [("conversation_id", ASCENDING), ("is_read", ASCENDING), ("sender_id", ASCENDING)],
            name="idx_conversation_unread",
        )
        self._indexes_created = True
        logger.debug("messages 索引已就绪")

    async def persist(self, conversation_id: int, sender_id: int, content: str) -> MessageRecord:
        """保存一条消息，并刷新所属会话的 ``updated_at``。

        消息写入成功即返回；``updated_at`` 刷新失败只记录警告。

        Raises:
            PersistenceError: 消息写入失败。
        """
        try:
            await self._ensure_indexes()
            now = datetime.now(timezone.utc)
            doc: MessageRecord = {
                "id": await next_sequence(self.db, _SEQUENCE_NAME),
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "content": content,
                "is_read": False,
                "created_at": now,
            }
            await self._collection.insert_one(dict(doc))
        except PyMongoError as e:
            logger.error("消息持久化失败 | conv=%s | %s", conversation_id, e, exc_info=True)
            raise PersistenceError("Failed to store message") from e

        try:
            await self.db[_CONVERSATIONS_COLLECTION].update_one(
                {"id": conversation_id}, {"$set": {"updated_at": now}},
            )
        except PyMongoError as e:
            logger.warning("会话 updated_at 刷新失败 | conv=%s | msg=%s | %s", conversation_id, doc["id"], e)
        return doc

    async def get_messages(
        self,
        conversation_id: int,
        skip: int = 0,
        limit: int = 100,
    ) -> list[MessageRecord]:
        """获取指定会话的消息（分页，按时间正序）。

        Args:
            conversation_id: 会话 ID。
            skip: 跳过条数（分页偏移）。
            limit: 每页最大条数。
        """
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"conversation_id": conversation_id}, {"_id": 0})
            .sort("created_at", ASCENDING)
            .skip(skip)
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def count_messages(self, conversation_id: int) -> int:
        """获取指定会话的消息总数。"""
        await self._ensure_indexes()
        return await self._collection.count_documents({"conversation_id": conversation_id})

    async def mark_conversation_read(self, conversation_id: int, user_id: int) -> int:
        """把会话中他人发送的未读消息标为已读，返回更新条数。"""
        await self._ensure_indexes()
        result = await self._collection.update_many(
            {
                "conversation_id": conversation_id,
                "sender_id": {"$ne": user_id},
                "is_read": False,
            },
            {"$set": {"is_read": True}},
        )
        return result.modified_count

    async def count_unread(self, user_id: int, conversation_ids: list[int]) -> dict[int, int]:
        """统计各会话中他人发给当前用户的未读消息数（只返回非零项）。"""
        if not conversation_ids:
            return {}
        await self._ensure_indexes()
        pipeline = [
            {"$match": {
                "conversation_id": {"$in": conversation_ids},
                "sender_id": {"$ne": user_id},
                "is_read": False,
            }},
            {"$group": {"_id": "$conversation_id", "count": {"$sum": 1}}},
        ]
        rows = await self._collection.aggregate(pipeline).to_list(length=None)
        return {int(row["_id"]): int(row["count"]) for row in rows}
