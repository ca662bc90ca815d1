"""
app.db.conversation_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

会话持久化仓库 —— 封装 MongoDB ``conversations`` 集合。

三种会话共用一个集合:
  - 私聊：``direct_key = "<小 ID>:<大 ID>"``，唯一
  - 角色广播群：``role_key = <ROLE>``，唯一，参与者随角色成员增长
  - 普通群组：按 ``group_name`` + 参与者查找
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.exceptions import PersistenceError
from app.core.logging import get_logger
from app.core.roles import Role, role_label
from app.db import next_sequence
from app.services.ports import ConversationRecord

logger = get_logger(__name__)

_COLLECTION_NAME = "conversations"
_SEQUENCE_NAME = "conversation_id"

# 读取时去掉内部字段
_PROJECTION = {"_id": 0, "direct_key": 0, "role_key": 0}


def _direct_key(user_a: int, user_b: int) -> str:
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


class ConversationRepository:
    """会话仓库。

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
        await self._collection.create_index(
            [("direct_key", ASCENDING)], name="idx_direct_key", unique=True, sparse=True,
        )
        await self._collection.create_index(
            [("role_key", ASCENDING)], name="idx_role_key", unique=True, sparse=True,
        )
        await self._collection.create_index(
            [("participant_ids", ASCENDING), ("updated_at", DESCENDING)],
            name="idx_participant_updated",
        )
        self._indexes_created = True
        logger.debug("conversations 索引已就绪")

    async def _insert(self, doc: dict[str, Any]) -> ConversationRecord:
        now = datetime.now(timezone.utc)
        doc = {
            **doc,
            "id": await next_sequence(self.db, _SEQUENCE_NAME),
            "created_at": now,
            "updated_at": now,
        }
        await self._collection.insert_one(doc)
        logger.info("会话已创建 | id=%s | group=%s", doc["id"], doc.get("is_group"))
        return {k: v for k, v in doc.items() if k not in _PROJECTION}  # type: ignore[return-value]

    async def find_or_create_direct(self, user_a: int, user_b: int) -> ConversationRecord:
        """获取两人之间的私聊会话，不存在则创建。"""
        key = _direct_key(user_a, user_b)
        try:
            await self._ensure_indexes()
            existing = await self._collection.find_one({"direct_key": key}, _PROJECTION)
            if existing is not None:
                return existing
            try:
                return await self._insert({
                    "direct_key": key,
                    "is_group": False,
                    "group_name": None,
                    "role": None,
                    "participant_ids": sorted((user_a, user_b)),
                    "created_by": user_a,
                })
            except DuplicateKeyError:
                # 并发创建：另一条请求已经插入
                return await self._collection.find_one({"direct_key": key}, _PROJECTION)
        except PyMongoError as e:
            raise PersistenceError("Failed to load conversation") from e

    async def find_or_create_role_group(
        self,
        role: Role,
        participant_ids: list[int],
        created_by: int | None = None,
    ) -> ConversationRecord:
        """获取角色广播群，不存在则创建；已存在时把新的角色成员补进参与者。"""
        try:
            await self._ensure_indexes()
            existing = await self._collection.find_one_and_update(
                {"role_key": role.value},
                {"$addToSet": {"participant_ids": {"$each": list(participant_ids)}}},
                projection=_PROJECTION,
                return_document=ReturnDocument.AFTER,
            )
            if existing is not None:
                return existing
            try:
                return await self._insert({
                    "role_key": role.value,
                    "is_group": True,
                    "group_name": role_label(role),
                    "role": role.value,
                    "participant_ids": sorted(set(participant_ids)),
                    "created_by": created_by,
                })
            except DuplicateKeyError:
                return await self._collection.find_one({"role_key": role.value}, _PROJECTION)
        except PyMongoError as e:
            raise PersistenceError("Failed to load role group") from e

    async def create_group(
        self,
        group_name: str | None,
        participant_ids: list[int],
        created_by: int,
    ) -> ConversationRecord:
        """创建普通群组会话。"""
        try:
            await self._ensure_indexes()
            return await self._insert({
                "is_group": True,
                "group_name": group_name,
                "role": None,
                "participant_ids": sorted(set(participant_ids)),
                "created_by": created_by,
            })
        except PyMongoError as e:
            raise PersistenceError("Failed to create group") from e

    async def find_group_by_name(self, group_name: str, user_id: int) -> ConversationRecord | None:
        """查找当前用户所在的同名普通群组。"""
        await self._ensure_indexes()
        return await self._collection.find_one(
            {
                "is_group": True,
                "role": None,
                "group_name": group_name,
                "participant_ids": user_id,
            },
            _PROJECTION,
        )

    async def get(self, conversation_id: int) -> ConversationRecord | None:
        await self._ensure_indexes()
        return await self._collection.find_one({"id": conversation_id}, _PROJECTION)

    async def list_for_user(self, user_id: int) -> list[ConversationRecord]:
        """当前用户参与的所有会话，按最近更新倒序。"""
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"participant_ids": user_id}, _PROJECTION)
            .sort("updated_at", DESCENDING)
        )
        return await cursor.to_list(length=None)
