"""
app.db.user_repository
~~~~~~~~~~~~~~~~~~~~~~

用户目录（只读）—— 读取主后台同步到 ``users`` 集合的用户与角色。

聊天服务从不修改用户；已软删除（``deleted_at`` 非空）的用户不出现在结果中。
"""
from __future__ import annotations

from typing import TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from app.core.roles import Role

_COLLECTION_NAME = "users"


class UserSummary(TypedDict):
    id: int
    username: str


class UserRepository:
    """基于 MongoDB 的用户目录。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]

    async def list_user_ids_by_role(self, role: Role) -> list[int]:
        """持有指定角色的所有有效用户 ID。"""
        cursor = self._collection.find(
            {"roles": role.value, "deleted_at": None},
            {"_id": 0, "id": 1},
        )
        return [int(doc["id"]) for doc in await cursor.to_list(length=None)]

    async def list_available_users(self, exclude_id: int) -> list[UserSummary]:
        """除当前用户外的所有有效用户，按用户名排序。"""
        cursor = (
            self._collection
            .find(
                {"id": {"$ne": exclude_id}, "deleted_at": None},
                {"_id": 0, "id": 1, "username": 1},
            )
            .sort("username", ASCENDING)
        )
        return [
            {"id": int(doc["id"]), "username": str(doc.get("username") or "")}
            for doc in await cursor.to_list(length=None)
        ]
