"""
Record access for tool calls, filtered by the authenticated user.

Arguments follow the Prisma client shape the tool schemas advertise:
``where`` (field equality or an operator object), ``orderBy``, ``take``,
``skip`` and ``data``. Access rules:

- Post: readable when published or authored by the caller; created only as
  the caller; updated and deleted only when authored by the caller.
- User: readable without credential fields; only the caller's own record can
  be updated; never created or deleted through tools.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, or_, select, update

from database import Database, Post, User
from models import PostRecord, UserRecord

logger = logging.getLogger(__name__)

MODELS = ("Post", "User")
OPERATIONS = ("findMany", "createMany", "updateMany", "deleteMany")
WRITE_OPERATIONS = ("createMany", "updateMany", "deleteMany")

# Exposed field name -> column attribute name
POST_FIELDS = {
    "id": "id",
    "title": "title",
    "content": "content",
    "published": "published",
    "viewCount": "view_count",
    "authorId": "author_id",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}
USER_FIELDS = {
    "id": "id",
    "email": "email",
    "name": "name",
}
POST_WRITABLE = ("title", "content", "published", "viewCount")
USER_WRITABLE = ("name", "email")
MAX_TAKE = 100


class DataAccessError(ValueError):
    """Raised for arguments the caller may not use"""


class RecordAccessor:
    """Reads and writes records on behalf of one user"""

    def __init__(self, database: Database, user_id: int):
        self.database = database
        self.user_id = user_id

    async def execute(self, model: str, operation: str, args: Optional[Dict[str, Any]] = None) -> Any:
        """Dispatch ``<model>.<operation>(args)``"""
        if model not in MODELS:
            raise DataAccessError(f"Unknown model: {model}")
        if operation not in OPERATIONS:
            raise DataAccessError(f"Unknown operation: {operation}")
        args = args or {}
        if not isinstance(args, dict):
            raise DataAccessError("args must be an object")

        handler = getattr(self, f"_{model.lower()}_{operation[:-4].lower()}_many")
        logger.info(f"User {self.user_id} calling {model}.{operation}")
        return await handler(args)

    # Post operations
    async def _post_find_many(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        visible = or_(Post.published.is_(True), Post.author_id == self.user_id)
        query = select(Post).where(visible, *self._conditions(Post, POST_FIELDS, args.get("where")))
        query = self._paginate(Post, POST_FIELDS, query, args)
        async with self.database.session() as session:
            posts = (await session.execute(query)).scalars().all()
        return [self._post_dict(post) for post in posts]

    async def _post_create_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        rows = args.get("data")
        if isinstance(rows, dict):
            rows = [rows]
        if not rows or not isinstance(rows, list):
            raise DataAccessError("data must be an object or a non-empty array")

        posts = []
        for row in rows:
            if not isinstance(row, dict):
                raise DataAccessError("each data entry must be an object")
            author_id = row.get("authorId", self.user_id)
            if author_id != self.user_id:
                raise DataAccessError("Posts can only be created for the current user")
            if not row.get("title"):
                raise DataAccessError("title is required")
            values = self._values(POST_FIELDS, POST_WRITABLE, row, ignore=("authorId",))
            posts.append(Post(author_id=self.user_id, **values))

        async with self.database.session() as session:
            session.add_all(posts)
            await session.commit()
        return {"count": len(posts)}

    async def _post_update_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        values = self._values(POST_FIELDS, POST_WRITABLE, args.get("data") or {})
        if not values:
            raise DataAccessError("data must set at least one writable field")
        conditions = [Post.author_id == self.user_id, *self._conditions(Post, POST_FIELDS, args.get("where"))]
        async with self.database.session() as session:
            result = await session.execute(
                update(Post).where(and_(*conditions)).values(**values).execution_options(synchronize_session=False)
            )
            await session.commit()
        return {"count": result.rowcount}

    async def _post_delete_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        conditions = [Post.author_id == self.user_id, *self._conditions(Post, POST_FIELDS, args.get("where"))]
        async with self.database.session() as session:
            result = await session.execute(
                delete(Post).where(and_(*conditions)).execution_options(synchronize_session=False)
            )
            await session.commit()
        return {"count": result.rowcount}

    # User operations
    async def _user_find_many(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        query = select(User).where(*self._conditions(User, USER_FIELDS, args.get("where")))
        query = self._paginate(User, USER_FIELDS, query, args)
        async with self.database.session() as session:
            users = (await session.execute(query)).scalars().all()
        return [UserRecord(id=user.id, email=user.email, name=user.name).model_dump() for user in users]

    async def _user_create_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        raise DataAccessError("Users cannot be created through this server")

    async def _user_update_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        values = self._values(USER_FIELDS, USER_WRITABLE, args.get("data") or {})
        if not values:
            raise DataAccessError("data must set at least one writable field")
        conditions = [User.id == self.user_id, *self._conditions(User, USER_FIELDS, args.get("where"))]
        async with self.database.session() as session:
            result = await session.execute(
                update(User).where(and_(*conditions)).values(**values).execution_options(synchronize_session=False)
            )
            await session.commit()
        return {"count": result.rowcount}

    async def _user_delete_many(self, args: Dict[str, Any]) -> Dict[str, int]:
        raise DataAccessError("Users cannot be deleted through this server")

    # Argument translation
    @staticmethod
    def _column(table, fields: Dict[str, str], name: str):
        if name not in fields:
            raise DataAccessError(f"Unknown field: {name}")
        return getattr(table, fields[name])

    def _conditions(self, table, fields: Dict[str, str], where: Optional[Dict[str, Any]]) -> list:
        if not where:
            return []
        if not isinstance(where, dict):
            raise DataAccessError("where must be an object")

        conditions = []
        for name, value in where.items():
            column = self._column(table, fields, name)
            if not isinstance(value, dict):
                conditions.append(column == value)
                continue
            for op, operand in value.items():
                if op == "equals":
                    conditions.append(column == operand)
                elif op == "not":
                    conditions.append(column != operand)
                elif op == "in":
                    conditions.append(column.in_(list(operand)))
                elif op == "contains":
                    conditions.append(column.contains(str(operand)))
                elif op == "gt":
                    conditions.append(column > operand)
                elif op == "gte":
                    conditions.append(column >= operand)
                elif op == "lt":
                    conditions.append(column < operand)
                elif op == "lte":
                    conditions.append(column <= operand)
                else:
                    raise DataAccessError(f"Unsupported filter operator: {op}")
        return conditions

    def _paginate(self, table, fields: Dict[str, str], query, args: Dict[str, Any]):
        order_by = args.get("orderBy")
        if isinstance(order_by, dict):
            order_by = [order_by]
        for item in order_by or []:
            for name, direction in item.items():
                column = self._column(table, fields, name)
                if direction not in ("asc", "desc"):
                    raise DataAccessError(f"Invalid sort direction: {direction}")
                query = query.order_by(column.desc() if direction == "desc" else column.asc())
        if not order_by:
            query = query.order_by(table.id)

        take = args.get("take")
        if take is not None:
            if not isinstance(take, int) or take < 0:
                raise DataAccessError("take must be a non-negative integer")
        query = query.limit(min(take if take is not None else MAX_TAKE, MAX_TAKE))

        skip = args.get("skip")
        if skip:
            if not isinstance(skip, int) or skip < 0:
                raise DataAccessError("skip must be a non-negative integer")
            query = query.offset(skip)
        return query

    @staticmethod
    def _values(fields: Dict[str, str], writable, data: Dict[str, Any], ignore=()) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise DataAccessError("data must be an object")
        values = {}
        for name, value in data.items():
            if name in ignore:
                continue
            if name not in writable:
                raise DataAccessError(f"Field cannot be written: {name}")
            values[fields[name]] = value
        return values

    @staticmethod
    def _post_dict(post: Post) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return PostRecord(
            id=post.id,
            title=post.title,
            content=post.content,
            published=post.published,
            viewCount=post.view_count,
            authorId=post.author_id,
            createdAt=iso(post.created_at),
            updatedAt=iso(post.updated_at)
        ).model_dump()
