"""
content/store.py -- SQLAlchemy Core persistence layer for posts and post types.

Pattern: Repository + Data Mapper (see auth/store.py).

Slugs are unique per table and default to core.text.slugify() of the name or
title.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from content.models import Post, PostType
from core.text import slugify

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ktk_content.db'}"


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_post_types = Table(
    "post_types",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("slug", String(120), nullable=False, unique=True),
    Column("description", Text),
    Column("created_at", String(40), nullable=False),
)

_posts = Table(
    "posts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(250), nullable=False),
    Column("slug", String(260), nullable=False, unique=True),
    Column("short_description", String(500)),
    Column("content", Text),
    Column("thumbnail", String(500)),
    Column("post_type_id", Integer, ForeignKey("post_types.id")),
    Column("author_id", Integer),
    Column("status", String(20), nullable=False, server_default="Draft"),
    Column("view_count", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ContentStore:
    """Repository for Post and PostType entities."""

    _POST_FIELDS: set = {"title", "slug", "short_description", "content", "thumbnail", "post_type_id", "status"}

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Post types
    # ------------------------------------------------------------------

    def create_post_type(self, post_type: PostType) -> int:
        """Insert a post type. Raises IntegrityError on a duplicate slug."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _post_types.insert().values(
                    name=post_type.name,
                    slug=post_type.slug or slugify(post_type.name),
                    description=post_type.description,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_post_type(self, post_type_id: int) -> Optional[PostType]:
        with self.engine.connect() as conn:
            row = conn.execute(_post_types.select().where(_post_types.c.id == post_type_id)).fetchone()
        return _row_to_post_type(row) if row is not None else None

    def list_post_types(self) -> list[PostType]:
        with self.engine.connect() as conn:
            rows = conn.execute(_post_types.select().order_by(_post_types.c.name)).fetchall()
        return [_row_to_post_type(r) for r in rows]

    def update_post_type(self, post_type_id: int, name: str, description: Optional[str] = None) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _post_types.update()
                .where(_post_types.c.id == post_type_id)
                .values(name=name, slug=slugify(name), description=description)
            )
            conn.commit()
        return result.rowcount > 0

    def post_type_in_use(self, post_type_id: int) -> bool:
        with self.engine.connect() as conn:
            hit = conn.execute(select(_posts.c.id).where(_posts.c.post_type_id == post_type_id).limit(1)).first()
        return hit is not None

    def delete_post_type(self, post_type_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_post_types.delete().where(_post_types.c.id == post_type_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    def slug_exists(self, slug: str, exclude_id: Optional[int] = None) -> bool:
        query = select(_posts.c.id).where(_posts.c.slug == slug)
        if exclude_id is not None:
            query = query.where(_posts.c.id != exclude_id)
        with self.engine.connect() as conn:
            return conn.execute(query.limit(1)).first() is not None

    def create_post(self, post: Post) -> int:
        """Insert a post. Raises IntegrityError on a duplicate slug."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _posts.insert().values(
                    title=post.title,
                    slug=post.slug,
                    short_description=post.short_description,
                    content=post.content,
                    thumbnail=post.thumbnail,
                    post_type_id=post.post_type_id,
                    author_id=post.author_id,
                    status=post.status,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_post(self, post_id: int) -> Optional[Post]:
        with self.engine.connect() as conn:
            row = conn.execute(_posts.select().where(_posts.c.id == post_id)).fetchone()
        return _row_to_post(row) if row is not None else None

    def get_post_by_slug(self, slug: str) -> Optional[Post]:
        with self.engine.connect() as conn:
            row = conn.execute(_posts.select().where(_posts.c.slug == slug)).fetchone()
        return _row_to_post(row) if row is not None else None

    def list_posts(
        self,
        status: Optional[str] = None,
        post_type_id: Optional[int] = None,
        search: Optional[str] = None,
    ) -> list[Post]:
        query = _posts.select().order_by(_posts.c.created_at.desc(), _posts.c.id.desc())
        if status:
            query = query.where(_posts.c.status == status)
        if post_type_id is not None:
            query = query.where(_posts.c.post_type_id == post_type_id)
        if search:
            pattern = f"%{search.strip().lower()}%"
            query = query.where(
                or_(func.lower(_posts.c.title).like(pattern), func.lower(_posts.c.short_description).like(pattern))
            )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_post(r) for r in rows]

    def update_post(self, post_id: int, **fields) -> bool:
        unknown = set(fields) - self._POST_FIELDS
        if unknown:
            raise ValueError(f"Unknown post fields: {unknown!r}")
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_posts.update().where(_posts.c.id == post_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def increment_views(self, post_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_posts.update().where(_posts.c.id == post_id).values(view_count=_posts.c.view_count + 1))
            conn.commit()

    def delete_post(self, post_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_posts.delete().where(_posts.c.id == post_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_post_type(row) -> PostType:
    return PostType(
        id=row.id,
        name=row.name,
        slug=row.slug,
        description=row.description,
        created_at=row.created_at,
    )


def _row_to_post(row) -> Post:
    return Post(
        id=row.id,
        title=row.title,
        slug=row.slug,
        short_description=row.short_description,
        content=row.content,
        thumbnail=row.thumbnail,
        post_type_id=row.post_type_id,
        author_id=row.author_id,
        status=row.status,
        view_count=row.view_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
