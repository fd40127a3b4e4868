"""
content/models.py -- Domain dataclasses for posts and post types.
"""

from dataclasses import dataclass
from typing import Optional

POST_STATUSES = ("Draft", "Published", "Archived")


@dataclass
class PostType:
    name: str
    slug: str
    id: Optional[int] = None
    description: Optional[str] = None
    created_at: str = ""


@dataclass
class Post:
    title: str
    slug: str
    id: Optional[int] = None
    short_description: Optional[str] = None
    content: Optional[str] = None
    thumbnail: Optional[str] = None
    post_type_id: Optional[int] = None
    author_id: Optional[int] = None
    status: str = "Draft"
    view_count: int = 0
    created_at: str = ""
    updated_at: Optional[str] = None
