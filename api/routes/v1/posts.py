"""
api/routes/v1/posts.py -- Posts and post types (POST_MANAGER), plus the public post page.

Routes (all under /api/v1):
  GET    /post-types                 VIEW_LIST
  POST   /post-types                 CREATE
  PUT    /post-types/{postTypeId}    EDIT
  DELETE /post-types/{postTypeId}    DELETE (400 while posts use it)
  GET    /posts                      VIEW_LIST  (status, postTypeId, search)
  GET    /posts/public/{slug}        anonymous, Published only; counts a view
  GET    /posts/{postId}             VIEW_DETAIL
  POST   /posts                      CREATE
  PUT    /posts/{postId}             EDIT
  DELETE /posts/{postId}             DELETE

Slugs are generated from the title when absent and must be unique (409).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import PostResponse, PostTypeResponse, PostTypeWrite, PostWrite
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import require_permission
from auth.models import User
from content.models import Post, PostType
from content.store import ContentStore
from core.text import slugify

router = APIRouter()

_M = ModuleCodes.POST_MANAGER


def _post_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "Post not found."})


def _type_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "Post type not found."})


def _duplicate_slug() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "duplicate_slug", "message": "A post with that slug already exists."},
    )


def _resolve_slug(store: ContentStore, body: PostWrite, exclude_id: Optional[int] = None) -> str:
    slug = slugify(body.slug or body.title)
    if not slug:
        raise HTTPException(status_code=400, detail={"code": "invalid_slug", "message": "Slug cannot be empty."})
    if store.slug_exists(slug, exclude_id=exclude_id):
        raise _duplicate_slug()
    return slug


def _check_post_type(store: ContentStore, post_type_id: Optional[int]) -> None:
    if post_type_id is not None and store.get_post_type(post_type_id) is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_post_type", "message": "Post type does not exist."},
        )


# ---------------------------------------------------------------------------
# Post types
# ---------------------------------------------------------------------------


@router.get("/post-types", response_model=list[PostTypeResponse])
def list_post_types(
    request: Request,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[PostTypeResponse]:
    return [PostTypeResponse.from_post_type(t) for t in request.app.state.content.list_post_types()]


@router.post("/post-types", response_model=PostTypeResponse, status_code=201)
def create_post_type(
    request: Request,
    body: PostTypeWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> PostTypeResponse:
    store: ContentStore = request.app.state.content
    try:
        type_id = store.create_post_type(
            PostType(name=body.name, slug=slugify(body.name), description=body.description)
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "duplicate_post_type", "message": "A post type with that name already exists."},
        ) from exc
    return PostTypeResponse.from_post_type(store.get_post_type(type_id))


@router.put("/post-types/{post_type_id}", response_model=PostTypeResponse)
def update_post_type(
    request: Request,
    post_type_id: int,
    body: PostTypeWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> PostTypeResponse:
    store: ContentStore = request.app.state.content
    try:
        updated = store.update_post_type(post_type_id, body.name, body.description)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "duplicate_post_type", "message": "A post type with that name already exists."},
        ) from exc
    if not updated:
        raise _type_not_found()
    return PostTypeResponse.from_post_type(store.get_post_type(post_type_id))


@router.delete("/post-types/{post_type_id}", status_code=204)
def delete_post_type(
    request: Request,
    post_type_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    store: ContentStore = request.app.state.content
    if store.get_post_type(post_type_id) is None:
        raise _type_not_found()
    if store.post_type_in_use(post_type_id):
        raise HTTPException(
            status_code=400,
            detail={"code": "post_type_in_use", "message": "Post type is used by existing posts."},
        )
    store.delete_post_type(post_type_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------


@router.get("/posts", response_model=list[PostResponse])
def list_posts(
    request: Request,
    status: Optional[str] = Query(default=None, max_length=20),
    post_type_id: Optional[int] = Query(default=None, alias="postTypeId"),
    search: Optional[str] = Query(default=None, max_length=100),
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[PostResponse]:
    posts = request.app.state.content.list_posts(status=status, post_type_id=post_type_id, search=search)
    return [PostResponse.from_post(p) for p in posts]


@router.get("/posts/public/{slug}", response_model=PostResponse)
def public_post(request: Request, slug: str) -> PostResponse:
    store: ContentStore = request.app.state.content
    post = store.get_post_by_slug(slug)
    if post is None or post.status != "Published":
        raise _post_not_found()
    store.increment_views(post.id)
    post.view_count += 1
    return PostResponse.from_post(post)


@router.get("/posts/{post_id}", response_model=PostResponse)
def get_post(
    request: Request,
    post_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> PostResponse:
    post = request.app.state.content.get_post(post_id)
    if post is None:
        raise _post_not_found()
    return PostResponse.from_post(post)


@router.post("/posts", response_model=PostResponse, status_code=201)
def create_post(
    request: Request,
    body: PostWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> PostResponse:
    store: ContentStore = request.app.state.content
    _check_post_type(store, body.post_type_id)
    post = Post(
        title=body.title,
        slug=_resolve_slug(store, body),
        short_description=body.short_description,
        content=body.content,
        thumbnail=body.thumbnail,
        post_type_id=body.post_type_id,
        author_id=current_user.id,
        status=body.status,
    )
    try:
        post_id = store.create_post(post)
    except IntegrityError as exc:
        raise _duplicate_slug() from exc
    return PostResponse.from_post(store.get_post(post_id))


@router.put("/posts/{post_id}", response_model=PostResponse)
def update_post(
    request: Request,
    post_id: int,
    body: PostWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> PostResponse:
    store: ContentStore = request.app.state.content
    if store.get_post(post_id) is None:
        raise _post_not_found()
    _check_post_type(store, body.post_type_id)
    fields = body.model_dump()
    fields["slug"] = _resolve_slug(store, body, exclude_id=post_id)
    try:
        store.update_post(post_id, **fields)
    except IntegrityError as exc:
        raise _duplicate_slug() from exc
    return PostResponse.from_post(store.get_post(post_id))


@router.delete("/posts/{post_id}", status_code=204)
def delete_post(
    request: Request,
    post_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    if not request.app.state.content.delete_post(post_id):
        raise _post_not_found()
    return Response(status_code=204)
