"""
Comment and reply routes.

    GET    /comments?shopId=                     -> comments, newest first
    GET    /comments/{comment_id}
    POST   /comments                             -> customer review of a shop
    PATCH  /comments/{comment_id}
    DELETE /comments/{comment_id}
    POST   /comments/{comment_id}/reply          -> create or edit the shop reply
    GET    /comments/{comment_id}/reply          -> reply, filtered by moderation state
    GET    /comments/{comment_id}/reply/history  -> previous reply texts (staff only)
    POST   /comments/replies/{reply_id}/moderate -> approve / reject (manager, owner)

A user leaves at most one comment per shop, or one per booking when the
comment references a booking.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_app_settings
from .core.db import get_session
from .core.errors import DuplicateError, ForbiddenError, NotFoundError, ValidationError
from .core.request_context import (
    PRIVILEGED_ROLES,
    RequestContext,
    get_request_context,
    require_user,
)
from .core.responses import success_response
from .models import Booking, Comment, CommentReply, ModerationStatus, ReplyHistory, ReplyModeration
from .moderation import (
    edit_reply,
    effective_status,
    ensure_can_moderate,
    ensure_can_read_history,
    ensure_can_reply,
    is_visible,
    moderate,
    new_reply,
    sees_all_states,
)
from .shops import get_shop_or_404
from .tenancy import get_tenant_id, require_owned, scoped_select, tenant_filter

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# Request Models
# ────────────────────────────────────────────────────────────────

class CommentCreateRequest(BaseModel):
    shop_id: uuid.UUID = Field(..., validation_alias=AliasChoices("barberShopId", "shopId", "shop_id"))
    rating: int = Field(..., ge=1, le=5)
    description: str = Field(..., min_length=1, max_length=2000)
    booking_id: Optional[uuid.UUID] = Field(
        None, validation_alias=AliasChoices("bookingId", "booking_id")
    )


class CommentUpdateRequest(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)


class ReplyRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=2000)


class ModerateRequest(BaseModel):
    status: ModerationStatus
    reason: Optional[str] = Field(None, max_length=1000)


# ────────────────────────────────────────────────────────────────
# Serializers
# ────────────────────────────────────────────────────────────────

def comment_to_dict(comment: Comment) -> dict:
    return {
        "id": str(comment.id),
        "shopId": str(comment.shop_id),
        "userId": str(comment.user_id),
        "bookingId": str(comment.booking_id) if comment.booking_id else None,
        "rating": comment.rating,
        "description": comment.description,
        "createdAt": comment.created_at.isoformat() if comment.created_at else None,
        "updatedAt": comment.updated_at.isoformat() if comment.updated_at else None,
    }


def reply_to_dict(reply: CommentReply) -> dict:
    return {
        "id": str(reply.id),
        "commentId": str(reply.comment_id),
        "userId": str(reply.user_id),
        "text": reply.text,
        "createdAt": reply.created_at.isoformat() if reply.created_at else None,
        "updatedAt": reply.updated_at.isoformat() if reply.updated_at else None,
    }


def moderation_to_dict(moderation: ReplyModeration) -> dict:
    return {
        "replyId": str(moderation.reply_id),
        "status": moderation.status.value,
        "reason": moderation.reason,
        "moderatorUserId": str(moderation.moderator_user_id) if moderation.moderator_user_id else None,
    }


def history_to_dict(entry: ReplyHistory) -> dict:
    return {
        "id": str(entry.id),
        "commentId": str(entry.comment_id),
        "replyId": str(entry.reply_id),
        "previousText": entry.previous_text,
        "editedByUserId": str(entry.edited_by_user_id) if entry.edited_by_user_id else None,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


# ────────────────────────────────────────────────────────────────
# Lookups
# ────────────────────────────────────────────────────────────────

async def get_comment_or_404(
    session: AsyncSession, comment_id: uuid.UUID, tenant_id: str
) -> Comment:
    comment = await require_owned(session, Comment, comment_id, tenant_id)
    if not comment:
        raise NotFoundError("Comment not found", {"commentId": str(comment_id)})
    return comment


async def get_reply_for_comment(
    session: AsyncSession, comment_id: uuid.UUID, for_update: bool = False
) -> Optional[CommentReply]:
    stmt = select(CommentReply).where(CommentReply.comment_id == comment_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_moderation(session: AsyncSession, reply_id: uuid.UUID) -> Optional[ReplyModeration]:
    result = await session.execute(select(ReplyModeration).where(ReplyModeration.reply_id == reply_id))
    return result.scalar_one_or_none()


async def find_duplicate_comment(
    session: AsyncSession,
    tenant_id: str,
    shop_id: uuid.UUID,
    user_id: uuid.UUID,
    booking_id: Optional[uuid.UUID],
) -> Optional[Comment]:
    """The user's comment on the booking, or on the shop when no booking is given."""
    if booking_id is not None:
        scope = Comment.booking_id == booking_id
    else:
        scope = Comment.shop_id == shop_id
    result = await session.execute(
        scoped_select(Comment, tenant_id).where(Comment.user_id == user_id, scope).limit(1)
    )
    return result.scalar_one_or_none()


def _ensure_author_or_privileged(ctx: RequestContext, comment: Comment) -> None:
    if comment.user_id != ctx.user_id and ctx.role not in PRIVILEGED_ROLES:
        raise ForbiddenError("You can only change your own comments")


# ────────────────────────────────────────────────────────────────
# Operations
# ────────────────────────────────────────────────────────────────

async def create_comment(
    session: AsyncSession,
    tenant_id: str,
    payload: CommentCreateRequest,
    user_id: uuid.UUID,
    booking_scope: bool = True,
) -> Comment:
    """
    Persist a new comment after the dedupe checks.

    A supplied booking must belong to the user and the shop. With
    ``booking_scope`` off (comment table without a booking column) the booking
    reference is then dropped and dedupe is per shop.
    """
    await get_shop_or_404(session, payload.shop_id, tenant_id)

    if payload.booking_id is not None:
        booking = await require_owned(session, Booking, payload.booking_id, tenant_id)
        if not booking or booking.customer_id != user_id or booking.shop_id != payload.shop_id:
            raise ValidationError(
                "Booking does not belong to this user and shop",
                {"bookingId": str(payload.booking_id)},
            )

    booking_id = payload.booking_id if booking_scope else None
    existing = await find_duplicate_comment(session, tenant_id, payload.shop_id, user_id, booking_id)
    target = "booking" if booking_id else "shop"
    if existing:
        raise DuplicateError(f"You have already commented on this {target}", {"commentId": str(existing.id)})

    comment = Comment(
        tenant_id=tenant_id,
        shop_id=payload.shop_id,
        user_id=user_id,
        booking_id=booking_id,
        rating=payload.rating,
        description=payload.description,
    )
    session.add(comment)
    try:
        await session.commit()
    except IntegrityError:
        # Concurrent post got there first
        await session.rollback()
        logger.info(f"Duplicate comment by {user_id} on {target} rejected by the database")
        raise DuplicateError(f"You have already commented on this {target}")
    logger.info(f"Comment {comment.id} created on shop {comment.shop_id} by {user_id}")
    return comment


async def upsert_reply(
    session: AsyncSession,
    comment: Comment,
    text: str,
    author_id: uuid.UUID,
) -> tuple[CommentReply, ReplyModeration, bool]:
    """Create the reply or edit it. Returns (reply, moderation, created)."""
    reply = await get_reply_for_comment(session, comment.id, for_update=True)
    if reply is None:
        reply, moderation = new_reply(comment.id, author_id, text)
        session.add(reply)
        await session.flush()
        session.add(moderation)
        await session.commit()
        logger.info(f"Reply {reply.id} created on comment {comment.id}")
        return reply, moderation, True

    moderation = await get_moderation(session, reply.id)
    history, moderation = edit_reply(reply, moderation, text, author_id)
    session.add(history)
    session.add(moderation)
    await session.commit()
    logger.info(f"Reply {reply.id} edited by {author_id}; moderation reset to pending")
    return reply, moderation, False


# ────────────────────────────────────────────────────────────────
# Router
# ────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/comments", tags=["comments"])


@router.get("")
async def list_comments(
    shop_id: Optional[uuid.UUID] = Query(None, alias="shopId"),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    stmt = scoped_select(Comment, tenant_id)
    if shop_id:
        stmt = stmt.where(Comment.shop_id == shop_id)
    result = await session.execute(stmt.order_by(Comment.created_at.desc()))
    return success_response([comment_to_dict(c) for c in result.scalars().all()])


@router.post("", status_code=201)
async def create_comment_endpoint(
    payload: CommentCreateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
):
    comment = await create_comment(
        session, tenant_id, payload, ctx.user_id, booking_scope=settings.comment_booking_scope
    )
    return success_response(comment_to_dict(comment))


# Registered before /{comment_id} routes so "replies" is never parsed as an id
@router.post("/replies/{reply_id}/moderate")
async def moderate_reply(
    reply_id: uuid.UUID,
    payload: ModerateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    ensure_can_moderate(ctx.role)

    result = await session.execute(
        select(CommentReply)
        .join(Comment, Comment.id == CommentReply.comment_id)
        .where(CommentReply.id == reply_id, tenant_filter(Comment, tenant_id))
    )
    reply = result.scalar_one_or_none()
    if not reply:
        raise NotFoundError("Reply not found", {"replyId": str(reply_id)})

    moderation = moderate(
        reply.id, await get_moderation(session, reply.id), payload.status, payload.reason, ctx.user_id
    )
    session.add(moderation)
    await session.commit()
    logger.info(f"Reply {reply.id} moderated to {payload.status.value} by {ctx.user_id}")
    return success_response(moderation_to_dict(moderation))


@router.get("/{comment_id}")
async def get_comment(
    comment_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    comment = await get_comment_or_404(session, comment_id, tenant_id)
    return success_response(comment_to_dict(comment))


@router.patch("/{comment_id}")
async def update_comment(
    comment_id: uuid.UUID,
    payload: CommentUpdateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    comment = await get_comment_or_404(session, comment_id, tenant_id)
    _ensure_author_or_privileged(ctx, comment)

    if payload.rating is not None:
        comment.rating = payload.rating
    if payload.description is not None:
        comment.description = payload.description
    await session.commit()
    return success_response(comment_to_dict(comment))


@router.delete("/{comment_id}")
async def delete_comment(
    comment_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    comment = await get_comment_or_404(session, comment_id, tenant_id)
    _ensure_author_or_privileged(ctx, comment)

    await session.delete(comment)
    await session.commit()
    logger.info(f"Comment {comment_id} deleted by {ctx.user_id}")
    return success_response({"ok": True})


@router.post("/{comment_id}/reply")
async def reply_to_comment(
    comment_id: uuid.UUID,
    payload: ReplyRequest,
    response: Response,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
):
    ensure_can_reply(ctx.role, settings.reply_author_roles_list)
    comment = await get_comment_or_404(session, comment_id, tenant_id)

    reply, moderation, created = await upsert_reply(session, comment, payload.text, ctx.user_id)
    if created:
        response.status_code = 201
    return success_response({**reply_to_dict(reply), "status": moderation.status.value})


@router.get("/{comment_id}/reply")
async def get_reply(
    comment_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_comment_or_404(session, comment_id, tenant_id)
    reply = await get_reply_for_comment(session, comment_id)
    if reply is None:
        return success_response(None)

    status = effective_status(await get_moderation(session, reply.id))
    if not is_visible(status, ctx.role):
        return success_response(None)
    if sees_all_states(ctx.role):
        return success_response({**reply_to_dict(reply), "status": status.value})
    return success_response(reply_to_dict(reply))


@router.get("/{comment_id}/reply/history")
async def get_reply_history(
    comment_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    ensure_can_read_history(ctx.role)
    await get_comment_or_404(session, comment_id, tenant_id)

    result = await session.execute(
        select(ReplyHistory)
        .where(ReplyHistory.comment_id == comment_id)
        .order_by(ReplyHistory.created_at.desc())
    )
    return success_response([history_to_dict(h) for h in result.scalars().all()])
