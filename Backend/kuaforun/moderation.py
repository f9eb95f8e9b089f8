"""
Reply moderation state machine.

A shop reply to a comment is in one of three states: pending, approved,
rejected. New replies start pending. Any text edit pushes the reply back to
pending and records the previous text in the history table. Managers and
owners move replies between states freely.

Public readers only ever see approved replies. Staff see every state. A reply
without a moderation row predates moderation and counts as approved.
"""

import uuid
from typing import Iterable, Optional

from .core.errors import ForbiddenError
from .core.request_context import MODERATOR_ROLES, STAFF_ROLES, UserRole
from .models import CommentReply, ModerationStatus, ReplyHistory, ReplyModeration


def effective_status(moderation: Optional[ReplyModeration]) -> ModerationStatus:
    if moderation is None:
        return ModerationStatus.APPROVED
    return moderation.status


def sees_all_states(role: Optional[UserRole]) -> bool:
    return role in STAFF_ROLES


def is_visible(status: ModerationStatus, role: Optional[UserRole]) -> bool:
    return sees_all_states(role) or status == ModerationStatus.APPROVED


# ────────────────────────────────────────────────────────────────
# Permission checks
# ────────────────────────────────────────────────────────────────

def ensure_can_reply(role: Optional[UserRole], author_roles: Iterable[str]) -> None:
    if role is None or role.value not in set(author_roles):
        raise ForbiddenError("Only shop staff can reply to comments")


def ensure_can_read_history(role: Optional[UserRole]) -> None:
    if not sees_all_states(role):
        raise ForbiddenError("Reply history is only visible to shop staff")


def ensure_can_moderate(role: Optional[UserRole]) -> None:
    if role not in MODERATOR_ROLES:
        raise ForbiddenError("Only managers or owners can moderate replies")


# ────────────────────────────────────────────────────────────────
# Transitions
# ────────────────────────────────────────────────────────────────

def new_reply(
    comment_id: uuid.UUID, author_id: uuid.UUID, text: str
) -> tuple[CommentReply, ReplyModeration]:
    reply = CommentReply(id=uuid.uuid4(), comment_id=comment_id, user_id=author_id, text=text)
    moderation = ReplyModeration(reply_id=reply.id, status=ModerationStatus.PENDING)
    return reply, moderation


def edit_reply(
    reply: CommentReply,
    moderation: Optional[ReplyModeration],
    new_text: str,
    editor_id: Optional[uuid.UUID],
) -> tuple[ReplyHistory, ReplyModeration]:
    """
    Apply a text edit.

    Returns the history row holding the pre-edit text and the moderation row
    (created when missing), now pending with its reason cleared. The caller
    adds both to the session.
    """
    history = ReplyHistory(
        comment_id=reply.comment_id,
        reply_id=reply.id,
        previous_text=reply.text,
        edited_by_user_id=editor_id,
    )
    reply.text = new_text

    if moderation is None:
        moderation = ReplyModeration(reply_id=reply.id)
    moderation.status = ModerationStatus.PENDING
    moderation.reason = None
    return history, moderation


def moderate(
    reply_id: uuid.UUID,
    moderation: Optional[ReplyModeration],
    status: ModerationStatus,
    reason: Optional[str],
    moderator_id: uuid.UUID,
) -> ReplyModeration:
    if moderation is None:
        moderation = ReplyModeration(reply_id=reply_id)
    moderation.status = status
    moderation.reason = reason
    moderation.moderator_user_id = moderator_id
    return moderation
