"""
Message store: the authoritative per-room message log.

Owns id allocation (the messages table's AUTOINCREMENT key), nonce
deduplication, ownership-gated edit/delete and reaction bookkeeping.
Every public function runs in the caller's session and commits at most
once, so readers only ever see whole messages.

Expired messages (older than MESSAGE_TTL_SECONDS) are filtered at read
time; physically removing them is the reaper's job.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from chatsync import utils
from chatsync.config import settings
from chatsync.errors import (
    ContentTooLong,
    EmptyMessage,
    InvalidNickname,
    NonceConflict,
    RoomNotFound,
    ValidationError,
)
from chatsync.models import Message, Reaction, Room
from chatsync.registry import normalize_room_code
from chatsync.schemas import MessageView, ReactionView

logger = logging.getLogger(__name__)

NICKNAME_MAX_LENGTH = 20
CONTENT_MAX_LENGTH = 4096


@dataclass(frozen=True)
class SendResult:
    id: int
    duplicate: bool


def get_message_ttl() -> timedelta:
    """Configured retention window."""
    return timedelta(seconds=settings.MESSAGE_TTL_SECONDS)


def expiry_cutoff_ns(now: Optional[int] = None) -> int:
    """Messages created before this instant are expired."""
    if now is None:
        now = utils.now_ns()
    return now - utils.seconds_to_ns(settings.MESSAGE_TTL_SECONDS)


# =============================================================================
# Validation
# =============================================================================

def _validate_nickname(nickname: str) -> str:
    nickname = (nickname or "").strip()
    if not nickname or len(nickname) > NICKNAME_MAX_LENGTH:
        raise InvalidNickname()
    return nickname


def _validate_content(content: str, *media: Optional[str]) -> None:
    if not content.strip() and not any(media):
        raise EmptyMessage()
    if len(content) > CONTENT_MAX_LENGTH:
        raise ContentTooLong()


# =============================================================================
# Queries
# =============================================================================

def _live_query(db: Session, room_code: str, now: Optional[int] = None):
    # One SELECT with reactions joined in: a read is a single snapshot
    return (
        db.query(Message)
        .options(joinedload(Message.reactions))
        .filter(Message.room_code == room_code)
        .filter(Message.created_at >= expiry_cutoff_ns(now))
    )


def _get_live_message(db: Session, room_code: str, message_id: int) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.id == message_id)
        .filter(Message.room_code == room_code)
        .filter(Message.created_at >= expiry_cutoff_ns())
        .first()
    )


def _find_by_nonce(db: Session, room_code: str, nonce: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.room_code == room_code, Message.nonce == nonce)
        .first()
    )


def get_messages(db: Session, room_code: str) -> list[Message]:
    """
    All non-expired messages of a room in ascending id order.
    An unknown or malformed room yields an empty list.
    """
    try:
        room_code = normalize_room_code(room_code)
    except ValidationError:
        return []
    messages = _live_query(db, room_code).order_by(Message.id.asc()).all()
    logger.debug(f"Room {room_code}: {len(messages)} live messages")
    return messages


def fetch_messages_after_id(db: Session, room_code: str, last_id: int) -> list[Message]:
    """Non-expired messages with id > last_id, ascending."""
    try:
        room_code = normalize_room_code(room_code)
    except ValidationError:
        return []
    messages = (
        _live_query(db, room_code)
        .filter(Message.id > last_id)
        .order_by(Message.id.asc())
        .all()
    )
    logger.debug(f"Room {room_code}: {len(messages)} messages after id {last_id}")
    return messages


# =============================================================================
# Mutations
# =============================================================================

def _replay(existing: Message, owner_id: str, content: str) -> SendResult:
    if existing.owner_id != owner_id or existing.content != content:
        logger.warning(f"Nonce reused with a different payload: room={existing.room_code}")
        raise NonceConflict()
    logger.info(f"Duplicate send detected: room={existing.room_code}, id={existing.id}")
    return SendResult(id=existing.id, duplicate=True)


def send_message(
    db: Session,
    room_code: str,
    content: str,
    nickname: str,
    owner_id: str,
    reply_to_id: Optional[int] = None,
    image: Optional[str] = None,
    video: Optional[str] = None,
    audio: Optional[str] = None,
    nonce: Optional[str] = None,
) -> SendResult:
    """
    Append a message to a room (idempotent per nonce).

    Returns:
        SendResult with the message id; duplicate=True when the nonce was
        already used by the same owner with the same content

    Raises:
        RoomNotFound: the room does not exist
        InvalidNickname / EmptyMessage / ContentTooLong: rejected, nothing written
        NonceConflict: the nonce belongs to a different message
    """
    room_code = normalize_room_code(room_code)
    nickname = _validate_nickname(nickname)
    content = content or ""
    _validate_content(content, image, video, audio)
    content = utils.media_placeholder(content, video, audio)

    room = db.get(Room, room_code)
    if room is None:
        logger.info(f"Send rejected, room not found: {room_code}")
        raise RoomNotFound()

    if nonce:
        existing = _find_by_nonce(db, room_code, nonce)
        if existing is not None:
            return _replay(existing, owner_id, content)

    now = utils.now_ns()
    message = Message(
        room_code=room_code,
        content=content,
        nickname=nickname,
        owner_id=owner_id,
        created_at=now,
        is_edited=False,
        reply_to_id=reply_to_id,
        image_ref=image,
        video_ref=video,
        audio_ref=audio,
        nonce=nonce or None,
    )
    db.add(message)
    room.last_activity_at = now

    try:
        db.commit()
    except IntegrityError:
        # Lost a race against an identical retry; the winner's row is the answer
        db.rollback()
        existing = _find_by_nonce(db, room_code, nonce) if nonce else None
        if existing is None:
            raise
        return _replay(existing, owner_id, content)

    logger.info(f"Message stored: room={room_code}, id={message.id}")
    return SendResult(id=message.id, duplicate=False)


def edit_message(
    db: Session,
    room_code: str,
    message_id: int,
    owner_id: str,
    new_content: str,
    new_image: Optional[str] = None,
    new_video: Optional[str] = None,
    new_audio: Optional[str] = None,
) -> bool:
    """
    Replace a message's content and, where given, its media refs.

    A media argument of None keeps the current ref.

    Returns:
        False without touching anything when the message is absent, expired
        or owned by someone else; True once the edit is committed
    """
    room_code = normalize_room_code(room_code)
    message = _get_live_message(db, room_code, message_id)
    if message is None:
        logger.info(f"Edit skipped, message not found: room={room_code}, id={message_id}")
        return False
    if message.owner_id != owner_id:
        logger.info(f"Edit refused, not the owner: room={room_code}, id={message_id}")
        return False

    new_content = new_content or ""
    image = new_image if new_image is not None else message.image_ref
    video = new_video if new_video is not None else message.video_ref
    audio = new_audio if new_audio is not None else message.audio_ref
    _validate_content(new_content, image, video, audio)

    message.content = utils.media_placeholder(new_content, video, audio)
    message.image_ref = image
    message.video_ref = video
    message.audio_ref = audio
    message.is_edited = True
    db.commit()

    logger.info(f"Message edited: room={room_code}, id={message_id}")
    return True


def delete_message(db: Session, room_code: str, message_id: int, owner_id: str) -> bool:
    """Remove a message and its reactions. Same ownership contract as edit."""
    room_code = normalize_room_code(room_code)
    message = _get_live_message(db, room_code, message_id)
    if message is None:
        logger.info(f"Delete skipped, message not found: room={room_code}, id={message_id}")
        return False
    if message.owner_id != owner_id:
        logger.info(f"Delete refused, not the owner: room={room_code}, id={message_id}")
        return False

    db.query(Reaction).filter(Reaction.message_id == message.id).delete(synchronize_session=False)
    db.delete(message)
    db.commit()

    logger.info(f"Message deleted: room={room_code}, id={message_id}")
    return True


def _check_reaction_args(user_id: str, emoji: str) -> None:
    if not user_id or not emoji or not emoji.strip():
        raise ValidationError("Reaction requires a user id and an emoji")


def add_reaction(db: Session, room_code: str, message_id: int, user_id: str, emoji: str) -> bool:
    """
    Record (user_id, emoji) on a message.

    Returns:
        False if the message is absent or expired, True otherwise.
        Adding a pair that is already present changes nothing.
    """
    room_code = normalize_room_code(room_code)
    _check_reaction_args(user_id, emoji)
    message = _get_live_message(db, room_code, message_id)
    if message is None:
        logger.info(f"Reaction skipped, message not found: room={room_code}, id={message_id}")
        return False

    existing = (
        db.query(Reaction)
        .filter_by(message_id=message.id, user_id=user_id, emoji=emoji)
        .first()
    )
    if existing is not None:
        logger.debug(f"Reaction already present: room={room_code}, id={message_id}")
        return True

    db.add(Reaction(message_id=message.id, user_id=user_id, emoji=emoji))
    try:
        db.commit()
    except IntegrityError:
        # Concurrent identical add already inserted the pair
        db.rollback()
        logger.debug(f"Reaction inserted concurrently: room={room_code}, id={message_id}")

    logger.info(f"Reaction added: room={room_code}, id={message_id}")
    return True


def remove_reaction(db: Session, room_code: str, message_id: int, user_id: str, emoji: str) -> bool:
    """Drop (user_id, emoji) from a message. Removing an absent pair is a no-op."""
    room_code = normalize_room_code(room_code)
    _check_reaction_args(user_id, emoji)
    message = _get_live_message(db, room_code, message_id)
    if message is None:
        logger.info(f"Reaction removal skipped, message not found: room={room_code}, id={message_id}")
        return False

    removed = (
        db.query(Reaction)
        .filter_by(message_id=message.id, user_id=user_id, emoji=emoji)
        .delete(synchronize_session=False)
    )
    db.commit()

    logger.info(f"Reaction removed: room={room_code}, id={message_id}, removed={removed}")
    return True


# =============================================================================
# Projection
# =============================================================================

def to_message_view(message: Message) -> MessageView:
    """Wire representation of a stored message."""
    return MessageView(
        id=message.id,
        content=message.content,
        timestamp=message.created_at,
        nickname=message.nickname,
        reply_to_id=message.reply_to_id,
        image_url=message.image_ref,
        video_url=message.video_ref,
        audio_url=message.audio_ref,
        is_edited=message.is_edited,
        reactions=[ReactionView(user_id=r.user_id, emoji=r.emoji) for r in message.reactions],
        owner=message.owner_id,
        nonce=message.nonce,
    )
