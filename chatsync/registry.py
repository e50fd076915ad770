"""
Room registry: which room codes exist.
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatsync import utils
from chatsync.errors import EmptyRoomCode, RoomAlreadyExists, RoomCodeTooLong
from chatsync.models import Room

logger = logging.getLogger(__name__)

ROOM_CODE_MAX_LENGTH = 30


def normalize_room_code(code: str) -> str:
    """
    Trim a room code and check its length.

    Raises:
        EmptyRoomCode: nothing left after trimming
        RoomCodeTooLong: more than 30 characters after trimming
    """
    normalized = (code or "").strip()
    if not normalized:
        raise EmptyRoomCode()
    if len(normalized) > ROOM_CODE_MAX_LENGTH:
        raise RoomCodeTooLong()
    return normalized


def create_room(db: Session, code: str) -> str:
    """
    Register a new room.

    Returns:
        The normalized room code

    Raises:
        EmptyRoomCode / RoomCodeTooLong: invalid code, nothing is written
        RoomAlreadyExists: the code is taken (first writer wins)
    """
    code = normalize_room_code(code)
    logger.info(f"Creating room: {code}")

    now = utils.now_ns()
    db.add(Room(code=code, created_at=now, last_activity_at=now))
    try:
        db.commit()
    except IntegrityError:
        # Primary key collision - another caller created it first
        db.rollback()
        logger.info(f"Room already exists: {code}")
        raise RoomAlreadyExists()

    logger.info(f"Room created: {code}")
    return code


def room_exists(db: Session, code: str) -> bool:
    """Pure query. Malformed codes are reported as absent."""
    try:
        code = normalize_room_code(code)
    except (EmptyRoomCode, RoomCodeTooLong):
        return False
    exists = db.get(Room, code) is not None
    logger.debug(f"Room {code} exists: {exists}")
    return exists
