"""
Client-side message cache and the pure functions that reconcile it.

The cache is an immutable tuple of CachedMessage entries. Confirmed
entries come from the server and carry positive ids; provisional
(optimistic) entries carry negative temporary ids and a nonce. Every
function here returns a new tuple, so a snapshot is just a reference.
"""

from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from chatsync.schemas import MessageView


@dataclass(frozen=True)
class Reaction:
    user_id: str
    emoji: str


@dataclass(frozen=True)
class CachedMessage:
    id: int
    content: str
    timestamp: int
    nickname: str
    owner: str
    reply_to_id: Optional[int] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    is_edited: bool = False
    reactions: tuple[Reaction, ...] = field(default_factory=tuple)
    nonce: Optional[str] = None
    is_optimistic: bool = False

    @classmethod
    def from_view(cls, view: MessageView) -> "CachedMessage":
        return cls(
            id=view.id,
            content=view.content,
            timestamp=view.timestamp,
            nickname=view.nickname,
            owner=view.owner,
            reply_to_id=view.reply_to_id,
            image_url=view.image_url,
            video_url=view.video_url,
            audio_url=view.audio_url,
            is_edited=view.is_edited,
            reactions=tuple(Reaction(r.user_id, r.emoji) for r in view.reactions),
            nonce=view.nonce,
        )

    def has_reaction(self, user_id: str, emoji: str) -> bool:
        return Reaction(user_id, emoji) in self.reactions


Cache = tuple[CachedMessage, ...]


def sort_key(message: CachedMessage) -> tuple:
    # Confirmed: ascending id, then timestamp. Provisional entries trail
    # every confirmed one in the order they were created (ids -1, -2, ...).
    if message.is_optimistic:
        return (1, message.timestamp, -message.id)
    return (0, message.id, message.timestamp)


def ordered(messages: Iterable[CachedMessage]) -> Cache:
    return tuple(sorted(messages, key=sort_key))


def last_confirmed_id(cache: Cache) -> int:
    """Highest server id in the cache, 0 when nothing is confirmed yet."""
    return max((m.id for m in cache if not m.is_optimistic), default=0)


def find(cache: Cache, message_id: int) -> Optional[CachedMessage]:
    for message in cache:
        if message.id == message_id:
            return message
    return None


def merge_incremental(cache: Cache, incoming: Iterable[CachedMessage]) -> Cache:
    """
    Add strictly new confirmed entries (dedup by id).

    Entries already cached are kept as they are: an incremental fetch never
    rewrites what the cache holds. Provisional entries whose nonce arrived
    from the server are dropped in favour of the confirmed copy.
    """
    known_ids = {m.id for m in cache if not m.is_optimistic}
    fresh: dict[int, CachedMessage] = {}
    for message in incoming:
        if message.id not in known_ids:
            fresh[message.id] = message
    if not fresh:
        return cache

    arrived_nonces = {m.nonce for m in fresh.values() if m.nonce}
    kept = [m for m in cache if not (m.is_optimistic and m.nonce in arrived_nonces)]
    return ordered([*kept, *fresh.values()])


def merge_full(cache: Cache, snapshot: Iterable[CachedMessage]) -> Cache:
    """
    Replace every confirmed entry with the server snapshot.

    Deleted or expired messages disappear, edits and reactions are taken
    from the server. Provisional entries survive unless their nonce is in
    the snapshot.
    """
    confirmed = {m.id: m for m in snapshot}
    arrived_nonces = {m.nonce for m in confirmed.values() if m.nonce}
    pending = [m for m in cache if m.is_optimistic and m.nonce not in arrived_nonces]
    return ordered([*confirmed.values(), *pending])


def confirm_send(cache: Cache, nonce: str, confirmed_id: int) -> Cache:
    """
    Swap the provisional entry for `nonce` with a confirmed one.

    If a confirmed entry with `confirmed_id` is already cached (polling got
    there first) the provisional entry is simply dropped; a confirmed entry
    is never overwritten.
    """
    provisional = next((m for m in cache if m.is_optimistic and m.nonce == nonce), None)
    if provisional is None:
        return cache
    rest = [m for m in cache if m is not provisional]
    if any(m.id == confirmed_id and not m.is_optimistic for m in rest):
        return tuple(rest)
    return ordered([*rest, replace(provisional, id=confirmed_id, is_optimistic=False)])


def discard_provisional(cache: Cache, nonce: str) -> Cache:
    return tuple(m for m in cache if not (m.is_optimistic and m.nonce == nonce))


def upsert(cache: Cache, message: CachedMessage) -> Cache:
    """Put `message` back (replacing any entry with the same id)."""
    rest = [m for m in cache if m.id != message.id]
    return ordered([*rest, message])


def remove(cache: Cache, message_id: int) -> Cache:
    return tuple(m for m in cache if m.id != message_id)


def update(cache: Cache, message_id: int, **changes) -> Cache:
    return tuple(replace(m, **changes) if m.id == message_id else m for m in cache)


def with_reaction(message: CachedMessage, user_id: str, emoji: str) -> CachedMessage:
    if message.has_reaction(user_id, emoji):
        return message
    return replace(message, reactions=(*message.reactions, Reaction(user_id, emoji)))


def without_reaction(message: CachedMessage, user_id: str, emoji: str) -> CachedMessage:
    target = Reaction(user_id, emoji)
    return replace(message, reactions=tuple(r for r in message.reactions if r != target))
