"""
Per-room sync engine for chat clients.

RoomSync keeps a local message cache consistent with the server under
polling, optimistic mutations and flaky networks:

- Cold start loads the full room snapshot, then polling fetches only
  messages newer than the last confirmed id.
- A periodic full resync (and the first poll after any mutation) picks up
  edits, deletions, reactions and expiry that incremental fetches cannot see.
- Every mutation is applied to the cache first, sent with bounded retries,
  and rolled back at the level of the affected entry if it fails.
- Polling is paused while a mutation is in flight and any refresh already
  on the wire is cancelled, so stale server data never clobbers an
  optimistic change.
"""

import asyncio
import contextlib
import itertools
import logging
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from chatsync import utils
from chatsync.cache import (
    Cache,
    CachedMessage,
    confirm_send,
    discard_provisional,
    find,
    last_confirmed_id,
    merge_full,
    merge_incremental,
    ordered,
    remove,
    upsert,
    with_reaction,
    without_reaction,
)
from chatsync.config import SyncSettings
from chatsync.errors import (
    ChatError,
    ErrorKind,
    MessageNotConfirmed,
    MutationRejected,
    OperationCancelled,
    RoomNotFound,
    RoomVerificationFailed,
    log_operation_error,
    sanitize_error,
)
from chatsync.retry import retry_with_backoff
from chatsync.schemas import MessageView

logger = logging.getLogger(__name__)

EDIT_REJECTED = "Failed to edit message. Please try again."
DELETE_REJECTED = "Failed to delete message. Please try again."
REACTION_REJECTED = "Failed to update reaction. Please try again."


class ChatApi(Protocol):
    """The server operations RoomSync needs. ChatApiClient implements it."""

    async def create_room(self, code: str) -> str: ...

    async def room_exists(self, code: str) -> bool: ...

    async def get_messages(self, room_code: str) -> list[MessageView]: ...

    async def fetch_messages_after_id(self, room_code: str, last_id: int) -> list[MessageView]: ...

    async def send_message(
        self,
        room_code: str,
        content: str,
        nickname: str,
        owner_id: str,
        reply_to_id: Optional[int] = None,
        image: Optional[str] = None,
        video: Optional[str] = None,
        audio: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> int: ...

    async def edit_message(
        self,
        room_code: str,
        message_id: int,
        owner_id: str,
        new_content: str,
        new_image: Optional[str] = None,
        new_video: Optional[str] = None,
        new_audio: Optional[str] = None,
    ) -> bool: ...

    async def delete_message(self, room_code: str, message_id: int, owner_id: str) -> bool: ...

    async def add_reaction(self, room_code: str, message_id: int, user_id: str, emoji: str) -> bool: ...

    async def remove_reaction(self, room_code: str, message_id: int, user_id: str, emoji: str) -> bool: ...


class SyncState(str, Enum):
    COLD = "cold"
    LOADING = "loading"
    SYNCED = "synced"
    STOPPED = "stopped"


class SyncError(Exception):
    """
    A failed user-facing operation.

    str(error) and public_message are always sanitized; the underlying
    ChatError (or unexpected exception) is kept in `cause` for callers that
    need to branch on its kind.
    """

    def __init__(self, operation: str, cause: BaseException):
        self.operation = operation
        self.cause = cause
        self.public_message = sanitize_error(cause)
        super().__init__(self.public_message)

    @property
    def kind(self) -> ErrorKind:
        if isinstance(self.cause, ChatError):
            return self.cause.kind
        return ErrorKind.UNEXPECTED


def _fail(operation: str, error: BaseException, **context: Any) -> SyncError:
    log_operation_error(operation, context, error)
    return SyncError(operation, error)


class RoomSync:
    """
    Local view of one room, kept in sync with the server.

    Args:
        api: Server client (ChatApiClient or anything shaped like ChatApi)
        room_code: Room to follow; surrounding whitespace is ignored
        user_id: Opaque session id used as owner and reaction user
        settings: Poll and retry tuning, defaults to SyncSettings()
        on_change: Called with the new cache after every change
        sleep: Awaitable sleep used for poll waits and retry backoff
    """

    def __init__(
        self,
        api: ChatApi,
        room_code: str,
        user_id: str,
        settings: Optional[SyncSettings] = None,
        on_change: Optional[Callable[[Cache], None]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.api = api
        self.room_code = room_code.strip()
        self.user_id = user_id
        self.settings = settings or SyncSettings()
        self._on_change = on_change
        self._sleep = sleep or asyncio.sleep

        self._cache: Cache = ()
        self._state = SyncState.COLD
        self._closed = False

        # nonce -> temporary id of each send still awaiting confirmation
        self._pending: dict[str, int] = {}
        self._temp_ids = itertools.count(1)

        self._visible = asyncio.Event()
        self._visible.set()
        self._settled = asyncio.Event()
        self._settled.set()
        self._in_flight = 0
        self._needs_full_refresh = False
        self._polls_since_full = 0

        self._poll_task: Optional[asyncio.Task] = None
        self._refresh_tasks: set[asyncio.Task] = set()
        self._call_tasks: set[asyncio.Task] = set()

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def messages(self) -> Cache:
        return self._cache

    @property
    def pending_nonces(self) -> frozenset[str]:
        return frozenset(self._pending)

    @property
    def mutations_in_flight(self) -> int:
        return self._in_flight

    def find(self, message_id: int) -> Optional[CachedMessage]:
        return find(self._cache, message_id)

    def _set_cache(self, cache: Cache) -> None:
        if cache is self._cache:
            return
        self._cache = cache
        if self._on_change is not None:
            self._on_change(cache)

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise SyncError(operation, OperationCancelled())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Launch the poll loop. The first iteration performs the cold load."""
        self._ensure_open("start")
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
            logger.info(f"[Sync] Following room {self.room_code}")

    def set_visible(self, visible: bool) -> None:
        """Polling runs only while the room is visible."""
        if visible:
            self._visible.set()
        else:
            self._visible.clear()

    async def close(self) -> None:
        """
        Leave the room: stop polling and cancel every pending refresh and
        mutation call. Cancelled mutations roll back their optimistic change
        and fail with OperationCancelled.
        """
        if self._closed:
            return
        self._closed = True
        self._state = SyncState.STOPPED

        tasks = [t for t in (self._poll_task, *self._refresh_tasks, *self._call_tasks) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        logger.info(f"[Sync] Left room {self.room_code}")

    async def __aenter__(self) -> "RoomSync":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _stop(self, reason: str) -> None:
        self._state = SyncState.STOPPED
        logger.info(f"[Sync] Stopped polling room {self.room_code}: {reason}")

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, full: bool = False) -> bool:
        """
        Run one refresh cycle now.

        Waits for in-flight mutations to settle first. A full refresh is
        forced on cold start, after a mutation, and every
        `full_resync_every` polls.

        Returns:
            True if server data was merged, False if the refresh was
            superseded by a mutation or the sync is stopped

        Raises:
            ChatError: The fetch failed (RoomNotFound also stops the sync)
        """
        while not self._settled.is_set():
            await self._settled.wait()
        if self._state is SyncState.STOPPED:
            return False

        task = asyncio.create_task(self._refresh(full))
        self._refresh_tasks.add(task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._refresh_tasks.discard(task)

        if task.cancelled():
            logger.debug(f"[Sync] Refresh of {self.room_code} superseded by a mutation")
            return False
        task.result()
        return True

    async def _refresh(self, full: bool) -> None:
        full = (
            full
            or self._state is not SyncState.SYNCED
            or self._needs_full_refresh
            or self._polls_since_full >= self.settings.full_resync_every
        )
        if self._state is SyncState.COLD:
            self._state = SyncState.LOADING

        try:
            if full:
                # Cleared up front; a failed or cancelled fetch sets it again
                self._needs_full_refresh = False
                views = await self.api.get_messages(self.room_code)
            else:
                since = last_confirmed_id(self._cache)
                views = await self.api.fetch_messages_after_id(self.room_code, since)
        except RoomNotFound:
            self._stop("room no longer exists")
            raise
        except (Exception, asyncio.CancelledError):
            if full:
                self._needs_full_refresh = True
            raise

        incoming = [CachedMessage.from_view(v) for v in views]
        if full:
            self._polls_since_full = 0
            self._set_cache(merge_full(self._cache, incoming))
        else:
            self._polls_since_full += 1
            self._set_cache(merge_incremental(self._cache, incoming))
        self._state = SyncState.SYNCED
        logger.debug(
            f"[Sync] {'Full' if full else 'Incremental'} refresh of {self.room_code}: "
            f"fetched={len(incoming)}, cached={len(self._cache)}"
        )

    async def _poll_loop(self) -> None:
        interval = self.settings.poll_interval
        failures = 0
        try:
            while self._state is not SyncState.STOPPED:
                await self._visible.wait()
                try:
                    await self.refresh()
                    failures = 0
                except RoomNotFound:
                    break
                except ChatError as e:
                    if not e.retryable:
                        log_operation_error("poll", {"room_code": self.room_code}, e)
                        self._stop(e.kind.value)
                        break
                    failures += 1
                    logger.warning(f"[Sync] Poll of {self.room_code} failed ({failures} in a row)")
                except Exception as e:
                    failures += 1
                    log_operation_error("poll", {"room_code": self.room_code, "failures": failures}, e)

                delay = interval if failures == 0 else min(interval * 2 ** failures, self.settings.max_poll_backoff)
                await self._sleep(delay)
        except asyncio.CancelledError:
            return

    # =========================================================================
    # Mutations
    # =========================================================================

    @contextlib.asynccontextmanager
    async def _mutation(self, operation: str):
        self._ensure_open(operation)
        self._in_flight += 1
        self._settled.clear()
        # All of them: a poll and a jump-to-reply lookup can overlap
        for task in self._refresh_tasks:
            task.cancel()
        try:
            yield
        finally:
            self._in_flight -= 1
            self._needs_full_refresh = True
            if self._in_flight == 0:
                self._settled.set()

    async def _call(self, operation: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        task = asyncio.create_task(
            retry_with_backoff(
                fn,
                max_attempts=self.settings.max_attempts,
                initial_delay=self.settings.initial_delay,
                max_delay=self.settings.max_delay,
                operation=operation,
                sleep=self._sleep,
            )
        )
        self._call_tasks.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._closed and task.cancelled():
                raise OperationCancelled()
            task.cancel()
            raise
        finally:
            self._call_tasks.discard(task)

    async def send(
        self,
        content: str,
        nickname: str,
        reply_to_id: Optional[int] = None,
        image: Optional[str] = None,
        video: Optional[str] = None,
        audio: Optional[str] = None,
    ) -> int:
        """
        Send a message optimistically.

        A provisional entry (negative id) appears in the cache at once and
        is swapped for the confirmed one when the server answers. The same
        nonce is reused on every retry so the server stores it only once.

        Returns:
            The confirmed message id

        Raises:
            SyncError: The send failed; the provisional entry is gone
        """
        async with self._mutation("send"):
            nonce = utils.generate_message_nonce()
            temp_id = -next(self._temp_ids)
            shown = content
            if image or video or audio:
                shown = utils.media_placeholder(content, video, audio)
            provisional = CachedMessage(
                id=temp_id,
                content=shown,
                timestamp=utils.now_ns(),
                nickname=nickname.strip(),
                owner=self.user_id,
                reply_to_id=reply_to_id,
                image_url=image,
                video_url=video,
                audio_url=audio,
                nonce=nonce,
                is_optimistic=True,
            )
            self._pending[nonce] = temp_id
            self._set_cache(ordered([*self._cache, provisional]))

            try:
                message_id = await self._call(
                    "send",
                    lambda: self.api.send_message(
                        self.room_code,
                        content=content,
                        nickname=nickname,
                        owner_id=self.user_id,
                        reply_to_id=reply_to_id,
                        image=image,
                        video=video,
                        audio=audio,
                        nonce=nonce,
                    ),
                )
            except asyncio.CancelledError:
                self._set_cache(discard_provisional(self._cache, nonce))
                raise
            except Exception as e:
                self._set_cache(discard_provisional(self._cache, nonce))
                raise _fail("send", e, room_code=self.room_code, temp_id=temp_id) from e
            finally:
                self._pending.pop(nonce, None)

            self._set_cache(confirm_send(self._cache, nonce, message_id))
            logger.debug(f"[Sync] Send confirmed in {self.room_code}: {temp_id} -> {message_id}")
            return message_id

    async def _apply(
        self,
        operation: str,
        message_id: int,
        local: Optional[Callable[[CachedMessage], Cache]],
        fn: Callable[[], Awaitable[bool]],
        rejected_message: str,
    ) -> None:
        """
        Shared optimistic flow for edit, delete and reactions.

        Only the affected entry is snapshotted, and it is restored only while
        the cache still holds what this mutation put there. A rollback never
        undoes concurrent changes to other entries, nor a later mutation of
        the same entry.
        """
        async with self._mutation(operation):
            before = find(self._cache, message_id)
            if before is not None and before.is_optimistic:
                raise _fail(operation, MessageNotConfirmed(), room_code=self.room_code, message_id=message_id)
            if before is not None and local is not None:
                self._set_cache(local(before))
            applied = find(self._cache, message_id)

            try:
                ok = await self._call(operation, fn)
                if not ok:
                    raise MutationRejected(rejected_message)
            except asyncio.CancelledError:
                self._restore(message_id, before, applied)
                raise
            except Exception as e:
                self._restore(message_id, before, applied)
                raise _fail(operation, e, room_code=self.room_code, message_id=message_id) from e

    def _restore(
        self, message_id: int, before: Optional[CachedMessage], applied: Optional[CachedMessage]
    ) -> None:
        if find(self._cache, message_id) is not applied:
            # Superseded by a later mutation; the next full refresh reconciles
            logger.debug(f"[Sync] Skipped rollback of {message_id} in {self.room_code}, entry has moved on")
            return
        if before is None:
            self._set_cache(remove(self._cache, message_id))
        else:
            self._set_cache(upsert(self._cache, before))

    async def edit(
        self,
        message_id: int,
        new_content: str,
        new_image: Optional[str] = None,
        new_video: Optional[str] = None,
        new_audio: Optional[str] = None,
    ) -> None:
        """Edit one of our messages. Media left as None keeps the current ref."""

        def local(message: CachedMessage) -> Cache:
            edited = replace(
                message,
                is_edited=True,
                image_url=new_image if new_image is not None else message.image_url,
                video_url=new_video if new_video is not None else message.video_url,
                audio_url=new_audio if new_audio is not None else message.audio_url,
            )
            content = new_content
            if edited.image_url or edited.video_url or edited.audio_url:
                content = utils.media_placeholder(new_content, edited.video_url, edited.audio_url)
            edited = replace(edited, content=content)
            return upsert(self._cache, edited)

        await self._apply(
            "edit",
            message_id,
            local,
            lambda: self.api.edit_message(
                self.room_code,
                message_id,
                owner_id=self.user_id,
                new_content=new_content,
                new_image=new_image,
                new_video=new_video,
                new_audio=new_audio,
            ),
            EDIT_REJECTED,
        )

    async def delete(self, message_id: int) -> None:
        await self._apply(
            "delete",
            message_id,
            lambda message: remove(self._cache, message.id),
            lambda: self.api.delete_message(self.room_code, message_id, owner_id=self.user_id),
            DELETE_REJECTED,
        )

    async def add_reaction(self, message_id: int, emoji: str) -> None:
        await self._apply(
            "add_reaction",
            message_id,
            lambda message: upsert(self._cache, with_reaction(message, self.user_id, emoji)),
            lambda: self.api.add_reaction(self.room_code, message_id, self.user_id, emoji),
            REACTION_REJECTED,
        )

    async def remove_reaction(self, message_id: int, emoji: str) -> None:
        await self._apply(
            "remove_reaction",
            message_id,
            lambda message: upsert(self._cache, without_reaction(message, self.user_id, emoji)),
            lambda: self.api.remove_reaction(self.room_code, message_id, self.user_id, emoji),
            REACTION_REJECTED,
        )

    async def toggle_reaction(self, message_id: int, emoji: str) -> bool:
        """Flip our reaction. Returns True if it is now present."""
        message = find(self._cache, message_id)
        if message is not None and message.has_reaction(self.user_id, emoji):
            await self.remove_reaction(message_id, emoji)
            return False
        await self.add_reaction(message_id, emoji)
        return True

    # =========================================================================
    # Navigation
    # =========================================================================

    async def locate_message(self, message_id: int) -> Optional[CachedMessage]:
        """
        Find a message for jump-to-reply.

        A cache miss forces exactly one full refresh. None means the
        original is unavailable (deleted or expired).
        """
        message = find(self._cache, message_id)
        if message is not None:
            return message

        try:
            await self.refresh(full=True)
        except ChatError as e:
            log_operation_error("locate_message", {"room_code": self.room_code, "message_id": message_id}, e)
            return None

        message = find(self._cache, message_id)
        if message is None:
            logger.info(f"[Sync] Message {message_id} unavailable in {self.room_code}")
        return message


# =============================================================================
# Room entry points
# =============================================================================

async def create_room(api: ChatApi, code: str) -> str:
    """
    Create a room and verify it is visible before reporting success.

    Not retried: a retry after a lost response would collide with our own
    room and surface as RoomAlreadyExists.

    Raises:
        SyncError: Validation, conflict, network or verification failure
    """
    code = code.strip()
    try:
        created = await api.create_room(code)
        if not await api.room_exists(created):
            raise RoomVerificationFailed()
    except ChatError as e:
        raise _fail("create_room", e, room_code=code) from e
    logger.info(f"[Sync] Created room {created}")
    return created


async def join_room(
    api: ChatApi,
    code: str,
    user_id: str,
    settings: Optional[SyncSettings] = None,
    **kwargs: Any,
) -> RoomSync:
    """
    Check the room exists and start following it.

    Raises:
        SyncError: RoomNotFound when the code is unknown, or the
            sanitized failure of the existence check
    """
    settings = settings or SyncSettings()
    code = code.strip()
    try:
        exists = await retry_with_backoff(
            lambda: api.room_exists(code),
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay,
            max_delay=settings.max_delay,
            operation="join_room",
            sleep=kwargs.get("sleep"),
        )
        if not exists:
            raise RoomNotFound()
    except ChatError as e:
        raise _fail("join_room", e, room_code=code) from e

    sync = RoomSync(api, code, user_id, settings=settings, **kwargs)
    await sync.start()
    return sync
