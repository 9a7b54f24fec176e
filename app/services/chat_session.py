"""
Chat session: per-user conversation state kept in sync with the database.

A ChatSession is long-lived and owned by the app-level ChatSessionRegistry
(app.extensions["chat_sessions"]). It holds:

    - the message list of the selected conversation (immutable tuple,
      replaced only through chat_reconciler reducers under the session lock)
    - one hub subscription to chat_messages that lives as long as the session
      and survives conversation switches
    - UnreadTracker: server count + push increments + periodic reconciliation
    - PresenceTracker: online user ids from the "online-users" channel

Read failures raise ChatConnectionError and leave held messages untouched.
Send failures remove the optimistic placeholder and raise ChatDeliveryError.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Protocol

from flask import has_app_context

from app.core.exceptions import ChatConnectionError, ChatDeliveryError, ValidationError
from app.realtime.hub import DELETE, INSERT, UPDATE, ChangeEvent, PresenceChannel, RealtimeHub
from app.services import chat_service
from app.services.chat_reconciler import (
    Attachment,
    ConversationSelector,
    Message,
    append_optimistic,
    apply_delete,
    apply_insert,
    apply_update,
    counts_as_unread,
    discard,
    is_relevant,
    make_optimistic,
    mark_read,
    merge_fetched,
    unread_ids,
)

logger = logging.getLogger(__name__)

CHAT_TABLE = "chat_messages"
PRESENCE_CHANNEL = "online-users"
DEFAULT_POLL_SECONDS = 15.0


# ═══════════════════════════════════════════════════════════════════════════
#  Backend
# ═══════════════════════════════════════════════════════════════════════════


class ChatBackend(Protocol):
    def fetch_conversation(self, user_id: str, conv_type: str, conv_id: str) -> list[dict]: ...
    def send_message(self, sender_id: str, message: str, receiver_id=None, sector_id=None, attachment=None) -> dict: ...
    def mark_as_read(self, message_ids: list[str]) -> int: ...
    def fetch_unread_count(self, user_id: str, user_sector_id: str | None = None) -> int: ...


class DatabaseChatBackend:
    """chat_service behind the ChatBackend protocol.

    Calls made outside an application context (hub worker, send executor,
    poll thread) push one for the duration of the call.
    """

    def __init__(self, app):
        self.app = app

    def _call(self, fn, *args, **kwargs):
        if has_app_context():
            return fn(*args, **kwargs)
        with self.app.app_context():
            return fn(*args, **kwargs)

    def fetch_conversation(self, user_id, conv_type, conv_id):
        return self._call(chat_service.fetch_conversation, user_id, conv_type, conv_id)

    def send_message(self, sender_id, message, receiver_id=None, sector_id=None, attachment=None):
        return self._call(
            chat_service.send_message, sender_id, message,
            receiver_id=receiver_id, sector_id=sector_id, attachment=attachment,
        )

    def mark_as_read(self, message_ids):
        return self._call(chat_service.mark_as_read, message_ids)

    def fetch_unread_count(self, user_id, user_sector_id=None):
        return self._call(chat_service.fetch_unread_count, user_id, user_sector_id)


# ── Dispatch ─────────────────────────────────────────────────────────────────


def inline_dispatch(fn: Callable[[], object]):
    """Run the send immediately on the caller's thread."""
    return fn()


class ThreadDispatcher:
    """Run sends on a small worker pool; send() returns before the write lands.

    The pool is created on first use and released by shutdown(). Failed
    sends are collected from their futures and counted in `failed`.
    """

    def __init__(self, max_workers: int = 4):
        self.max_workers = max_workers
        self.failed = 0
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._executor is not None

    def __call__(self, fn: Callable[[], object]) -> Future:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="chat-send",
                )
            future = self._executor.submit(fn)
        future.add_done_callback(self._collect)
        return future

    def _collect(self, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        with self._lock:
            self.failed += 1
        if not isinstance(exc, ChatDeliveryError):
            logger.error("Chat send task crashed: %s", exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)


# ═══════════════════════════════════════════════════════════════════════════
#  Unread / presence
# ═══════════════════════════════════════════════════════════════════════════


class UnreadTracker:
    """Unread badge counter. A failed refresh keeps the last known count."""

    def __init__(self):
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    def set(self, value: int) -> None:
        with self._lock:
            self._count = max(int(value), 0)

    def increment(self, by: int = 1) -> int:
        with self._lock:
            self._count += by
            return self._count

    def refresh(self, fetch: Callable[[], int]) -> int:
        try:
            value = fetch()
        except Exception:
            logger.warning("Unread count refresh failed; keeping %d", self._count, exc_info=True)
            return self._count
        self.set(value)
        return self._count


class PeriodicTask:
    """Calls *fn* every *interval* seconds on a daemon thread (0 disables)."""

    def __init__(self, interval: float, fn: Callable[[], object], name: str = "periodic"):
        self.interval = interval
        self.fn = fn
        self.name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.interval <= 0 or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.fn()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)


class PresenceTracker:
    """Online user ids, replaced wholesale on every presence sync."""

    def __init__(self, channel: PresenceChannel, user_id: str, meta: dict | None = None):
        self.channel = channel
        self.user_id = user_id
        self.meta = meta or {}
        self._online: frozenset = frozenset()
        self._off = None

    @property
    def online_users(self) -> frozenset:
        return self._online

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def start(self) -> None:
        if self._off is not None:
            return
        self._off = self.channel.on("sync", self._on_sync)
        self._on_sync(self.channel.state())
        self.channel.track(self.user_id, self.meta)

    def stop(self) -> None:
        if self._off is None:
            return
        self.channel.untrack(self.user_id)
        self._off()
        self._off = None

    def _on_sync(self, members: dict) -> None:
        self._online = frozenset(members)


# ═══════════════════════════════════════════════════════════════════════════
#  Session
# ═══════════════════════════════════════════════════════════════════════════


class ChatSession:
    def __init__(
        self,
        user_id: str,
        backend: ChatBackend,
        hub: RealtimeHub,
        user_sector_id: str | None = None,
        dispatch: Callable | None = None,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        presence_meta: dict | None = None,
    ):
        self.user_id = user_id
        self.user_sector_id = user_sector_id
        self._backend = backend
        self._hub = hub
        self._dispatch = dispatch or inline_dispatch
        self._lock = threading.RLock()
        self._messages: tuple = ()
        self._selector: ConversationSelector | None = None
        self._generation = 0
        self._subscription = None

        self.window_open = False
        self.focused = True
        self.last_error: str | None = None

        self.unread = UnreadTracker()
        self.presence = PresenceTracker(
            hub.presence(PRESENCE_CHANNEL), user_id,
            presence_meta or {"user_id": user_id},
        )
        self._poller = PeriodicTask(poll_interval, self.refresh_unread, name=f"chat-unread-{user_id}")

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def started(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def start(self) -> "ChatSession":
        if self.started:
            return self
        self._subscription = self._hub.subscribe(CHAT_TABLE, self._on_change)
        self.presence.start()
        self.refresh_unread()
        self._poller.start()
        logger.info("Chat session started", extra={"user_id": self.user_id})
        return self

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self.presence.stop()
        self._poller.stop()
        logger.info("Chat session stopped", extra={"user_id": self.user_id})

    # ── State ────────────────────────────────────────────────────────────

    @property
    def messages(self) -> tuple:
        return self._messages

    @property
    def selector(self) -> ConversationSelector | None:
        return self._selector

    @property
    def unread_count(self) -> int:
        return self.unread.count

    def snapshot(self) -> dict:
        selector = self._selector
        return {
            "user_id": self.user_id,
            "sector_id": self.user_sector_id,
            "conversation": (
                {"type": selector.type, "id": selector.id, "name": selector.display_name}
                if selector else None
            ),
            "messages": [m.to_dict() for m in self._messages],
            "unread_count": self.unread.count,
            "online_users": sorted(self.presence.online_users),
            "window_open": self.window_open,
            "focused": self.focused,
            "last_error": self.last_error,
        }

    # ── Window ───────────────────────────────────────────────────────────

    def open_window(self) -> None:
        self.window_open = True
        self.refresh_unread()

    def close_window(self) -> None:
        self.window_open = False

    def set_focus(self, focused: bool) -> None:
        self.focused = bool(focused)

    def refresh_unread(self) -> int:
        return self.unread.refresh(
            lambda: self._backend.fetch_unread_count(self.user_id, self.user_sector_id)
        )

    # ── Conversation selection ───────────────────────────────────────────

    def select_conversation(self, selector: ConversationSelector) -> tuple:
        """Switch conversations and merge the fetched history.

        The merge uses whichever selector is active when the fetch completes;
        a superseded fetch never marks messages read.
        """
        with self._lock:
            self._selector = selector
            self._generation += 1
            generation = self._generation

        self.refresh_unread()
        try:
            rows = self._backend.fetch_conversation(self.user_id, selector.type, selector.id)
        except Exception as exc:
            self.last_error = str(exc)
            logger.warning(
                "Chat history fetch failed", exc_info=True,
                extra={"user_id": self.user_id, "conversation": selector.id},
            )
            raise ChatConnectionError(f"Could not load conversation {selector.id}") from exc

        return self._merge(rows, generation)

    def _merge(self, rows, generation: int) -> tuple:
        fetched = [Message.from_record(r) for r in rows]
        with self._lock:
            self._messages = merge_fetched(self._messages, fetched, self._selector, self.user_id)
            self.last_error = None
            if generation != self._generation:
                logger.debug("Stale chat fetch merged without read marking", extra={"user_id": self.user_id})
                return self._messages
            pending_read = unread_ids(self._messages, self.user_id)

        if pending_read:
            self._mark_read(pending_read)
        return self._messages

    def _mark_read(self, ids) -> None:
        try:
            self._backend.mark_as_read(list(ids))
        except Exception:
            logger.warning("Mark-as-read failed for %d message(s)", len(ids), exc_info=True)
            return
        with self._lock:
            self._messages = mark_read(self._messages, ids)
        self.refresh_unread()

    # ── Sending ──────────────────────────────────────────────────────────

    def send(self, body: str, attachment: Attachment | None = None) -> Message:
        """Show a placeholder right away and hand the write to the dispatcher."""
        with self._lock:
            selector = self._selector
            if selector is None:
                raise ValidationError("No conversation selected")
            if not (body or "").strip() and attachment is None:
                raise ValidationError("Message body or attachment is required", details={"message": "empty"})
            placeholder = make_optimistic(self.user_id, body or "", selector, attachment)
            self._messages = append_optimistic(self._messages, placeholder)

        self._dispatch(lambda: self._deliver(placeholder))
        return placeholder

    def _deliver(self, placeholder: Message) -> Message:
        attachment = None
        if placeholder.attachment is not None:
            attachment = {
                "url": placeholder.attachment.url,
                "name": placeholder.attachment.name,
                "type": placeholder.attachment.mime_type,
            }
        try:
            row = self._backend.send_message(
                self.user_id, placeholder.body,
                receiver_id=placeholder.receiver_id,
                sector_id=placeholder.sector_id,
                attachment=attachment,
            )
        except Exception as exc:
            with self._lock:
                self._messages = discard(self._messages, placeholder.id)
                self.last_error = str(exc)
            logger.warning(
                "Chat send failed; placeholder %s removed", placeholder.id, exc_info=True,
                extra={"user_id": self.user_id},
            )
            raise ChatDeliveryError("Message could not be sent", temp_id=placeholder.id) from exc

        message = Message.from_record(row)
        with self._lock:
            if is_relevant(message, self._selector, self.user_id):
                self._messages = apply_insert(self._messages, message, self.user_id)
        return message

    # ── Push events ──────────────────────────────────────────────────────

    def _on_change(self, event: ChangeEvent) -> None:
        if event.type == INSERT and event.new:
            self._on_insert(Message.from_record(event.new))
        elif event.type == UPDATE and event.new:
            message = Message.from_record(event.new)
            with self._lock:
                self._messages = apply_update(self._messages, message)
            self.refresh_unread()
        elif event.type == DELETE and event.old:
            with self._lock:
                self._messages = apply_delete(self._messages, str(event.old.get("id")))
            self.refresh_unread()

    def _on_insert(self, message: Message) -> None:
        mine = message.sender_id.lower() == self.user_id.lower()
        with self._lock:
            relevant = is_relevant(message, self._selector, self.user_id)
            if relevant:
                self._messages = apply_insert(self._messages, message, self.user_id)

        if not relevant:
            if counts_as_unread(message, self.user_id, self.user_sector_id):
                self.unread.increment()
            return

        if mine or message.read:
            return
        if self.window_open and self.focused:
            self._mark_read([message.id])
        else:
            self.unread.increment()


# ═══════════════════════════════════════════════════════════════════════════
#  Registry
# ═══════════════════════════════════════════════════════════════════════════


class ChatSessionRegistry:
    """App-owned map of user id -> started ChatSession."""

    def __init__(self, app, hub: RealtimeHub, backend: ChatBackend | None = None):
        self.app = app
        self.hub = hub
        self.backend = backend or DatabaseChatBackend(app)
        self.poll_interval = float(app.config.get("CHAT_UNREAD_POLL_SECONDS", DEFAULT_POLL_SECONDS))
        if app.config.get("CHAT_DISPATCH", "thread") == "thread":
            self.dispatch = ThreadDispatcher()
        else:
            self.dispatch = inline_dispatch
        self._sessions: dict[str, ChatSession] = {}
        self._lock = threading.Lock()

    def open(self, user_id: str, sector_id: str | None = None, meta: dict | None = None) -> ChatSession:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                return session
            session = ChatSession(
                user_id, self.backend, self.hub,
                user_sector_id=sector_id,
                dispatch=self.dispatch,
                poll_interval=self.poll_interval,
                presence_meta=meta,
            )
            self._sessions[user_id] = session
        return session.start()

    def get(self, user_id: str) -> ChatSession | None:
        return self._sessions.get(user_id)

    def close(self, user_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        session.stop()
        return True

    def close_all(self) -> None:
        """Stop every session and wait for in-flight sends."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.stop()
        if isinstance(self.dispatch, ThreadDispatcher):
            self.dispatch.shutdown(wait=True)

    def __len__(self):
        return len(self._sessions)


def init_chat(app, hub: RealtimeHub) -> ChatSessionRegistry:
    registry = ChatSessionRegistry(app, hub)
    app.extensions["chat_sessions"] = registry
    return registry
