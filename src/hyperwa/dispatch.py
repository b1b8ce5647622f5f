from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Collection, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .connection.events import IncomingMessage, jid_user

if TYPE_CHECKING:
    from .connection.socket import SessionSocket

logger = logging.getLogger(__name__)

OWNER = "owner"
ADMIN = "admin"
PUBLIC = "public"

# "owner", "admin", "public", or an explicit set of allowed user numbers.
Permission = str | frozenset[str]

PERMISSION_DENIED_TEXT = "You don't have permission to use this command."


@dataclass(slots=True)
class CommandContext:
    message: IncomingMessage
    command: str
    args: list[str]
    socket: SessionSocket | None = None
    state: dict[str, Any] = field(default_factory=dict)

    async def reply(self, text: str) -> None:
        if self.socket is None:
            raise RuntimeError("no live socket to reply with")
        await self.socket.send_text(self.message.chat_jid, text)


CommandHandler = Callable[[CommandContext], Awaitable[None]]
MessageListener = Callable[[IncomingMessage], Awaitable[None]]


@dataclass(slots=True)
class Command:
    name: str
    handler: CommandHandler
    description: str = ""
    permissions: Permission = PUBLIC


class CommandRateLimiter:
    """Sliding window: at most `max_commands` per user within `window_s` seconds."""

    def __init__(
        self,
        max_commands: int = 10,
        window_s: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_commands = max_commands
        self.window_s = window_s
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def _window(self, user: str) -> deque[float]:
        hits = self._hits[user]
        horizon = self._clock() - self.window_s
        while hits and hits[0] <= horizon:
            hits.popleft()
        return hits

    def hit(self, user: str) -> bool:
        """Record one command for `user`; False when the limit is already reached."""

        hits = self._window(user)
        if len(hits) >= self.max_commands:
            return False
        hits.append(self._clock())
        return True

    def retry_after(self, user: str) -> float:
        hits = self._window(user)
        if len(hits) < self.max_commands:
            return 0.0
        return max(0.0, hits[0] + self.window_s - self._clock())


class MessageDispatcher:
    """
    Routes incoming messages to listeners and prefix commands.

    Listeners see every message. A text starting with `prefix` is looked up
    as `<prefix><name> [args...]` in the command table, then checked against
    the bot mode, the blocked list, the command's permissions and the rate
    limiter before its handler runs. Handler failures are logged and never
    stop the remaining handlers.
    """

    def __init__(
        self,
        prefix: str = ".",
        *,
        allow_self_commands: bool = True,
        mode: str = PUBLIC,
        admins: Iterable[str] = (),
        blocked_users: Iterable[str] = (),
        rate_limiter: CommandRateLimiter | None = None,
        send_permission_error: bool = False,
    ) -> None:
        self.prefix = prefix
        self.allow_self_commands = allow_self_commands
        self.mode = mode
        self.admins = {jid_user(a) for a in admins}
        self.blocked_users = {jid_user(b) for b in blocked_users}
        self.rate_limiter = rate_limiter
        self.send_permission_error = send_permission_error
        self._commands: dict[str, Command] = {}
        self._listeners: list[MessageListener] = []
        self.socket_provider: Callable[[], SessionSocket | None] = lambda: None
        self.owner_provider: Callable[[], str | None] = lambda: None
        self.register("help", self._help, description="list available commands")

    @property
    def commands(self) -> list[Command]:
        return sorted(self._commands.values(), key=lambda c: c.name)

    def register(
        self,
        name: str,
        handler: CommandHandler,
        *,
        description: str = "",
        permissions: str | Collection[str] = PUBLIC,
    ) -> None:
        key = name.lower()
        if key in self._commands and key != "help":
            raise ValueError(f"command {name!r} is already registered")
        perm: Permission
        if isinstance(permissions, str):
            if permissions not in (OWNER, ADMIN, PUBLIC):
                raise ValueError(f"unknown permission {permissions!r}")
            perm = permissions
        else:
            perm = frozenset(jid_user(u) for u in permissions)
        self._commands[key] = Command(name=key, handler=handler, description=description, permissions=perm)

    def command(
        self,
        name: str,
        *,
        description: str = "",
        permissions: str | Collection[str] = PUBLIC,
    ) -> Callable[[CommandHandler], CommandHandler]:
        def _decorator(fn: CommandHandler) -> CommandHandler:
            self.register(
                name,
                fn,
                description=description or (fn.__doc__ or "").strip(),
                permissions=permissions,
            )
            return fn

        return _decorator

    def on_message(self, listener: MessageListener) -> MessageListener:
        self._listeners.append(listener)
        return listener

    def parse(self, text: str | None) -> tuple[str, list[str]] | None:
        if not text or not self.prefix or not text.startswith(self.prefix):
            return None
        body = text[len(self.prefix) :].strip()
        if not body:
            return None
        name, *args = body.split()
        return name.lower(), args

    def is_owner(self, message: IncomingMessage) -> bool:
        if message.from_me:
            return True
        owner = jid_user(self.owner_provider())
        return bool(owner) and jid_user(message.sender_jid or message.chat_jid) == owner

    def allowed(self, message: IncomingMessage, cmd: Command) -> bool:
        user = jid_user(message.sender_jid or message.chat_jid)
        owner = self.is_owner(message)
        if self.mode == "private" and not owner and user not in self.admins:
            return False
        if user in self.blocked_users and not owner:
            return False

        perm = cmd.permissions
        if perm == OWNER:
            return owner
        if perm == ADMIN:
            return owner or user in self.admins
        if perm == PUBLIC:
            return True
        return user in perm

    async def dispatch(self, message: IncomingMessage) -> bool:
        """Returns True when a command handler ran successfully."""

        for listener in list(self._listeners):
            try:
                await listener(message)
            except Exception:
                logger.exception("message listener %r failed", listener)

        if message.from_me and not self.allow_self_commands:
            return False
        parsed = self.parse(message.text)
        if parsed is None:
            return False
        name, args = parsed
        cmd = self._commands.get(name)
        if cmd is None:
            logger.debug("unknown command %r from %s", name, message.sender_jid)
            return False

        ctx = CommandContext(message=message, command=name, args=args, socket=self.socket_provider())
        if not self.allowed(message, cmd):
            logger.info("denied %s to %s", name, message.sender_jid or message.chat_jid)
            if self.send_permission_error:
                await self._notify(ctx, PERMISSION_DENIED_TEXT)
            return False

        user = jid_user(message.sender_jid or message.chat_jid)
        if self.rate_limiter is not None and not self.rate_limiter.hit(user):
            wait_s = math.ceil(self.rate_limiter.retry_after(user))
            await self._notify(ctx, f"Rate limit exceeded. Try again in {wait_s} seconds.")
            return False

        try:
            await cmd.handler(ctx)
        except Exception:
            logger.exception("command %s failed", name)
            return False
        return True

    async def _notify(self, ctx: CommandContext, text: str) -> None:
        try:
            await ctx.reply(text)
        except Exception as e:
            logger.warning("could not notify %s: %s", ctx.message.chat_jid, e)

    async def _help(self, ctx: CommandContext) -> None:
        lines = ["Available commands:"]
        for c in self.commands:
            if not self.allowed(ctx.message, c):
                continue
            desc = f" - {c.description}" if c.description else ""
            lines.append(f"{self.prefix}{c.name}{desc}")
        await ctx.reply("\n".join(lines))
