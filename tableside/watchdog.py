"""
Session/Presence Watchdog

Keeps an eye on the authenticated session:

    valid -> validating -> valid
                        -> expired -> recovering -> valid    (refresh worked, cache refetched)
                                                 -> expired  (refresh failed, local state cleared)

Checks run when the page becomes visible, the window regains focus, the
network comes back, on a timer while visible, and whenever a remote call
reports an expired credential. Only one check runs at a time; triggers that
arrive meanwhile are dropped.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from .auth import AuthProvider
from .errors import ErrorKind, RemoteError
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    valid = "valid"
    validating = "validating"
    expired = "expired"
    recovering = "recovering"


class Trigger(str, Enum):
    visible = "visible"
    hidden = "hidden"
    focus = "focus"
    online = "online"
    periodic = "periodic"
    auth_error = "auth_error"


class SessionWatchdog:
    def __init__(
        self,
        auth: AuthProvider,
        on_invalidate: Callable[[], Awaitable[Any] | Any],
        on_clear: Callable[[], Any],
        config: Settings | None = None,
    ):
        self.auth = auth
        self.on_invalidate = on_invalidate
        self.on_clear = on_clear
        self.config = config or default_settings

        self.state = SessionState.valid
        self.requires_login = False
        self.visible = True
        self._timer: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def checking(self) -> bool:
        return self.state in (SessionState.validating, SessionState.recovering)

    async def trigger(self, reason: Trigger | str) -> SessionState:
        reason = Trigger(reason)
        if reason == Trigger.hidden:
            self.visible = False
            return self.state
        if reason == Trigger.visible:
            self.visible = True

        if self.checking:
            logger.debug(f"Session check already running, ignoring {reason.value}")
            return self.state
        if self.requires_login:
            return self.state

        logger.info(f"Checking session validity ({reason.value})")
        self.state = SessionState.validating
        try:
            await self.auth.get_current_identity()
        except RemoteError as e:
            if e.kind == ErrorKind.network:
                # Cannot tell while offline; the "online" trigger checks again
                logger.warning(f"Session check inconclusive: {e}")
                self.state = SessionState.valid
                return self.state
            logger.info(f"Session validation failed, attempting refresh: {e.message}")
            self.state = SessionState.expired
            return await self._recover()
        except Exception:
            self.state = SessionState.valid
            raise

        self.state = SessionState.valid
        if reason == Trigger.online:
            # Anything could have changed while offline
            await self._invalidate()
        return self.state

    async def _recover(self) -> SessionState:
        self.state = SessionState.recovering
        try:
            refreshed = await self.auth.refresh_credential()
        except Exception as e:
            logger.error(f"Session refresh raised: {e}", exc_info=True)
            refreshed = False
        if refreshed:
            self.state = SessionState.valid
            await self._invalidate()
            return self.state

        logger.warning("Session refresh failed, signing out")
        self.state = SessionState.expired
        self.requires_login = True
        self.auth.sign_out()
        self.on_clear()
        return self.state

    async def _invalidate(self) -> None:
        try:
            result = self.on_invalidate()
            if inspect.isawaitable(result):
                await result
        except RemoteError as e:
            logger.warning(f"Refetch after session check failed: {e}")

    async def sign_in(self, access_token: str, refresh_token: str | None = None) -> SessionState:
        """Install a freshly issued credential after the user authenticated again."""
        self.auth.access_token = access_token
        if refresh_token:
            self.auth.refresh_token = refresh_token
        self.requires_login = False
        self.state = SessionState.valid
        return await self.trigger(Trigger.online)

    def signal_auth_error(self) -> None:
        """Called by remote callers that hit an expired credential; runs the check in the background."""
        if self.checking or self.requires_login:
            return
        task = asyncio.create_task(self.trigger(Trigger.auth_error))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ============ TIMER ============

    def start(self) -> None:
        if self._timer is None:
            self._timer = asyncio.create_task(self._run_periodic())

    async def stop(self) -> None:
        tasks = list(self._pending)
        if self._timer is not None:
            tasks.append(self._timer)
            self._timer = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self.config.session_check_interval_seconds)
            if not self.visible:
                continue
            try:
                await self.trigger(Trigger.periodic)
            except Exception as e:
                logger.error(f"Error in periodic session check: {e}", exc_info=True)
