import asyncio
from dataclasses import dataclass, field

from helm.core.cancel import CancellationToken
from helm.session.models import Message


@dataclass
class SessionControl:
    session_id: str
    cancel: CancellationToken = field(default_factory=CancellationToken)
    waiters: list[asyncio.Future[Message | None]] = field(default_factory=list)


class SessionRegistry:
    """At most one in-flight run per session; later callers wait on the owner's result."""

    def __init__(self):
        self._controls: dict[str, SessionControl] = {}

    def acquire(self, session_id: str) -> SessionControl | None:
        """Claim the session. Returns None when a run already holds it."""
        if session_id in self._controls:
            return None
        control = SessionControl(session_id=session_id)
        self._controls[session_id] = control
        return control

    def wait(self, session_id: str) -> asyncio.Future[Message | None]:
        control = self._controls[session_id]
        waiter: asyncio.Future[Message | None] = asyncio.get_running_loop().create_future()
        control.waiters.append(waiter)
        return waiter

    def release(
        self,
        session_id: str,
        result: Message | None = None,
        error: BaseException | None = None,
    ) -> None:
        control = self._controls.pop(session_id, None)
        if control is None:
            return
        for waiter in control.waiters:
            if waiter.done():
                continue
            if isinstance(error, asyncio.CancelledError):
                waiter.cancel()
            elif error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result.model_copy(deep=True) if result else None)

    def cancel(self, session_id: str, reason: str = "cancelled") -> bool:
        control = self._controls.get(session_id)
        if control is None:
            return False
        control.cancel.cancel(reason)
        return True

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._controls

    def active(self) -> list[str]:
        return list(self._controls)
