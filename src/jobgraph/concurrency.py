# concurrency.py
"""
Concurrency groups: at most one active run per group key.

A run registers itself with `acquire` before scheduling any job and
deregisters with `release` once every one of its jobs is terminal. With
cancel_in_progress the newcomer cancels the active (and any waiting) run
and waits for it to release, so the superseded run's jobs are all
`cancelled` before the new run's jobs start.
"""
from __future__ import annotations

import threading
from typing import Dict, List, Optional, Protocol

from .errors import ConcurrencyGroupBusyError, RunCancelledError

POLL_INTERVAL = 0.05


class CancelToken:
    """Thread-safe cancellation flag shared by a run, its executors and their subprocesses."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Returns False if it was already requested."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class GroupMember(Protocol):
    run_id: str
    group: str
    cancel_token: CancelToken

    def cancel(self, reason: str = ...) -> bool: ...


class ConcurrencyController:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._active: Dict[str, GroupMember] = {}
        self._waiting: Dict[str, List[GroupMember]] = {}

    def active(self, group: str) -> Optional[GroupMember]:
        with self._cond:
            return self._active.get(group)

    def waiting(self, group: str) -> List[GroupMember]:
        with self._cond:
            return list(self._waiting.get(group, []))

    def acquire(self, run: GroupMember, *, cancel_in_progress: bool = False, policy: str = "queue") -> None:
        """
        Make `run` the active run of its group.

        Raises ConcurrencyGroupBusyError (policy "reject") or
        RunCancelledError (the run was cancelled while waiting).
        """
        group = run.group
        with self._cond:
            current = self._active.get(group)
            if current is None or current is run:
                self._active[group] = run
                return

            if cancel_in_progress:
                for other in [current, *self._waiting.get(group, [])]:
                    other.cancel(f"superseded by run {run.run_id}")
            elif policy == "reject":
                raise ConcurrencyGroupBusyError(group, current.run_id)

            queue = self._waiting.setdefault(group, [])
            queue.append(run)
            try:
                while True:
                    if run.cancel_token.is_set():
                        raise RunCancelledError(run.cancel_token.reason or "cancelled")
                    if self._active.get(group) is None and queue[0] is run:
                        self._active[group] = run
                        return
                    self._cond.wait(POLL_INTERVAL)
            finally:
                queue.remove(run)
                if not queue:
                    self._waiting.pop(group, None)
                self._cond.notify_all()

    def release(self, run: GroupMember) -> None:
        with self._cond:
            if self._active.get(run.group) is run:
                del self._active[run.group]
            self._cond.notify_all()
