from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from conductor.events import EventHook
from conductor.locks import FileLockManager

logger = logging.getLogger(__name__)

T = TypeVar("T")
GitOperation = Callable[[], Awaitable[T]]


class GitOperationGuard:
    """Serializes git writes across every task in the process.

    While an operation runs the lock manager refuses new file locks, so an
    agent cannot start editing a file halfway through a commit or pull.
    """

    def __init__(self, lock_manager: FileLockManager) -> None:
        self.lock_manager = lock_manager
        self._semaphore = asyncio.Semaphore(1)
        self._in_progress = False
        self.operation_finished = EventHook("git_operation_finished")

    @property
    def is_operation_in_progress(self) -> bool:
        return self._in_progress

    def _set_in_progress(self, in_progress: bool) -> None:
        self._in_progress = in_progress
        self.lock_manager.set_git_operation_in_progress(in_progress)

    async def _run_exclusive(self, operation: GitOperation[T], name: str) -> T:
        self._set_in_progress(True)
        try:
            logger.info("Executing git operation: %s", name)
            return await operation()
        except asyncio.CancelledError:
            logger.info("Git operation %s was cancelled", name)
            raise
        except Exception:
            logger.warning("Git operation %s failed", name, exc_info=True)
            raise
        finally:
            self._set_in_progress(False)
            logger.debug("Released git guard after %s", name)
            self.operation_finished.emit(name)

    async def execute_git_operation(self, operation: GitOperation[T], name: str) -> T:
        logger.debug("Waiting for git guard: %s", name)
        async with self._semaphore:
            return await self._run_exclusive(operation, name)

    async def execute_while_no_locks_held(
        self, operation: GitOperation[object], name: str
    ) -> tuple[bool, str | None]:
        async with self._semaphore:
            # Checked under the semaphore so no other git write can slip in between.
            if self.lock_manager.lock_count > 0:
                logger.info("Refusing %s: %d file lock(s) held", name, self.lock_manager.lock_count)
                return False, f"Cannot {name} while file locks are active"
            try:
                await self._run_exclusive(operation, name)
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                return False, f"{name} was cancelled"
            except Exception as exc:
                return False, f"{name} failed: {exc}"
            return True, None
