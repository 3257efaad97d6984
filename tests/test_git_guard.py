import asyncio

import pytest

from conductor.locks import FileLockManager
from conductor.models import AgentTask
from conductor.repo import GitOperationGuard


def test_operations_are_serialized_and_flag_is_mirrored() -> None:
    manager = FileLockManager()
    guard = GitOperationGuard(manager)
    events: list[str] = []

    def _operation(name: str):
        async def _run() -> str:
            assert guard.is_operation_in_progress
            assert manager.git_operation_in_progress
            events.append(f"start {name}")
            await asyncio.sleep(0.01)
            events.append(f"end {name}")
            return name

        return _run

    async def _main() -> list[str]:
        return await asyncio.gather(
            guard.execute_git_operation(_operation("commit"), "commit"),
            guard.execute_git_operation(_operation("pull"), "pull"),
        )

    results = asyncio.run(_main())

    assert results == ["commit", "pull"]
    assert events == ["start commit", "end commit", "start pull", "end pull"]
    assert not guard.is_operation_in_progress
    assert not manager.git_operation_in_progress


def test_flag_cleared_when_operation_raises() -> None:
    manager = FileLockManager()
    guard = GitOperationGuard(manager)

    async def _boom() -> None:
        raise RuntimeError("index.lock exists")

    with pytest.raises(RuntimeError, match="index.lock"):
        asyncio.run(guard.execute_git_operation(_boom, "commit"))

    assert not guard.is_operation_in_progress
    assert not manager.git_operation_in_progress


def test_lock_acquisition_refused_during_operation() -> None:
    manager = FileLockManager()
    guard = GitOperationGuard(manager)
    tasks = {"A": AgentTask(id="A", number=1, description="a")}
    observed: list[bool] = []

    async def _operation() -> None:
        observed.append(manager.try_acquire_lock("a.py", "A", "Edit", tasks))

    asyncio.run(guard.execute_git_operation(_operation, "commit"))

    assert observed == [False]
    assert manager.try_acquire_lock("a.py", "A", "Edit", tasks)


def test_no_locks_variant_refuses_while_locks_held() -> None:
    manager = FileLockManager()
    guard = GitOperationGuard(manager)
    tasks = {"A": AgentTask(id="A", number=1, description="a")}
    manager.try_acquire_lock("a.py", "A", "Edit", tasks)
    calls: list[str] = []

    async def _operation() -> None:
        calls.append("ran")

    ok, message = asyncio.run(guard.execute_while_no_locks_held(_operation, "pull"))

    assert ok is False
    assert message == "Cannot pull while file locks are active"
    assert calls == []


def test_no_locks_variant_runs_and_reports_failures() -> None:
    manager = FileLockManager()
    guard = GitOperationGuard(manager)

    async def _ok() -> None:
        return None

    async def _fail() -> None:
        raise RuntimeError("not a fast-forward")

    assert asyncio.run(guard.execute_while_no_locks_held(_ok, "pull")) == (True, None)
    assert asyncio.run(guard.execute_while_no_locks_held(_fail, "pull")) == (
        False,
        "pull failed: not a fast-forward",
    )
    assert not manager.git_operation_in_progress


def test_no_locks_variant_reports_inner_cancellation() -> None:
    manager = FileLockManager()
    guard = GitOperationGuard(manager)

    async def _cancelled() -> None:
        raise asyncio.CancelledError()

    ok, message = asyncio.run(guard.execute_while_no_locks_held(_cancelled, "pull"))

    assert ok is False
    assert message == "pull was cancelled"
    assert not guard.is_operation_in_progress


def test_operation_finished_fires_after_flag_clears() -> None:
    manager = FileLockManager()
    guard = GitOperationGuard(manager)
    seen: list[tuple[str, bool]] = []
    guard.operation_finished.subscribe(lambda name: seen.append((name, manager.git_operation_in_progress)))

    async def _ok() -> None:
        return None

    async def _boom() -> None:
        raise RuntimeError("index.lock exists")

    asyncio.run(guard.execute_git_operation(_ok, "commit"))
    with pytest.raises(RuntimeError):
        asyncio.run(guard.execute_git_operation(_boom, "pull"))

    assert seen == [("commit", False), ("pull", False)]
