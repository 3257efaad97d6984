from datetime import timedelta

from conductor.config import ClassifierConfig, FeatureModeConfig
from conductor.feature_mode import (
    FeatureModeAction,
    FeatureModeController,
    OutputClassifier,
)
from conductor.models import TaskStatus


def _evaluate(
    controller: FeatureModeController,
    *,
    status: TaskStatus = TaskStatus.RUNNING,
    elapsed: timedelta = timedelta(minutes=5),
    output: str = "working...",
    current_iteration: int = 1,
    max_iterations: int = 50,
    exit_code: int = 0,
    consecutive_failures: int = 0,
    output_length: int | None = None,
):
    return controller.evaluate(
        status,
        elapsed,
        output,
        current_iteration,
        max_iterations,
        exit_code,
        consecutive_failures,
        len(output) if output_length is None else output_length,
    )


def test_needs_more_work_then_complete() -> None:
    controller = FeatureModeController()

    first = _evaluate(controller, output="did a thing\nSTATUS: NEEDS_MORE_WORK", current_iteration=1)
    second = _evaluate(controller, output="did more\nSTATUS: NEEDS_MORE_WORK", current_iteration=2)
    third = _evaluate(controller, output="all done\nSTATUS: COMPLETE\n", current_iteration=3)

    assert first.action == FeatureModeAction.CONTINUE
    assert second.action == FeatureModeAction.CONTINUE
    assert third.action == FeatureModeAction.FINISH
    assert third.finish_status == TaskStatus.COMPLETED


def test_crash_loop_fails_on_third_consecutive_failure() -> None:
    controller = FeatureModeController()
    failures = 0
    actions = []
    for iteration in range(1, 4):
        decision = _evaluate(
            controller,
            output="Traceback: something broke",
            current_iteration=iteration,
            exit_code=1,
            consecutive_failures=failures,
        )
        failures = decision.consecutive_failures
        actions.append(decision.action)

    assert actions == [FeatureModeAction.CONTINUE, FeatureModeAction.CONTINUE, FeatureModeAction.FINISH]
    assert decision.finish_status == TaskStatus.FAILED
    assert decision.consecutive_failures == 3


def test_zero_exit_resets_failure_counter() -> None:
    controller = FeatureModeController()

    decision = _evaluate(controller, exit_code=0, consecutive_failures=2)

    assert decision.action == FeatureModeAction.CONTINUE
    assert decision.consecutive_failures == 0


def test_rate_limit_retries_and_resets_failures() -> None:
    controller = FeatureModeController()

    decision = _evaluate(controller, output="Error: rate limit exceeded", exit_code=1, consecutive_failures=2)

    assert decision.action == FeatureModeAction.RETRY_AFTER_DELAY
    assert decision.consecutive_failures == 0
    assert decision.finish_status is None


def test_rate_limit_signatures_are_case_insensitive() -> None:
    classifier = OutputClassifier()

    assert classifier.is_retryable_rate_limit_error("API Error: 529 OVERLOADED")
    assert classifier.is_retryable_rate_limit_error("the service is at capacity right now")
    assert classifier.is_retryable_rate_limit_error("HTTP 429 Too Many Requests")
    assert not classifier.is_retryable_rate_limit_error("syntax error on line 3")
    assert not classifier.is_retryable_rate_limit_error("")


def test_rate_limit_only_scans_output_tail() -> None:
    classifier = OutputClassifier(ClassifierConfig(rate_limit_scan_chars=100))

    assert not classifier.is_retryable_rate_limit_error("rate limit" + "x" * 200)
    assert classifier.is_retryable_rate_limit_error("x" * 200 + "rate limit")


def test_skip_when_not_running() -> None:
    controller = FeatureModeController()

    for status in (TaskStatus.PAUSED, TaskStatus.CANCELLED, TaskStatus.QUEUED):
        decision = _evaluate(controller, status=status, output="STATUS: COMPLETE", consecutive_failures=1)
        assert decision.action == FeatureModeAction.SKIP
        assert decision.consecutive_failures == 1


def test_runtime_cap_finishes_once_exceeded() -> None:
    controller = FeatureModeController()

    over = _evaluate(controller, elapsed=timedelta(hours=13), output="rate limit", exit_code=1)
    at_cap = _evaluate(controller, elapsed=timedelta(hours=12))
    under = _evaluate(controller, elapsed=timedelta(hours=11, minutes=59))

    assert over.action == FeatureModeAction.FINISH
    assert over.finish_status == TaskStatus.COMPLETED
    assert at_cap.action == FeatureModeAction.CONTINUE
    assert under.action == FeatureModeAction.CONTINUE


def test_iteration_limit_finishes_completed() -> None:
    controller = FeatureModeController()

    decision = _evaluate(controller, current_iteration=50, max_iterations=50, exit_code=1)

    assert decision.action == FeatureModeAction.FINISH
    assert decision.finish_status == TaskStatus.COMPLETED


def test_completion_marker_outside_window_is_ignored() -> None:
    classifier = OutputClassifier()
    filler = "\n".join(f"line {index}" for index in range(60))

    assert not classifier.check_completion_marker(f"STATUS: COMPLETE\n{filler}")
    assert classifier.check_completion_marker(f"{filler}\nSTATUS: COMPLETE")


def test_last_marker_in_window_wins() -> None:
    classifier = OutputClassifier()

    assert classifier.check_completion_marker("STATUS: NEEDS_MORE_WORK\nmore text\nSTATUS: COMPLETE")
    assert not classifier.check_completion_marker("STATUS: COMPLETE\nmore text\nSTATUS: NEEDS_MORE_WORK")
    assert classifier.check_completion_marker("  STATUS: COMPLETE  \r")
    assert not classifier.check_completion_marker("")


def test_output_trim_is_strictly_above_cap() -> None:
    controller = FeatureModeController()

    at_cap = _evaluate(controller, output_length=100_000)
    over_cap = _evaluate(controller, output_length=100_001)

    assert at_cap.trim_output is False
    assert over_cap.trim_output is True


def test_custom_failure_limit() -> None:
    controller = FeatureModeController(config=FeatureModeConfig(max_consecutive_failures=5))

    fourth = _evaluate(controller, exit_code=2, consecutive_failures=3)
    fifth = _evaluate(controller, exit_code=2, consecutive_failures=4)

    assert fourth.action == FeatureModeAction.CONTINUE
    assert fourth.consecutive_failures == 4
    assert fifth.action == FeatureModeAction.FINISH
    assert fifth.finish_status == TaskStatus.FAILED
