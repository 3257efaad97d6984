from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import Protocol

from conductor.config import ClassifierConfig, FeatureModeConfig
from conductor.models import TaskStatus

logger = logging.getLogger(__name__)

COMPLETE_MARKER = "STATUS: COMPLETE"
NEEDS_MORE_WORK_MARKER = "STATUS: NEEDS_MORE_WORK"


class CompletionClassifier(Protocol):
    def check_completion_marker(self, output: str) -> bool: ...

    def is_retryable_rate_limit_error(self, output: str) -> bool: ...


class OutputClassifier:
    """Reads completion markers and provider throttling out of agent output."""

    def __init__(self, config: ClassifierConfig | None = None) -> None:
        self.config = config or ClassifierConfig()

    def check_completion_marker(self, output: str) -> bool:
        if not output:
            return False
        lines = output.split("\n")
        for line in reversed(lines[-self.config.completion_scan_lines :]):
            marker = line.strip()
            if marker == COMPLETE_MARKER:
                return True
            if marker == NEEDS_MORE_WORK_MARKER:
                return False
        return False

    def is_retryable_rate_limit_error(self, output: str) -> bool:
        if not output:
            return False
        tail = output[-self.config.rate_limit_scan_chars :].lower()
        return any(signature.lower() in tail for signature in self.config.rate_limit_signatures)


class FeatureModeAction(StrEnum):
    SKIP = "skip"
    CONTINUE = "continue"
    FINISH = "finish"
    RETRY_AFTER_DELAY = "retry_after_delay"


@dataclass(slots=True, frozen=True)
class FeatureModeDecision:
    action: FeatureModeAction
    finish_status: TaskStatus | None = None
    consecutive_failures: int = 0
    trim_output: bool = False


class FeatureModeController:
    """Decides what an unattended task does after each iteration.

    ``evaluate`` has no side effects; the lifecycle coordinator applies the
    decision. Rules are checked in order and the first match wins.
    """

    def __init__(
        self,
        classifier: CompletionClassifier | None = None,
        config: FeatureModeConfig | None = None,
    ) -> None:
        self.classifier = classifier or OutputClassifier()
        self.config = config or FeatureModeConfig()

    @property
    def max_runtime(self) -> timedelta:
        return timedelta(hours=self.config.max_runtime_hours)

    def runtime_exceeded(self, elapsed: timedelta) -> bool:
        return elapsed > self.max_runtime

    def evaluate(
        self,
        status: TaskStatus,
        elapsed: timedelta,
        output_tail: str,
        current_iteration: int,
        max_iterations: int,
        exit_code: int,
        consecutive_failures: int,
        output_length: int,
    ) -> FeatureModeDecision:
        if status != TaskStatus.RUNNING:
            return FeatureModeDecision(FeatureModeAction.SKIP, consecutive_failures=consecutive_failures)

        if self.runtime_exceeded(elapsed):
            return FeatureModeDecision(
                FeatureModeAction.FINISH,
                finish_status=TaskStatus.COMPLETED,
                consecutive_failures=consecutive_failures,
            )

        if self.classifier.check_completion_marker(output_tail):
            return FeatureModeDecision(
                FeatureModeAction.FINISH,
                finish_status=TaskStatus.COMPLETED,
                consecutive_failures=consecutive_failures,
            )

        if current_iteration >= max_iterations:
            return FeatureModeDecision(
                FeatureModeAction.FINISH,
                finish_status=TaskStatus.COMPLETED,
                consecutive_failures=consecutive_failures,
            )

        # Throttling never counts as a crash-loop failure.
        if self.classifier.is_retryable_rate_limit_error(output_tail):
            return FeatureModeDecision(FeatureModeAction.RETRY_AFTER_DELAY, consecutive_failures=0)

        if exit_code != 0:
            failures = consecutive_failures + 1
            if failures >= self.config.max_consecutive_failures:
                logger.info("Crash loop detected after %d consecutive failures", failures)
                return FeatureModeDecision(
                    FeatureModeAction.FINISH,
                    finish_status=TaskStatus.FAILED,
                    consecutive_failures=failures,
                )
        else:
            failures = 0

        return FeatureModeDecision(
            FeatureModeAction.CONTINUE,
            consecutive_failures=failures,
            trim_output=output_length > self.config.output_cap_chars,
        )
