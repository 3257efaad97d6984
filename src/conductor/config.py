from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_RATE_LIMIT_SIGNATURES = [
    "rate limit",
    "token limit",
    "overloaded",
    "529",
    "capacity",
    "too many requests",
]


@dataclass(slots=True)
class SchedulerConfig:
    max_parallel_tasks: int = 4


@dataclass(slots=True)
class FeatureModeConfig:
    max_runtime_hours: float = 12.0
    iteration_timeout_minutes: float = 30.0
    max_consecutive_failures: int = 3
    output_cap_chars: int = 100_000
    default_max_iterations: int = 50


@dataclass(slots=True)
class ClassifierConfig:
    completion_scan_lines: int = 50
    rate_limit_scan_chars: int = 3000
    rate_limit_signatures: list[str] = field(
        default_factory=lambda: list(DEFAULT_RATE_LIMIT_SIGNATURES)
    )


@dataclass(slots=True)
class OutputConfig:
    max_output_chars: int = 200_000


@dataclass(slots=True)
class RetryConfig:
    token_limit_retry_minutes: float = 30.0


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    skip_permissions: bool = False
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GitConfig:
    auto_commit: bool = False


@dataclass(slots=True)
class ConductorConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    feature_mode: FeatureModeConfig = field(default_factory=FeatureModeConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    git: GitConfig = field(default_factory=GitConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            feature_mode=FeatureModeConfig(**data.get("feature_mode", {})),
            classifier=ClassifierConfig(**data.get("classifier", {})),
            output=OutputConfig(**data.get("output", {})),
            retry=RetryConfig(**data.get("retry", {})),
            agent=AgentConfig(**data.get("agent", {})),
            git=GitConfig(**data.get("git", {})),
        )

    def to_dict(self) -> dict:
        return {
            "scheduler": {
                "max_parallel_tasks": self.scheduler.max_parallel_tasks,
            },
            "feature_mode": {
                "max_runtime_hours": self.feature_mode.max_runtime_hours,
                "iteration_timeout_minutes": self.feature_mode.iteration_timeout_minutes,
                "max_consecutive_failures": self.feature_mode.max_consecutive_failures,
                "output_cap_chars": self.feature_mode.output_cap_chars,
                "default_max_iterations": self.feature_mode.default_max_iterations,
            },
            "classifier": {
                "completion_scan_lines": self.classifier.completion_scan_lines,
                "rate_limit_scan_chars": self.classifier.rate_limit_scan_chars,
                "rate_limit_signatures": list(self.classifier.rate_limit_signatures),
            },
            "output": {
                "max_output_chars": self.output.max_output_chars,
            },
            "retry": {
                "token_limit_retry_minutes": self.retry.token_limit_retry_minutes,
            },
            "agent": {
                "binary": self.agent.binary,
                "skip_permissions": self.agent.skip_permissions,
                "extra_args": list(self.agent.extra_args),
            },
            "git": {
                "auto_commit": self.git.auto_commit,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section, values in data.items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
