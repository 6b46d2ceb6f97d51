"""Task and batch entities, the task state machine, and report read-models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .errors import InvalidTransitionError, ValidationError
from .providers.base import AspectRatio, ColorMode, GenerationOptions, ImageResult, SafetyLevel


class TaskStatus(str, Enum):
    QUEUED = "queued"
    WAITING = "waiting"
    RUNNING = "running"
    PAUSED = "paused"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


PENDING_STATES: FrozenSet[TaskStatus] = frozenset({TaskStatus.QUEUED, TaskStatus.WAITING, TaskStatus.RETRYING})
ACTIVE_STATES: FrozenSet[TaskStatus] = frozenset({TaskStatus.RUNNING, TaskStatus.PAUSED})
TERMINAL_STATES: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.TIMEOUT}
)

_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.WAITING: frozenset({TaskStatus.QUEUED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.RETRYING: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.PAUSED,
            TaskStatus.RETRYING,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
            TaskStatus.TIMEOUT,
        }
    ),
    TaskStatus.PAUSED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
}

# The only way out of a terminal state: an explicit manual retry, back to QUEUED or WAITING.
_REVIVABLE: FrozenSet[TaskStatus] = frozenset({TaskStatus.FAILED, TaskStatus.TIMEOUT})


class TaskPriority(IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4
    URGENT = 5

    @classmethod
    def parse(cls, value: "TaskPriority | str | int | None", default: "TaskPriority | None" = None) -> "TaskPriority":
        if value is None or value == "":
            if default is None:
                raise ValueError("Priority is required")
            return default
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        try:
            return cls[text.upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown priority: {value!r}") from exc


def _iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IllustrationRequest:
    prompt: str
    character_ids: Tuple[str, ...] = ()
    style_template: Optional[str] = None
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    color_mode: ColorMode = ColorMode.COLOR
    safety_level: SafetyLevel = SafetyLevel.BLOCK_MOST
    priority: Optional[TaskPriority] = None
    seed: Optional[int] = None
    negative_prompt: Optional[str] = None
    # Indices of earlier requests in the same batch that must complete first.
    depends_on: Tuple[int, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IllustrationRequest":
        """Build a request from loosely-typed input such as a parsed JSON object."""

        if not isinstance(data, Mapping):
            raise ValidationError(f"Request must be a mapping, got {type(data).__name__}")
        prompt = data.get("prompt", data.get("scene_description", ""))
        characters = data.get("character_ids", data.get("character_id")) or ()
        if isinstance(characters, str):
            characters = (characters,)
        try:
            priority = data.get("priority")
            return cls(
                prompt=str(prompt or ""),
                character_ids=tuple(str(item) for item in characters),
                style_template=data.get("style_template", data.get("style_template_id")),
                aspect_ratio=AspectRatio.parse(data.get("aspect_ratio", AspectRatio.SQUARE)),
                color_mode=ColorMode(data.get("color_mode", ColorMode.COLOR)),
                safety_level=SafetyLevel(data.get("safety_level", SafetyLevel.BLOCK_MOST)),
                priority=TaskPriority.parse(priority) if priority not in (None, "") else None,
                seed=int(data["seed"]) if data.get("seed") is not None else None,
                negative_prompt=data.get("negative_prompt"),
                depends_on=tuple(int(index) for index in data.get("depends_on") or ()),
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid request: {exc}") from exc

    def generation_options(self) -> GenerationOptions:
        return GenerationOptions(
            aspect_ratio=self.aspect_ratio,
            color_mode=self.color_mode,
            style_template=self.style_template,
            safety_level=self.safety_level,
            seed=self.seed,
            negative_prompt=self.negative_prompt,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "character_ids": list(self.character_ids),
            "style_template": self.style_template,
            "aspect_ratio": self.aspect_ratio.value,
            "color_mode": self.color_mode.value,
            "safety_level": self.safety_level.value,
            "priority": self.priority.name.lower() if self.priority else None,
            "seed": self.seed,
            "depends_on": list(self.depends_on),
        }


@dataclass
class BatchSpec:
    """A batch submission as the coordinator receives it."""

    name: str
    requests: Sequence[IllustrationRequest | Mapping[str, Any]]
    priority: TaskPriority = TaskPriority.NORMAL
    max_parallel: int = 3
    description: str = ""
    provider: Optional[str] = None
    tags: Tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@dataclass
class PerformanceMetrics:
    queue_time_ms: int = 0
    execution_time_ms: int = 0
    memory_usage_mb: float = 0.0
    api_calls_count: int = 0
    total_cost: float = 0.0


@dataclass
class Task:
    id: str
    batch_id: str
    request: IllustrationRequest
    priority: TaskPriority
    max_retries: int
    sequence: int = 0
    status: TaskStatus = TaskStatus.QUEUED
    progress: int = 0
    retry_count: int = 0
    enqueued_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    error_message: Optional[str] = None
    last_error: Optional[BaseException] = field(default=None, repr=False)
    execution_windows: List[Tuple[float, Optional[float]]] = field(default_factory=list)
    result: Optional[ImageResult] = field(default=None, repr=False)
    depends_on: Tuple[str, ...] = ()
    cancel_requested: bool = False
    # Bumped on every dispatch so a late result from an abandoned call can be told apart.
    attempt: int = 0

    # ------------------------------------------------------------------
    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    # ------------------------------------------------------------------
    def transition(self, target: TaskStatus, *, revive: bool = False) -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if revive and self.status in _REVIVABLE and target in (TaskStatus.QUEUED, TaskStatus.WAITING):
            allowed = allowed | {target}
        if target not in allowed:
            raise InvalidTransitionError(
                f"Task {self.id}: illegal transition {self.status.value} -> {target.value}"
            )
        self.status = target
        if target not in (TaskStatus.FAILED, TaskStatus.TIMEOUT):
            self.error_message = None

    def advance_progress(self, value: int) -> None:
        if self.status is not TaskStatus.RUNNING:
            return
        self.progress = max(self.progress, min(100, int(value)))

    def record_error(self, error: BaseException) -> None:
        self.last_error = error
        self.error_message = str(error) or type(error).__name__

    def close_window(self, when: float) -> None:
        if self.execution_windows and self.execution_windows[-1][1] is None:
            start, _ = self.execution_windows[-1]
            self.execution_windows[-1] = (start, when)

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.id,
            "batch_id": self.batch_id,
            "status": self.status.value,
            "priority": self.priority.name.lower(),
            "progress": self.progress,
            "retry_count": self.retry_count,
            "enqueued_at": _iso(self.enqueued_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error_message": self.error_message if self.status in (TaskStatus.FAILED, TaskStatus.TIMEOUT) else None,
            "performance_metrics": asdict(self.metrics),
            "request": self.request.to_dict(),
        }


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

@dataclass
class Batch:
    id: str
    name: str
    priority: TaskPriority
    max_parallel: int
    created_at: float
    description: str = ""
    provider_name: Optional[str] = None
    tags: Tuple[str, ...] = ()
    task_ids: List[str] = field(default_factory=list)
    cancelled: bool = False
    paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority.name.lower(),
            "max_parallel": self.max_parallel,
            "created_at": _iso(self.created_at),
            "provider": self.provider_name,
            "tags": list(self.tags),
            "total_tasks": len(self.task_ids),
            "cancelled": self.cancelled,
            "paused": self.paused,
        }


@dataclass
class BatchStatistics:
    average_execution_time_ms: float = 0.0
    total_api_costs: float = 0.0
    error_rate: float = 0.0
    throughput_per_hour: float = 0.0
    peak_concurrent_tasks: int = 0
    queue_utilization: float = 0.0
    timeout_tasks: int = 0
    retried_tasks: int = 0


@dataclass
class BatchStatusReport:
    batch_id: str
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    running_tasks: int
    queued_tasks: int
    cancelled_tasks: int
    overall_progress: float
    statistics: BatchStatistics
    estimated_remaining_ms: Optional[int] = None
    task_details: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.running_tasks == 0 and self.queued_tasks == 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = [
    "ACTIVE_STATES",
    "Batch",
    "BatchSpec",
    "BatchStatistics",
    "BatchStatusReport",
    "IllustrationRequest",
    "PENDING_STATES",
    "PerformanceMetrics",
    "TERMINAL_STATES",
    "Task",
    "TaskPriority",
    "TaskStatus",
]
