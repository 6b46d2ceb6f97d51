from __future__ import annotations

import pytest

from illubatch.errors import InvalidTransitionError, NetworkError, ValidationError
from illubatch.models import IllustrationRequest, Task, TaskPriority, TaskStatus
from illubatch.providers.base import AspectRatio, ColorMode


def make_task(status: TaskStatus = TaskStatus.QUEUED) -> Task:
    task = Task(
        id="task-1",
        batch_id="batch-1",
        request=IllustrationRequest(prompt="a lighthouse at dusk"),
        priority=TaskPriority.NORMAL,
        max_retries=3,
    )
    task.status = status
    return task


def test_happy_path_transitions() -> None:
    task = make_task()
    task.transition(TaskStatus.RUNNING)
    task.transition(TaskStatus.RETRYING)
    task.transition(TaskStatus.QUEUED)
    task.transition(TaskStatus.RUNNING)
    task.transition(TaskStatus.COMPLETED)
    assert task.is_terminal


@pytest.mark.parametrize(
    "start, target",
    [
        (TaskStatus.QUEUED, TaskStatus.COMPLETED),
        (TaskStatus.COMPLETED, TaskStatus.RUNNING),
        (TaskStatus.CANCELLED, TaskStatus.QUEUED),
        (TaskStatus.FAILED, TaskStatus.QUEUED),
        (TaskStatus.RETRYING, TaskStatus.RUNNING),
    ],
)
def test_illegal_transitions_raise(start: TaskStatus, target: TaskStatus) -> None:
    task = make_task(start)
    with pytest.raises(InvalidTransitionError):
        task.transition(target)
    assert task.status is start


def test_revive_only_leaves_failed_or_timeout() -> None:
    failed = make_task(TaskStatus.FAILED)
    failed.transition(TaskStatus.QUEUED, revive=True)
    assert failed.status is TaskStatus.QUEUED

    timed_out = make_task(TaskStatus.TIMEOUT)
    timed_out.transition(TaskStatus.QUEUED, revive=True)
    assert timed_out.status is TaskStatus.QUEUED

    blocked = make_task(TaskStatus.FAILED)
    blocked.transition(TaskStatus.WAITING, revive=True)
    assert blocked.status is TaskStatus.WAITING

    completed = make_task(TaskStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        completed.transition(TaskStatus.QUEUED, revive=True)
    with pytest.raises(InvalidTransitionError):
        make_task(TaskStatus.FAILED).transition(TaskStatus.RUNNING, revive=True)


def test_error_message_only_kept_on_failure_states() -> None:
    task = make_task(TaskStatus.RUNNING)
    task.record_error(NetworkError("connection reset"))
    task.transition(TaskStatus.FAILED)
    assert task.error_message == "connection reset"
    assert task.to_dict()["error_message"] == "connection reset"

    task.transition(TaskStatus.QUEUED, revive=True)
    assert task.error_message is None


def test_progress_is_monotonic_while_running() -> None:
    task = make_task()
    task.advance_progress(50)
    assert task.progress == 0

    task.transition(TaskStatus.RUNNING)
    task.advance_progress(20)
    task.advance_progress(10)
    assert task.progress == 20
    task.advance_progress(250)
    assert task.progress == 100


def test_priority_parse_accepts_names_and_numbers() -> None:
    assert TaskPriority.parse("high") is TaskPriority.HIGH
    assert TaskPriority.parse("URGENT") is TaskPriority.URGENT
    assert TaskPriority.parse(1) is TaskPriority.LOW
    assert TaskPriority.parse("4") is TaskPriority.CRITICAL
    assert TaskPriority.parse(None, TaskPriority.NORMAL) is TaskPriority.NORMAL
    assert TaskPriority.URGENT > TaskPriority.HIGH > TaskPriority.NORMAL > TaskPriority.LOW
    with pytest.raises(ValueError):
        TaskPriority.parse("whenever")
    with pytest.raises(ValueError):
        TaskPriority.parse(None)


def test_request_from_mapping_accepts_aliases() -> None:
    request = IllustrationRequest.from_mapping(
        {
            "scene_description": "a dragon over the harbour",
            "character_id": "hero",
            "aspect_ratio": "LANDSCAPE",
            "color_mode": "monochrome",
            "priority": "high",
            "seed": "42",
        }
    )
    assert request.prompt == "a dragon over the harbour"
    assert request.character_ids == ("hero",)
    assert request.aspect_ratio is AspectRatio.LANDSCAPE
    assert request.color_mode is ColorMode.MONOCHROME
    assert request.priority is TaskPriority.HIGH
    assert request.seed == 42
    assert request.generation_options().color_mode is ColorMode.MONOCHROME


@pytest.mark.parametrize(
    "payload",
    [
        "just a string",
        {"prompt": "x", "color_mode": "sepia"},
        {"prompt": "x", "aspect_ratio": "2:1"},
        {"prompt": "x", "priority": "soon"},
    ],
)
def test_request_from_mapping_rejects_bad_input(payload) -> None:
    with pytest.raises(ValidationError):
        IllustrationRequest.from_mapping(payload)
