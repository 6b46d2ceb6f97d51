import json
from pathlib import Path

from illubatch.errors import SafetyFilterError
from illubatch.models import IllustrationRequest, Task, TaskPriority, TaskStatus
from illubatch.output_writer import OutputWriter
from illubatch.providers.base import ImageResult
from illubatch.providers.prompting import prompt_hash


def read_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


def make_task(status: TaskStatus) -> Task:
    return Task(
        id="abcdef1234567890",
        batch_id="batch_1",
        request=IllustrationRequest(prompt="a lantern"),
        priority=TaskPriority.NORMAL,
        max_retries=3,
        status=status,
    )


def test_completed_task_writes_image_and_sidecar(tmp_path: Path, logger):
    task = make_task(TaskStatus.COMPLETED)
    task.result = ImageResult(
        data=b"\xff\xd8jpeg",
        content_type="image/jpeg",
        provider="pollinations",
        prompt="a lantern, full color",
        metadata={"seed": 1},
    )

    sidecar = OutputWriter(tmp_path, logger=logger).write(task, index=4)

    image = tmp_path / "batch_1" / "004-abcdef12.jpg"
    assert image.read_bytes() == b"\xff\xd8jpeg"
    assert sidecar == tmp_path / "batch_1" / "004-abcdef12.json"
    record = read_json(sidecar)
    assert record["image_path"] == str(image)
    assert record["prompt_hash"] == prompt_hash("a lantern, full color")
    assert record["provider_metadata"] == {"seed": 1}
    assert not list(tmp_path.rglob("*.tmp"))


def test_failed_task_only_writes_sidecar(tmp_path: Path, logger):
    task = make_task(TaskStatus.RUNNING)
    task.record_error(SafetyFilterError("blocked"))
    task.transition(TaskStatus.FAILED)

    sidecar = OutputWriter(tmp_path, logger=logger).write(task, index=0)

    assert sidecar.parent == tmp_path / "batch_1" / "failed"
    record = read_json(sidecar)
    assert record["status"] == "failed"
    assert record["error_message"] == "blocked"
    assert "image_path" not in record
    assert not list((tmp_path / "batch_1").glob("*.jpg"))
