from __future__ import annotations

import asyncio

from conftest import FakeProvider, fast_policy, make_service, prompts
from illubatch.errors import NetworkError, SafetyFilterError, TransientProviderError
from illubatch.models import TaskStatus


def test_priority_then_fifo_order_within_a_batch() -> None:
    async def scenario():
        provider = FakeProvider()
        async with make_service(provider) as service:
            submitted = service.submit_batch(
                "ordering",
                "normal",
                [
                    {"prompt": "A", "priority": "low"},
                    {"prompt": "B", "priority": "urgent"},
                    {"prompt": "C"},
                    {"prompt": "D", "priority": "urgent"},
                ],
                max_parallel=1,
            )
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
        return provider.started

    assert asyncio.run(scenario()) == ["B", "D", "C", "A"]


def test_higher_priority_batch_dispatched_first_across_batches() -> None:
    async def scenario():
        provider = FakeProvider()
        async with make_service(provider, global_max_parallel=1, fair_share=False) as service:
            low = service.submit_batch("low", "low", prompts("l1", "l2"), max_parallel=2)
            high = service.submit_batch("high", "high", prompts("h1", "h2"), max_parallel=2)
            await service.wait_for_batch(low["batch_id"], timeout=5)
            await service.wait_for_batch(high["batch_id"], timeout=5)
        return provider

    provider = asyncio.run(scenario())
    assert provider.started == ["h1", "h2", "l1", "l2"]
    assert provider.peak == 1


def test_fair_share_serves_idle_batch_before_second_slot_of_busy_one() -> None:
    async def scenario(fair_share: bool):
        gate = asyncio.Event()
        provider = FakeProvider(gate=gate)
        async with make_service(provider, global_max_parallel=2, fair_share=fair_share) as service:
            busy = service.submit_batch("busy", "high", prompts("a1", "a2", "a3"), max_parallel=2)
            idle = service.submit_batch("idle", "low", prompts("b1", "b2"), max_parallel=2)
            await asyncio.sleep(0.05)
            first_wave = list(provider.started)
            gate.set()
            await service.wait_for_batch(busy["batch_id"], timeout=5)
            await service.wait_for_batch(idle["batch_id"], timeout=5)
        return first_wave

    assert asyncio.run(scenario(True)) == ["a1", "b1"]
    assert asyncio.run(scenario(False)) == ["a1", "a2"]


def test_per_batch_cap_is_never_exceeded() -> None:
    async def scenario():
        provider = FakeProvider(delay=0.02)
        async with make_service(provider) as service:
            submitted = service.submit_batch("capped", "normal", prompts("1", "2", "3", "4", "5"), max_parallel=2)
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
            status = service.get_batch_status(submitted["batch_id"])
        return provider, status

    provider, status = asyncio.run(scenario())
    assert provider.peak == 2
    assert status["report"]["statistics"]["peak_concurrent_tasks"] == 2
    assert status["report"]["completed_tasks"] == 5


def test_global_cap_defaults_to_largest_batch_limit() -> None:
    async def scenario(global_max_parallel):
        provider = FakeProvider(delay=0.05)
        async with make_service(provider, global_max_parallel=global_max_parallel) as service:
            first = service.submit_batch("one", "normal", prompts("a", "b", "c"), max_parallel=2)
            second = service.submit_batch("two", "normal", prompts("d", "e", "f"), max_parallel=2)
            await service.wait_for_batch(first["batch_id"], timeout=5)
            await service.wait_for_batch(second["batch_id"], timeout=5)
        return provider.peak

    assert asyncio.run(scenario(None)) == 2
    assert asyncio.run(scenario(0)) == 4


def test_rate_limit_spacing_between_dispatches() -> None:
    async def scenario():
        provider = FakeProvider(delay=0.0, min_interval_seconds=0.05)
        async with make_service(provider) as service:
            submitted = service.submit_batch("spaced", "normal", prompts("1", "2", "3"), max_parallel=3)
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
        return provider.start_times

    times = asyncio.run(scenario())
    assert len(times) == 3
    gaps = [later - earlier for earlier, later in zip(times, times[1:])]
    assert all(gap >= 0.04 for gap in gaps)


def test_timeout_without_budget_ends_in_timeout_state() -> None:
    async def scenario():
        provider = FakeProvider(delay=0.5)
        service = make_service(provider, retry_policy=fast_policy(max_retries=0), task_timeout=0.05)
        async with service:
            submitted = service.submit_batch("slow", "normal", prompts("slow"), max_parallel=1)
            finished = await service.wait_for_batch(submitted["batch_id"], timeout=5)
            task = service.scheduler.tasks_for(submitted["batch_id"])[0]
            status = service.get_batch_status(submitted["batch_id"])
        return finished, task, status

    finished, task, status = asyncio.run(scenario())
    assert finished["finished"] is True
    assert task.status is TaskStatus.TIMEOUT
    assert "exceeded" in task.error_message
    assert status["report"]["failed_tasks"] == 1
    assert status["report"]["statistics"]["timeout_tasks"] == 1


def test_stop_cancels_calls_abandoned_after_a_timeout() -> None:
    async def scenario():
        provider = FakeProvider(gate=asyncio.Event())
        service = make_service(provider, retry_policy=fast_policy(max_retries=0), task_timeout=0.05)
        async with service:
            submitted = service.submit_batch("stuck", "normal", prompts("stuck"), max_parallel=1)
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
            active_before_stop = provider.active
        return active_before_stop, provider.active, service.scheduler._abandoned

    active_before_stop, active_after_stop, abandoned = asyncio.run(scenario())
    assert active_before_stop == 1
    assert active_after_stop == 0
    assert abandoned == set()

def test_timeout_is_retried_while_budget_remains() -> None:
    async def scenario():
        provider = FakeProvider(delay=0.5)
        service = make_service(provider, retry_policy=fast_policy(max_retries=1), task_timeout=0.05)
        async with service:
            submitted = service.submit_batch("slow", "normal", prompts("slow"), max_parallel=1)
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
            task = service.scheduler.tasks_for(submitted["batch_id"])[0]
        return provider, task

    provider, task = asyncio.run(scenario())
    assert provider.started == ["slow", "slow"]
    assert task.retry_count == 1
    assert task.status is TaskStatus.TIMEOUT


def test_retryable_failure_is_retried_automatically() -> None:
    async def scenario():
        provider = FakeProvider(outcomes={"flaky": [NetworkError("reset"), "ok"]})
        async with make_service(provider) as service:
            submitted = service.submit_batch("flaky", "normal", prompts("flaky"), max_parallel=1)
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
            task = service.scheduler.tasks_for(submitted["batch_id"])[0]
        return task

    task = asyncio.run(scenario())
    assert task.status is TaskStatus.COMPLETED
    assert task.retry_count == 1
    assert task.metrics.api_calls_count == 2
    assert task.progress == 100
    assert task.error_message is None


def test_retries_stop_when_budget_is_spent() -> None:
    async def scenario():
        provider = FakeProvider(outcomes={"down": [NetworkError("down")] * 5})
        async with make_service(provider, retry_policy=fast_policy(max_retries=2)) as service:
            submitted = service.submit_batch("down", "normal", prompts("down"), max_parallel=1)
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
            task = service.scheduler.tasks_for(submitted["batch_id"])[0]
        return provider, task

    provider, task = asyncio.run(scenario())
    assert len(provider.started) == 3
    assert task.status is TaskStatus.FAILED
    assert task.retry_count == 2
    assert task.error_message == "down"


def test_dependent_task_waits_for_its_dependency() -> None:
    async def scenario():
        provider = FakeProvider(delay=0.02)
        async with make_service(provider) as service:
            submitted = service.submit_batch(
                "chain",
                "normal",
                [{"prompt": "cover", "priority": "low"}, {"prompt": "sequel", "priority": "urgent", "depends_on": [0]}],
                max_parallel=2,
            )
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
            tasks = service.scheduler.tasks_for(submitted["batch_id"])
        return provider, tasks

    provider, tasks = asyncio.run(scenario())
    assert provider.started == ["cover", "sequel"]
    assert [task.status for task in tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]


def test_failed_dependency_fails_dependents_transitively() -> None:
    async def scenario():
        provider = FakeProvider(outcomes={"base": [SafetyFilterError("blocked")]})
        async with make_service(provider) as service:
            submitted = service.submit_batch(
                "chain",
                "normal",
                [
                    {"prompt": "base"},
                    {"prompt": "middle", "depends_on": [0]},
                    {"prompt": "top", "depends_on": [1]},
                    {"prompt": "independent"},
                ],
                max_parallel=2,
            )
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
            tasks = service.scheduler.tasks_for(submitted["batch_id"])
        return provider, tasks

    provider, tasks = asyncio.run(scenario())
    assert sorted(provider.started) == ["base", "independent"]
    statuses = [task.status for task in tasks]
    assert statuses == [TaskStatus.FAILED, TaskStatus.FAILED, TaskStatus.FAILED, TaskStatus.COMPLETED]
    assert "Dependency" in tasks[1].error_message
    assert tasks[1].retry_count == 0


def test_manual_retry_of_a_dependency_restores_its_dependents() -> None:
    async def scenario():
        provider = FakeProvider(outcomes={"base": [TransientProviderError("503"), "ok"]})
        async with make_service(provider, retry_policy=fast_policy(auto_retry=False)) as service:
            submitted = service.submit_batch(
                "chain",
                "normal",
                [{"prompt": "base"}, {"prompt": "middle", "depends_on": [0]}, {"prompt": "top", "depends_on": [1]}],
                max_parallel=2,
            )
            batch_id = submitted["batch_id"]
            await service.wait_for_batch(batch_id, timeout=5)
            tasks = service.scheduler.tasks_for(batch_id)
            failed = [task.status for task in tasks]

            retried = service.retry_failed_tasks(batch_id)
            restored = [(task.status, task.error_message) for task in tasks]
            await service.wait_for_batch(batch_id, timeout=5)
        return provider, failed, retried, restored, tasks

    provider, failed, retried, restored, tasks = asyncio.run(scenario())
    assert failed == [TaskStatus.FAILED] * 3
    assert retried["retried_tasks"] == 3
    assert restored == [(TaskStatus.QUEUED, None), (TaskStatus.WAITING, None), (TaskStatus.WAITING, None)]
    assert [task.status for task in tasks] == [TaskStatus.COMPLETED] * 3
    assert provider.started == ["base", "base", "middle", "top"]
    assert [task.retry_count for task in tasks] == [1, 0, 0]


def test_dependents_stay_failed_while_another_dependency_is_failed() -> None:
    async def scenario():
        provider = FakeProvider(
            outcomes={"flaky": [TransientProviderError("503"), "ok"], "blocked": [SafetyFilterError("no")]}
        )
        async with make_service(provider, retry_policy=fast_policy(auto_retry=False)) as service:
            submitted = service.submit_batch(
                "fan-in",
                "normal",
                [{"prompt": "flaky"}, {"prompt": "blocked"}, {"prompt": "joined", "depends_on": [0, 1]}],
                max_parallel=2,
            )
            batch_id = submitted["batch_id"]
            await service.wait_for_batch(batch_id, timeout=5)
            retried = service.retry_failed_tasks(batch_id)
            await service.wait_for_batch(batch_id, timeout=5)
            tasks = service.scheduler.tasks_for(batch_id)
        return retried, tasks

    retried, tasks = asyncio.run(scenario())
    assert retried["retried_tasks"] == 1
    assert [task.status for task in tasks] == [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.FAILED]
    assert "Dependency" in tasks[2].error_message

def test_queue_statistics_track_peak() -> None:
    async def scenario():
        provider = FakeProvider(delay=0.02)
        async with make_service(provider) as service:
            submitted = service.submit_batch("stats", "normal", prompts("1", "2", "3"), max_parallel=3)
            await service.wait_for_batch(submitted["batch_id"], timeout=5)
            return service.get_queue_statistics()

    statistics = asyncio.run(scenario())
    assert statistics["success"] is True
    assert statistics["statistics"]["peak_running_tasks"] == 3
    assert statistics["statistics"]["running_tasks"] == 0
    assert statistics["statistics"]["pending_tasks"] == 0
