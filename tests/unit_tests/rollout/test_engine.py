import asyncio
import time

import pytest

from releasectl.cluster import ClusterRejected, ClusterUnreachable, InMemoryClusterClient
from releasectl.errors import TransientInfraError, ValidationError
from releasectl.rollout import RolloutEngine, RolloutPhase, RolloutPolicy
from tests.consts import DEFAULT_TIMEOUT, POLL_INTERVAL, RETRY_DELAY, SHORT_TIMEOUT
from tests.fixtures.manifest_fixtures import make_spec

P = RolloutPhase


async def test_roll_out_succeeds(engine, cluster, spec_v1):
    record = await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)

    assert record.succeeded
    assert record.phases == [P.PENDING, P.APPLYING, P.WAITING, P.SUCCEEDED]
    assert (record.desired_replicas, record.ready_replicas) == (2, 2)
    assert not record.already_converged
    assert record.finished_at is not None
    assert cluster.applied_spec("webapp") == spec_v1


async def test_repeated_roll_out_is_a_no_op(engine, cluster, spec_v1):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    mutations = cluster.mutations

    record = await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)

    assert record.succeeded
    assert record.already_converged
    assert cluster.mutations == mutations


async def test_timeout_rolls_back_to_previous_spec(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.stall_image(str(spec_v2.image))

    record = await engine.roll_out(spec_v2, SHORT_TIMEOUT)

    assert record.phases[-3:] == [P.TIMED_OUT, P.ROLLING_BACK, P.ROLLED_BACK]
    assert record.previous == spec_v1
    assert record.error_kind == "ConvergenceFailure"
    assert "replicas ready" in record.failure_reason
    assert cluster.applied_spec("webapp") == spec_v1
    assert cluster.get_status("webapp").converged


async def test_timeout_is_observed_within_one_poll_interval(engine, cluster, spec_v2):
    cluster.stall_image(str(spec_v2.image))

    record = await engine.roll_out(spec_v2, SHORT_TIMEOUT)

    times = {entry.phase: entry.at for entry in record.transitions}
    waited = (times[P.TIMED_OUT] - times[P.WAITING]).total_seconds()
    assert SHORT_TIMEOUT <= waited + 0.01
    assert waited <= SHORT_TIMEOUT + POLL_INTERVAL + 0.2


async def test_rolled_back_rollout_ends_within_one_poll_interval(engine, cluster):
    stable = make_spec(tag="1.0.0", replicas=20)
    stalled = make_spec(tag="2.0.0", replicas=20)
    await engine.roll_out(stable, DEFAULT_TIMEOUT)
    cluster.stall_image(str(stalled.image))

    started = time.monotonic()
    record = await engine.roll_out(stalled, SHORT_TIMEOUT)
    elapsed = time.monotonic() - started

    assert record.phases[-3:] == [P.TIMED_OUT, P.ROLLING_BACK, P.ROLLED_BACK]
    assert elapsed <= SHORT_TIMEOUT + POLL_INTERVAL + 0.1
    assert cluster.applied_spec("webapp") == stable
    # 20 replicas cannot come back within one poll interval
    assert "replicas ready so far" in record.transitions[-1].detail


async def test_terminal_failure_rolls_back(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.fail_image(str(spec_v2.image))

    record = await engine.roll_out(spec_v2, DEFAULT_TIMEOUT)

    assert record.phases[-3:] == [P.FAILED, P.ROLLING_BACK, P.ROLLED_BACK]
    assert "CrashLoopBackOff" in record.failure_reason
    assert cluster.applied_spec("webapp") == spec_v1


async def test_failure_without_previous_spec_stays_failed(engine, cluster, spec_v2):
    cluster.stall_image(str(spec_v2.image))

    record = await engine.roll_out(spec_v2, SHORT_TIMEOUT)

    assert record.phase == P.TIMED_OUT
    assert record.previous is None
    assert P.ROLLING_BACK not in record.phases


async def test_auto_rollback_can_be_disabled(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.fail_image(str(spec_v2.image))

    record = await engine.roll_out(spec_v2, DEFAULT_TIMEOUT, auto_rollback=False)

    assert record.phase == P.FAILED
    assert cluster.applied_spec("webapp") == spec_v2


async def test_failed_rollback(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.fail_image(str(spec_v2.image))
    cluster.fail_image(str(spec_v1.image))

    record = await engine.roll_out(spec_v2, DEFAULT_TIMEOUT)

    assert record.phases[-2:] == [P.ROLLING_BACK, P.ROLLBACK_FAILED]
    assert record.error_kind == "RollbackFailure"


async def test_transient_errors_are_retried(engine, cluster, spec_v1):
    cluster.fail_next(2)

    record = await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)

    assert record.succeeded
    assert cluster.calls[:3] == [("apply", "webapp")] * 3


async def test_exhausted_retries_escalate(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.fail_next(3)

    record = await engine.roll_out(spec_v2, DEFAULT_TIMEOUT)

    assert record.phase == P.FAILED
    assert record.error_kind == TransientInfraError.kind
    assert P.ROLLING_BACK not in record.phases
    assert cluster.applied_spec("webapp") == spec_v1


async def test_rejected_spec_is_not_retried(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.reject_image(str(spec_v2.image))
    cluster.calls.clear()

    record = await engine.roll_out(spec_v2, DEFAULT_TIMEOUT)

    assert record.phase == P.FAILED
    assert record.error_kind == ValidationError.kind
    assert cluster.calls == [("apply", "webapp")]
    assert cluster.applied_spec("webapp") == spec_v1


async def test_cancel_rolls_back(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.stall_image(str(spec_v2.image))
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.1, cancel.set)

    record = await engine.roll_out(spec_v2, DEFAULT_TIMEOUT, cancel=cancel)

    assert record.phases[-3:] == [P.CANCELLED, P.ROLLING_BACK, P.ROLLED_BACK]
    assert cluster.applied_spec("webapp") == spec_v1


async def test_cancel_without_rollback(cluster, history, spec_v1, spec_v2):
    policy = RolloutPolicy(poll_interval=POLL_INTERVAL, initial_delay=RETRY_DELAY, rollback_on_cancel=False)
    engine = RolloutEngine(cluster, history=history, policy=policy)
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    cluster.stall_image(str(spec_v2.image))
    cancel = asyncio.Event()
    cancel.set()

    record = await engine.roll_out(spec_v2, DEFAULT_TIMEOUT, cancel=cancel)

    assert record.phase == P.CANCELLED
    assert cluster.applied_spec("webapp") == spec_v2


async def test_task_cancellation_is_recorded(engine, history, cluster, spec_v2):
    cluster.stall_image(str(spec_v2.image))
    task = asyncio.create_task(engine.roll_out(spec_v2, DEFAULT_TIMEOUT))
    await asyncio.sleep(0.1)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    latest = history.latest("webapp")
    assert latest.phase == P.CANCELLED
    assert latest.finished_at is not None


async def test_untagged_image_is_rejected(engine, cluster):
    with pytest.raises(ValidationError):
        await engine.roll_out(make_spec(tag=""), DEFAULT_TIMEOUT)
    assert cluster.calls == []


@pytest.mark.parametrize("timeout", [0, -1])
async def test_non_positive_timeout_is_rejected(engine, spec_v1, timeout):
    with pytest.raises(ValidationError):
        await engine.roll_out(spec_v1, timeout)


async def test_operator_rollback(engine, cluster, spec_v1, spec_v2):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    await engine.roll_out(spec_v2, DEFAULT_TIMEOUT)

    record = await engine.roll_back("webapp", DEFAULT_TIMEOUT)

    assert record.succeeded
    assert record.target == spec_v1
    assert cluster.applied_spec("webapp") == spec_v1


async def test_operator_rollback_without_history(engine):
    with pytest.raises(ValidationError):
        await engine.roll_back("webapp", DEFAULT_TIMEOUT)


async def test_progress_follows_phases(engine, progress, spec_v1):
    record = await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)

    statuses = [event.status for event in progress.events if event.name == "webapp"]
    assert statuses == [phase.value for phase in record.phases]
    assert all(event.run_id == "test-run" for event in progress.events)


async def test_concurrent_rollouts(engine, cluster):
    mysql = make_spec(name="mysql", image="mysql", tag="8.0", replicas=1)
    webapp = make_spec(name="webapp", replicas=3)

    records = await asyncio.gather(
        engine.roll_out(mysql, DEFAULT_TIMEOUT),
        engine.roll_out(webapp, DEFAULT_TIMEOUT),
    )

    assert all(record.succeeded for record in records)
    assert set(cluster.workloads) == {"mysql", "webapp"}


async def test_observe(engine, spec_v1):
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)

    status = await engine.observe("webapp")
    assert status.ready_replicas == 2


async def test_status_rejected_while_polling(history, policy, spec_v1):
    class ForbiddenStatusCluster(InMemoryClusterClient):
        def get_status(self, workload):
            raise ClusterRejected(f"read deployment {workload}: 403 Forbidden")

    engine = RolloutEngine(ForbiddenStatusCluster(), history=history, policy=policy)

    record = await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)

    assert record.phase == P.FAILED
    assert record.error_kind == ValidationError.kind
    assert "403" in record.failure_reason


async def test_transient_retries_stop_at_the_deadline(history, spec_v1):
    class FlakyStatusCluster(InMemoryClusterClient):
        status_reads = 0

        def get_status(self, workload):
            self.status_reads += 1
            if self.status_reads > 1:
                raise ClusterUnreachable(f"read deployment {workload}: connection reset")
            return super().get_status(workload)

    policy = RolloutPolicy(poll_interval=POLL_INTERVAL, max_attempts=5, initial_delay=0.5, max_delay=5.0)
    engine = RolloutEngine(FlakyStatusCluster(), history=history, policy=policy)

    started = time.monotonic()
    record = await engine.roll_out(spec_v1, SHORT_TIMEOUT)
    elapsed = time.monotonic() - started

    assert record.phase == P.FAILED
    assert record.error_kind == TransientInfraError.kind
    assert elapsed <= SHORT_TIMEOUT + POLL_INTERVAL + 0.1


async def test_operator_rollback_after_automatic_rollback(engine, cluster, spec_v1, spec_v2):
    spec_v3 = make_spec(tag="3.0.0")
    await engine.roll_out(spec_v1, DEFAULT_TIMEOUT)
    await engine.roll_out(spec_v2, DEFAULT_TIMEOUT)
    cluster.stall_image(str(spec_v3.image))
    automatic = await engine.roll_out(spec_v3, SHORT_TIMEOUT)
    assert automatic.phase == P.ROLLED_BACK

    record = await engine.roll_back("webapp", DEFAULT_TIMEOUT)

    assert record.succeeded
    assert not record.already_converged
    assert record.target == spec_v1
    assert cluster.applied_spec("webapp") == spec_v1
