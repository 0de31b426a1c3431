import json

from releasectl.monitoring import JsonLinesSink, ProgressEvent, ProgressStream
from releasectl.pipeline import StageOutcome, StageResult
from releasectl.rollout import RolloutPhase, RolloutRecord


def test_events_reach_subscribers_in_order():
    stream = ProgressStream(run_id="abc123", log=False)
    received = []
    stream.subscribe(received.append)

    stream.emit(ProgressEvent(event="stage", name="build", status="success"))
    stream.emit(ProgressEvent(event="stage", name="publish", status="failure"))

    assert [event.name for event in received] == ["build", "publish"]
    assert all(event.run_id == "abc123" for event in received)


def test_failing_subscriber_does_not_block_others():
    stream = ProgressStream(log=False)
    received = []

    def broken(event):
        raise RuntimeError("dashboard offline")

    stream.subscribe(broken)
    stream.subscribe(received.append)
    stream.emit(ProgressEvent(event="stage", name="build", status="success"))

    assert len(received) == 1


def test_stage_completed_carries_error():
    stream = ProgressStream(log=False)
    result = StageResult(name="publish", outcome=StageOutcome.FAILURE,
                         error={"kind": "PublishError", "message": "denied"})

    stream.stage_completed(result)

    event = stream.events[0]
    assert (event.event, event.status, event.detail) == ("stage", "failure", "denied")
    assert event.data["error"]["kind"] == "PublishError"


def test_phase_changed_uses_transition(spec_v1):
    stream = ProgressStream(log=False)
    record = RolloutRecord.start(spec_v1)
    record.transition(RolloutPhase.APPLYING, "registry.local/webapp:1.0.0")

    stream.phase_changed(record)

    event = stream.events[0]
    assert (event.event, event.name, event.status) == ("phase", "webapp", "Applying")
    assert event.at == record.transitions[-1].at
    assert event.data["image"] == "registry.local/webapp:1.0.0"


def test_json_lines_sink(tmp_path):
    path = tmp_path / "logs" / "progress.jsonl"
    stream = ProgressStream(run_id="abc123", log=False)
    stream.subscribe(JsonLinesSink(str(path)))

    stream.emit(ProgressEvent(event="stage", name="build", status="success"))
    stream.emit(ProgressEvent(event="stage", name="publish", status="success"))

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["name"] for line in lines] == ["build", "publish"]
    assert lines[0]["run_id"] == "abc123"
