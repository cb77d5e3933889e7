import os
import threading
import time
from pathlib import Path

import pytest

from chunkflow.backend.events import CompletedEvent, ProgressEvent
from chunkflow.chunks import ChunkOrchestrator, ChunkResource, ChunkStatus
from chunkflow.config import ChunkSettings
from chunkflow.correlator import ExecutionCorrelator
from chunkflow.errors import SubmissionError
from chunkflow.payload import FieldMap

TEMPLATE = {
    "1": {"class_type": "LoadVideo", "inputs": {"video": "", "skip_first_frames": 0, "frame_load_cap": 0}},
    "2": {"class_type": "Text", "inputs": {"string": ""}},
    "81": {"class_type": "VideoCombine", "inputs": {"filename_prefix": "default"}},
}

FIELDS = FieldMap(
    {
        "video": "1/inputs/video",
        "frame_start": "1/inputs/skip_first_frames",
        "frame_count": "1/inputs/frame_load_cap",
        "prompt": "2/inputs/string",
        "output_prefix": "81/inputs/filename_prefix",
    }
)


def fast_settings(**overrides) -> ChunkSettings:
    values = dict(
        chunk_size=49,
        settle_before_chunk_s=0.0,
        settle_after_chunk_s=0.0,
        chunk_timeout_s=2.0,
        fallback_after_s=0.0,
        confirm_interval_s=60.0,
        artifact_timeout_s=0.0,
        artifact_min_age_s=0.0,
    )
    values.update(overrides)
    return ChunkSettings(**values)


def backend_writes_outputs(out_dir: Path, skip=()):
    """Simulated backend: writes the chunk file and reports completion."""

    def on_submit(session, payload, prompt_id):
        prefix = payload["81"]["inputs"]["filename_prefix"]
        number = int(prompt_id.rsplit("-", 1)[1])
        if number not in skip:
            (out_dir / f"{prefix}_00001.mp4").write_bytes(b"video")
        session.events.put(ProgressEvent(value=1, max=2, correlation_id=prompt_id))
        session.events.put(CompletedEvent(correlation_id=prompt_id))

    return on_submit


@pytest.fixture
def video(tmp_path: Path) -> Path:
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"source")
    return path


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    path = tmp_path / "output"
    path.mkdir()
    return path


def make_orchestrator(manager, session, out_dir, settings=None, sleep=None):
    return ChunkOrchestrator(
        manager,
        session,
        settings or fast_settings(),
        fields=FIELDS,
        output_dirs=[out_dir],
        correlator=ExecutionCorrelator(session, poll_interval_s=0.01),
        sleep=sleep or (lambda seconds, cancel, what: None),
    )


def test_all_chunks_succeed_in_order(fake_manager, session, out_dir, video):
    fake_manager.on_submit = backend_writes_outputs(out_dir)
    orch = make_orchestrator(fake_manager, session, out_dir)

    run = orch.run(
        130,
        TEMPLATE,
        stem="clip",
        resources=[ChunkResource("video", video, "video")],
        values={"prompt": "a cat"},
    )

    assert [t.status for t in run.tasks] == [ChunkStatus.SUCCEEDED] * 3
    assert [p.name for p in run.artifacts] == [
        "clip_chunk01_00001.mp4",
        "clip_chunk02_00001.mp4",
        "clip_chunk03_00001.mp4",
    ]
    starts = [p["1"]["inputs"]["skip_first_frames"] for p in fake_manager.payloads]
    counts = [p["1"]["inputs"]["frame_load_cap"] for p in fake_manager.payloads]
    assert starts == [0, 49, 98]
    assert counts == [49, 49, 32]
    assert all(p["2"]["inputs"]["string"] == "a cat" for p in fake_manager.payloads)
    assert all(p["1"]["inputs"]["video"] == "clip.mp4" for p in fake_manager.payloads)
    # Uploads and connectivity checks repeat per chunk.
    assert fake_manager.uploads == [video] * 3
    assert fake_manager.ensure_calls == 3
    # The template itself is never mutated.
    assert TEMPLATE["81"]["inputs"]["filename_prefix"] == "default"


def test_submission_failure_does_not_abort_loop(fake_manager, session, out_dir):
    writer = backend_writes_outputs(out_dir)

    def on_submit(sess, payload, prompt_id):
        if prompt_id == "prompt-2":
            raise SubmissionError("node 81 rejected", status_code=400)
        writer(sess, payload, prompt_id)

    fake_manager.on_submit = on_submit
    run = make_orchestrator(fake_manager, session, out_dir).run(130, TEMPLATE, stem="clip")

    assert [t.status for t in run.tasks] == [ChunkStatus.SUCCEEDED, ChunkStatus.FAILED, ChunkStatus.SUCCEEDED]
    assert "rejected" in run.tasks[1].error
    assert [p.name for p in run.artifacts] == ["clip_chunk01_00001.mp4", "clip_chunk03_00001.mp4"]


def test_missing_artifact_marks_chunk_failed(fake_manager, session, out_dir):
    fake_manager.on_submit = backend_writes_outputs(out_dir, skip={1})
    run = make_orchestrator(fake_manager, session, out_dir).run(60, TEMPLATE, stem="clip")

    assert run.tasks[0].status == ChunkStatus.FAILED
    assert "clip_chunk01" in run.tasks[0].error
    assert run.tasks[1].status == ChunkStatus.SUCCEEDED
    assert len(run.artifacts) == 1


def test_cancel_stops_scheduling(fake_manager, session, out_dir):
    cancel = threading.Event()
    writer = backend_writes_outputs(out_dir)

    def on_submit(sess, payload, prompt_id):
        if prompt_id == "prompt-2":
            cancel.set()
        writer(sess, payload, prompt_id)

    fake_manager.on_submit = on_submit
    run = make_orchestrator(fake_manager, session, out_dir).run(130, TEMPLATE, stem="clip", cancel=cancel)

    assert run.cancelled is True
    assert [t.status for t in run.tasks] == [ChunkStatus.SUCCEEDED, ChunkStatus.FAILED, ChunkStatus.PENDING]
    assert len(fake_manager.payloads) == 2
    # Finished work is kept.
    assert (out_dir / "clip_chunk01_00001.mp4").exists()


def test_progress_is_monotonic_and_reaches_100(fake_manager, session, out_dir):
    fake_manager.on_submit = backend_writes_outputs(out_dir)
    seen = []
    make_orchestrator(fake_manager, session, out_dir).run(
        130, TEMPLATE, stem="clip", on_progress=lambda pct, msg: seen.append(pct)
    )

    assert seen == sorted(seen)
    assert all(0.0 <= p <= 100.0 for p in seen)
    assert seen[-1] == pytest.approx(100.0)
    # Half-way through the first chunk's steps.
    assert pytest.approx(100.0 * 0.5 / 3) in seen


def test_settle_delays_between_chunks(fake_manager, session, out_dir):
    fake_manager.on_submit = backend_writes_outputs(out_dir)
    waits = []
    orch = make_orchestrator(
        fake_manager,
        session,
        out_dir,
        settings=fast_settings(settle_before_chunk_s=5.0, settle_after_chunk_s=5.0),
        sleep=lambda seconds, cancel, what: waits.append((what, seconds)),
    )
    orch.run(130, TEMPLATE, stem="clip")

    assert waits.count(("settle before chunk", 5.0)) == 2
    assert waits.count(("settle after chunk", 5.0)) == 3
    assert waits[0] == ("settle after chunk", 5.0)


def test_output_subfolder_prefix(fake_manager, session, out_dir):
    sub = out_dir / "wan_vace"
    sub.mkdir()

    def on_submit(sess, payload, prompt_id):
        prefix = payload["81"]["inputs"]["filename_prefix"]
        assert prefix.startswith("wan_vace/")
        (out_dir / f"{prefix}_00001.mp4").write_bytes(b"video")
        sess.events.put(CompletedEvent(correlation_id=prompt_id))

    fake_manager.on_submit = on_submit
    orch = make_orchestrator(fake_manager, session, out_dir, settings=fast_settings(output_subfolder="wan_vace"))
    run = orch.run(10, TEMPLATE, stem="clip")

    assert run.artifacts == [sub / "clip_chunk01_00001.mp4"]


def test_output_from_earlier_run_is_not_accepted(fake_manager, session, out_dir):
    stale = out_dir / "clip_chunk01_00001.mp4"
    stale.write_bytes(b"old render")
    then = time.time() - 300
    os.utime(stale, (then, then))
    # Backend accepts the prompt but never finishes it.
    fake_manager.on_submit = lambda sess, payload, prompt_id: None
    orch = make_orchestrator(
        fake_manager, session, out_dir, settings=fast_settings(chunk_timeout_s=0.3, confirm_interval_s=0.0)
    )

    run = orch.run(10, TEMPLATE, stem="clip")

    assert run.tasks[0].status == ChunkStatus.FAILED
    assert run.tasks[0].artifact_path is None
    assert run.artifacts == []
    assert stale.exists()
