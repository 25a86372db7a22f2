import csv
import re
import time

import pytest

from image_converter.core import ConversionService
from image_converter.jobs import (
    BatchOrchestrator,
    CancellationToken,
    ConversionJob,
    JobStateError,
    JobStatus,
)
from image_converter.models import ConversionSettings, DocumentOptions, OutputFormat, SourceAsset

PAGE_RE = re.compile(rb"/Type\s*/Page(?!s)")
PNG_SETTINGS = ConversionSettings(output_format=OutputFormat.PNG, max_width=32)


def build_orchestrator(service: ConversionService, settings: ConversionSettings = PNG_SETTINGS) -> BatchOrchestrator:
    return BatchOrchestrator(service, settings)


def test_submit_all_completes_jobs_in_order(service, png_asset) -> None:
    orchestrator = build_orchestrator(service)
    jobs = orchestrator.extend([png_asset(name="a.png"), png_asset(name="b.png")])
    updates: list[tuple[int, int]] = []
    batch_progress: list[float] = []
    result = orchestrator.submit_all(on_progress=lambda i, p: updates.append((i, p)), on_batch_progress=batch_progress.append)

    assert [job.status for job in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
    assert all(job.progress == 100 for job in jobs)
    assert [job.output_name for job in jobs] == ["a.png", "b.png"]
    assert result.summary.total == 2
    assert result.summary.completed == 2
    assert batch_progress == [0.5, 1.0]
    first_index = [percent for index, percent in updates if index == 0]
    assert first_index == sorted(first_index)
    assert updates.index((1, 100)) > updates.index((0, 100))


def test_batch_summary_csv_is_appended(service, config, png_asset) -> None:
    orchestrator = build_orchestrator(service)
    orchestrator.add(png_asset())
    orchestrator.submit_all()
    orchestrator.add(png_asset())
    orchestrator.submit_all()
    with config.summary_path.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.reader(handle))
    assert rows[0][:4] == ["batch_id", "timestamp", "total", "completed"]
    assert len(rows) == 3


def test_cancel_pending_job_skips_pipeline(service, png_asset, monkeypatch) -> None:
    calls: list[str] = []
    original = service.convert

    def spy(asset, *args, **kwargs):
        calls.append(asset.name)
        return original(asset, *args, **kwargs)

    monkeypatch.setattr(service, "convert", spy)
    orchestrator = build_orchestrator(service)
    skipped = orchestrator.add(png_asset(name="skip.png"))
    kept = orchestrator.add(png_asset(name="keep.png"))
    assert skipped.cancel() is True
    assert skipped.status is JobStatus.CANCELLED
    orchestrator.submit_all()
    assert calls == ["keep.png"]
    assert kept.status is JobStatus.COMPLETED
    assert skipped.artifact is None


def test_cancelling_later_pending_job_mid_batch_continues(service, png_asset) -> None:
    orchestrator = build_orchestrator(service)
    jobs = orchestrator.extend([png_asset(name=f"{name}.png") for name in "abc"])
    batch_progress: list[float] = []

    def cancel_next(index: int, percent: int) -> None:
        if index == 0 and percent >= 25:
            jobs[1].cancel()

    result = orchestrator.submit_all(on_progress=cancel_next, on_batch_progress=batch_progress.append)

    assert [job.status for job in jobs] == [JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.COMPLETED]
    assert jobs[2].output_name == "c.png"
    assert result.summary.completed == 2
    assert result.summary.cancelled == 1
    assert batch_progress[-1] == 1.0


def test_cancelling_pending_document_member_keeps_group(service, png_asset) -> None:
    settings = ConversionSettings(output_format=OutputFormat.PDF, document=DocumentOptions(merge=True))
    orchestrator = build_orchestrator(service, settings)
    jobs = orchestrator.extend([png_asset(name=f"{name}.png") for name in "abc"])

    def cancel_next(index: int, percent: int) -> None:
        if index == 0 and percent >= 25:
            jobs[1].cancel()

    orchestrator.submit_all(on_progress=cancel_next)

    assert [job.status for job in jobs] == [JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.COMPLETED]
    assert jobs[0].has_standalone_result
    assert jobs[2].merged_into_sibling
    assert len(PAGE_RE.findall(jobs[0].artifact.data)) == 2


def test_cancel_while_processing_then_resubmit_matches_clean_run(service, png_asset) -> None:
    orchestrator = build_orchestrator(service)
    job = orchestrator.add(png_asset(name="photo.png"))

    def cancel_midway(index: int, percent: int) -> None:
        if percent >= 25:
            job.cancel()

    orchestrator.submit_all(on_progress=cancel_midway)
    assert job.status is JobStatus.CANCELLED
    assert job.artifact is None
    assert job.error_code is None
    assert orchestrator.surfaces.checked_out is False

    job.reset()
    assert job.status is JobStatus.PENDING
    assert job.progress == 0
    orchestrator.submit_one(job)
    assert job.status is JobStatus.COMPLETED

    clean = build_orchestrator(service)
    reference = clean.add(png_asset(name="photo.png"))
    clean.submit_all()
    assert job.artifact.data == reference.artifact.data


def test_submit_one_matches_submit_all(service, png_asset) -> None:
    settings = ConversionSettings(output_format=OutputFormat.WEBP, quality=70, max_width=40)
    batch = build_orchestrator(service, settings)
    batch.extend([png_asset(name="x.png", width=80, height=60), png_asset(name="target.png"), png_asset(name="y.png", width=20, height=20)])
    batch.submit_all()
    from_batch = batch.jobs[1]

    single = build_orchestrator(service, settings)
    job = single.add(png_asset(name="target.png"))
    single.submit_one(job)
    assert job.artifact.data == from_batch.artifact.data


def test_failure_does_not_abort_batch(service, png_asset) -> None:
    orchestrator = build_orchestrator(service)
    broken = orchestrator.add(SourceAsset(name="broken.png", data=b"\x89PNG\r\n\x1a\ngarbage"))
    good = orchestrator.add(png_asset(name="good.png"))
    result = orchestrator.submit_all()
    assert broken.status is JobStatus.ERROR
    assert broken.error_code == "DECODE_FAILED"
    assert broken.error_message
    assert broken.artifact is None
    assert good.status is JobStatus.COMPLETED
    assert result.summary.failed == 1

    broken.reset()
    assert broken.status is JobStatus.PENDING
    assert broken.error_code is None


def test_reset_requires_terminal_state(png_asset) -> None:
    job = ConversionJob(job_id="job-1", asset=png_asset())
    with pytest.raises(JobStateError):
        job.reset()


def test_settings_snapshot_taken_at_submission(service, png_asset) -> None:
    orchestrator = build_orchestrator(service)
    job = orchestrator.add(png_asset())
    orchestrator.submit_all()
    orchestrator.settings = ConversionSettings(output_format=OutputFormat.JPEG)
    assert job.settings.output_format is OutputFormat.PNG
    assert job.output_name == "sample.png"


def test_document_group_merges_into_first_job(service, png_asset) -> None:
    settings = ConversionSettings(output_format=OutputFormat.PDF, document=DocumentOptions(dpi=72, images_per_page=1))
    orchestrator = build_orchestrator(service, settings)
    jobs = orchestrator.extend([png_asset(name=f"page{i}.png") for i in range(3)])
    result = orchestrator.submit_all()

    owners = [job for job in jobs if not job.merged_into_sibling]
    merged = [job for job in jobs if job.merged_into_sibling]
    assert owners == [jobs[0]]
    assert owners[0].artifact is not None and owners[0].artifact.size_bytes > 0
    assert owners[0].output_name == "page0.pdf"
    assert len(PAGE_RE.findall(owners[0].artifact.data)) == 3
    assert len(merged) == 2
    assert all(job.status is JobStatus.COMPLETED and job.artifact is None for job in merged)
    assert not any(job.has_standalone_result for job in merged)
    assert result.summary.merged == 2


def test_cancelled_owner_hands_document_to_next_sibling(service, png_asset) -> None:
    settings = ConversionSettings(output_format=OutputFormat.PDF, document=DocumentOptions(dpi=72))
    orchestrator = build_orchestrator(service, settings)
    jobs = orchestrator.extend([png_asset(name=f"page{i}.png") for i in range(3)])

    def cancel_owner(index: int, percent: int) -> None:
        if index == 2 and percent >= 80:
            jobs[0].cancel()

    orchestrator.submit_all(on_progress=cancel_owner)
    assert jobs[0].status is JobStatus.CANCELLED
    assert jobs[1].merged_into_sibling is False
    assert len(PAGE_RE.findall(jobs[1].artifact.data)) == 2
    assert jobs[2].merged_into_sibling is True


def test_batch_token_cancels_remaining_jobs(service, png_asset) -> None:
    orchestrator = build_orchestrator(service)
    jobs = orchestrator.extend([png_asset(name=f"{i}.png") for i in range(3)])
    token = CancellationToken()

    def stop_after_first(index: int, percent: int) -> None:
        if index == 0 and percent == 100:
            token.cancel()

    result = orchestrator.submit_all(on_progress=stop_after_first, cancellation=token)
    assert [job.status for job in jobs] == [JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.CANCELLED]
    assert result.summary.cancelled == 2


def test_remove_and_clear_release_artifacts(service, png_asset) -> None:
    orchestrator = build_orchestrator(service)
    first, second = orchestrator.extend([png_asset(), png_asset()])
    orchestrator.submit_all()
    orchestrator.remove(first)
    assert first.artifact is None
    assert orchestrator.jobs == [second]
    orchestrator.clear()
    assert second.artifact is None
    assert orchestrator.jobs == []


def test_cancellation_token_timeout_and_parent() -> None:
    parent = CancellationToken()
    child = CancellationToken(parent=parent)
    assert not child.is_set()
    parent.cancel()
    assert child.is_set()

    timed = CancellationToken()
    timed.cancel_after(0.01)
    for _ in range(200):
        if timed.is_set():
            break
        time.sleep(0.01)
    assert timed.is_set()
    assert timed.reason == "timeout"
    timed.dispose()
