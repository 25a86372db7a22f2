from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Sequence

from .core import ConversionService, RenderedPage
from .errors import CancelledError, ConversionError
from .logging import BatchSummary, append_summary_row
from .models import (
    BatchConversionResult,
    ConversionArtifact,
    ConversionSettings,
    OutputFormat,
    SourceAsset,
)
from .raster import SurfacePool
from .utils import generate_run_id


ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

JobProgressCallback = Callable[[int, int], None]
BatchProgressCallback = Callable[[float], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED}


class JobStateError(RuntimeError):
    """Raised on a transition the job state machine does not allow."""


class CancellationToken:
    """Cooperative cancellation flag, optionally chained to a parent token."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._timers: list[threading.Timer] = []
        self.reason: str | None = None

    def cancel(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_set()

    def cancel_after(self, seconds: float) -> threading.Timer:
        timer = threading.Timer(seconds, self.cancel, kwargs={"reason": "timeout"})
        timer.daemon = True
        self._timers.append(timer)
        timer.start()
        return timer

    def dispose(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()


@dataclass(slots=True, eq=False)
class ConversionJob:
    job_id: str
    asset: SourceAsset
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    settings: ConversionSettings | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    artifact: ConversionArtifact | None = None
    error_code: str | None = None
    error_message: str | None = None
    merged_into_sibling: bool = False
    warnings: list[str] = field(default_factory=list)
    _token: CancellationToken | None = field(default=None, repr=False)

    @property
    def output_name(self) -> str | None:
        return self.artifact.file_name if self.artifact is not None else None

    @property
    def has_standalone_result(self) -> bool:
        return self.status is JobStatus.COMPLETED and not self.merged_into_sibling and self.artifact is not None

    def cancel(self) -> bool:
        """Cancel the job; returns False when it has already settled."""
        if self.status is JobStatus.PENDING:
            self.status = JobStatus.CANCELLED
            self.finished_at = _utc_now()
            return True
        if self.status is JobStatus.PROCESSING and self._token is not None:
            self._token.cancel()
            return True
        return False

    def reset(self) -> None:
        if not self.status.is_terminal:
            raise JobStateError(f"Cannot reset job {self.job_id} while {self.status.value}")
        self.status = JobStatus.PENDING
        self.progress = 0
        self.artifact = None
        self.error_code = None
        self.error_message = None
        self.merged_into_sibling = False
        self.warnings = []
        self.started_at = None
        self.finished_at = None
        self._token = None

    def release(self) -> None:
        self.artifact = None

    def to_payload(self) -> dict[str, object | None]:
        return {
            "job_id": self.job_id,
            "source": self.asset.name,
            "status": self.status.value,
            "progress": self.progress,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "output_name": self.output_name,
            "size_bytes": self.artifact.size_bytes if self.artifact is not None else 0,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "merged_into_sibling": self.merged_into_sibling,
            "warnings": list(self.warnings),
        }

    def _begin(self, settings: ConversionSettings, token: CancellationToken) -> None:
        if self.status is not JobStatus.PENDING:
            raise JobStateError(f"Cannot start job {self.job_id} from {self.status.value}")
        self.settings = settings
        self.status = JobStatus.PROCESSING
        self.started_at = _utc_now()
        self._token = token

    def _advance(self, percent: int) -> bool:
        bounded = max(self.progress, min(int(percent), 100))
        changed = bounded != self.progress
        self.progress = bounded
        return changed

    def _settle(self, status: JobStatus) -> None:
        if self.status is not JobStatus.PROCESSING:
            raise JobStateError(f"Cannot settle job {self.job_id} from {self.status.value}")
        self.status = status
        self.finished_at = _utc_now()
        if self._token is not None and self._token.reason == "timeout":
            self.warnings.append("TIMEOUT")
        self._token = None

    def _complete(self, artifact: ConversionArtifact | None, warnings: Iterable[str], *, merged: bool = False) -> None:
        self.warnings.extend(warnings)
        self.artifact = None if merged else artifact
        self.merged_into_sibling = merged
        self._advance(100)
        self._settle(JobStatus.COMPLETED)

    def _fail(self, code: str, message: str) -> None:
        self.artifact = None
        self.error_code = code
        self.error_message = message
        self._settle(JobStatus.ERROR)

    def _mark_cancelled(self) -> None:
        self.artifact = None
        self._settle(JobStatus.CANCELLED)


@dataclass(slots=True)
class _Slot:
    job: ConversionJob
    index: int
    token: CancellationToken


class BatchOrchestrator:
    """Runs conversion jobs one at a time through a shared pipeline path."""

    def __init__(
        self,
        service: ConversionService,
        settings: ConversionSettings | None = None,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self._service = service
        self.settings = settings or service.config.defaults
        self._timeout_s = timeout_s if timeout_s is not None else service.config.runtime.job_timeout_s
        self._surfaces = SurfacePool()
        self._jobs: list[ConversionJob] = []
        self._settled = 0
        self._total = 0
        self._targets: list[ConversionJob] = []

    @property
    def jobs(self) -> list[ConversionJob]:
        return list(self._jobs)

    @property
    def surfaces(self) -> SurfacePool:
        return self._surfaces

    @property
    def progress(self) -> float:
        if self._total == 0:
            return 0.0
        return self._settled / self._total

    def add(self, asset: SourceAsset) -> ConversionJob:
        job = ConversionJob(job_id=generate_run_id("job"), asset=asset)
        self._jobs.append(job)
        return job

    def extend(self, assets: Iterable[SourceAsset]) -> list[ConversionJob]:
        return [self.add(asset) for asset in assets]

    def remove(self, job: ConversionJob) -> None:
        job.cancel()
        if job in self._jobs:
            self._jobs.remove(job)
        job.release()

    def clear(self) -> None:
        for job in self._jobs:
            job.cancel()
            job.release()
        self._jobs.clear()
        self._surfaces.release()

    def submit_all(
        self,
        jobs: Sequence[ConversionJob] | None = None,
        *,
        on_progress: JobProgressCallback | None = None,
        on_batch_progress: BatchProgressCallback | None = None,
        cancellation: CancellationToken | None = None,
        settings: ConversionSettings | None = None,
    ) -> BatchConversionResult:
        """Run every pending job in order and append a row to the batch summary."""
        candidates = list(jobs) if jobs is not None else list(self._jobs)
        targets = [job for job in candidates if job.status is JobStatus.PENDING]
        snapshot = settings or self.settings
        self._run(targets, snapshot, on_progress, on_batch_progress, cancellation)

        summary = self._summarize(targets)
        if targets:
            append_summary_row(self._service.config.summary_path, summary, generate_run_id("batch"))
        return BatchConversionResult(jobs=targets, summary=summary)

    def submit_one(
        self,
        job: ConversionJob,
        *,
        on_progress: JobProgressCallback | None = None,
        cancellation: CancellationToken | None = None,
        settings: ConversionSettings | None = None,
    ) -> ConversionJob:
        if job.status.is_terminal:
            job.reset()
        if job.status is not JobStatus.PENDING:
            raise JobStateError(f"Job {job.job_id} is already {job.status.value}")
        self._run([job], settings or self.settings, on_progress, None, cancellation)
        return job

    def _run(
        self,
        targets: list[ConversionJob],
        snapshot: ConversionSettings,
        on_progress: JobProgressCallback | None,
        on_batch_progress: BatchProgressCallback | None,
        cancellation: CancellationToken | None,
    ) -> None:
        self._settled = 0
        self._total = len(targets)
        self._targets = targets
        for job in targets:
            job.settings = snapshot

        def settled(count: int = 1) -> None:
            self._settled += count
            if on_batch_progress is not None:
                on_batch_progress(self.progress)

        position = 0
        while position < len(targets):
            job = targets[position]
            if self._is_document_member(job):
                group = [job]
                while position + len(group) < len(targets) and self._is_document_member(
                    targets[position + len(group)]
                ):
                    group.append(targets[position + len(group)])
                self._run_document_group(group, on_progress, cancellation, settled)
                position += len(group)
            else:
                self._run_job(job, on_progress, cancellation)
                settled()
                position += 1

    def _is_document_member(self, job: ConversionJob) -> bool:
        settings = job.settings or self.settings
        return settings.output_format is OutputFormat.PDF and settings.document.merge

    def _index_of(self, job: ConversionJob) -> int:
        if job in self._jobs:
            return self._jobs.index(job)
        return self._targets.index(job)

    def _start(self, job: ConversionJob, batch_token: CancellationToken | None) -> _Slot | None:
        if job.status is not JobStatus.PENDING:
            return None
        if batch_token is not None and batch_token.is_set():
            job.cancel()
            return None
        token = CancellationToken(parent=batch_token)
        if self._timeout_s:
            token.cancel_after(self._timeout_s)
        job._begin(job.settings or self.settings, token)
        return _Slot(job=job, index=self._index_of(job), token=token)

    def _progress_for(self, slot: _Slot, on_progress: JobProgressCallback | None) -> Callable[[float], None]:
        def report(fraction: float) -> None:
            if slot.job._advance(int(fraction * 100)) and on_progress is not None:
                on_progress(slot.index, slot.job.progress)

        return report

    def _run_job(
        self,
        job: ConversionJob,
        on_progress: JobProgressCallback | None,
        batch_token: CancellationToken | None,
    ) -> None:
        slot = self._start(job, batch_token)
        if slot is None:
            return
        try:
            output = self._service.convert(
                job.asset,
                job.settings,
                run_id=job.job_id,
                surfaces=self._surfaces,
                progress=self._progress_for(slot, on_progress),
                cancellation=slot.token,
            )
        except CancelledError:
            job._mark_cancelled()
        except ConversionError as exc:
            job._fail(exc.code, str(exc))
        except Exception as exc:  # pragma: no cover - unexpected codec failures
            job._fail("UNKNOWN", str(exc))
        else:
            job._complete(output.artifact, output.warnings)
        finally:
            slot.token.dispose()

    def _run_document_group(
        self,
        group: list[ConversionJob],
        on_progress: JobProgressCallback | None,
        batch_token: CancellationToken | None,
        settled: Callable[[int], None],
    ) -> None:
        """Render each member's page, then pack all pages into the first live member's PDF."""
        rendered: list[tuple[_Slot, RenderedPage]] = []
        for job in group:
            slot = self._start(job, batch_token)
            if slot is None:
                settled(1)
                continue
            try:
                page = self._service.render_page(
                    job.asset,
                    job.settings,
                    run_id=job.job_id,
                    surfaces=self._surfaces,
                    progress=self._progress_for(slot, on_progress),
                    cancellation=slot.token,
                )
            except CancelledError:
                job._mark_cancelled()
            except ConversionError as exc:
                job._fail(exc.code, str(exc))
            except Exception as exc:  # pragma: no cover - unexpected codec failures
                job._fail("UNKNOWN", str(exc))
            else:
                rendered.append((slot, page))
                continue
            slot.token.dispose()
            settled(1)

        live = rendered
        try:
            while live:
                cancelled = [entry for entry in live if entry[0].token.is_set()]
                for slot, _ in cancelled:
                    slot.job._mark_cancelled()
                    settled(1)
                live = [entry for entry in live if not entry[0].token.is_set()]
                if not live:
                    break
                owner = live[0][0]
                try:
                    artifact = self._service.package_pages(
                        [page for _, page in live],
                        owner.job.settings or self.settings,
                        cancellation=owner.token,
                    )
                except CancelledError:
                    continue
                except ConversionError as exc:
                    for slot, _ in live:
                        slot.job._fail(exc.code, str(exc))
                    settled(len(live))
                    break
                except Exception as exc:  # pragma: no cover - unexpected codec failures
                    for slot, _ in live:
                        slot.job._fail("UNKNOWN", str(exc))
                    settled(len(live))
                    break
                for position, (slot, page) in enumerate(live):
                    slot.job._complete(artifact, page.warnings, merged=position > 0)
                    if on_progress is not None:
                        on_progress(slot.index, slot.job.progress)
                settled(len(live))
                break
        finally:
            for slot, _ in rendered:
                slot.token.dispose()

    def _summarize(self, jobs: Sequence[ConversionJob]) -> BatchSummary:
        summary = BatchSummary(total=len(jobs))
        for job in jobs:
            if job.status is JobStatus.COMPLETED:
                summary.completed += 1
                if job.merged_into_sibling:
                    summary.merged += 1
            elif job.status is JobStatus.ERROR:
                summary.failed += 1
            elif job.status is JobStatus.CANCELLED:
                summary.cancelled += 1
            for warning in job.warnings:
                summary.warnings[warning] = summary.warnings.get(warning, 0) + 1
        return summary


__all__ = [
    "BatchOrchestrator",
    "CancellationToken",
    "ConversionJob",
    "JobStateError",
    "JobStatus",
]
