"""Command line interface for the batch pipeline.

Exit codes: 0 success, 1 one or more items failed, 2 usage error, 3 partial
progress or quota reached (run again later), 4 fatal error.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Awaitable, List, Optional, TypeVar

import typer

from .batches import BaseBatchService, get_batch_service
from .config import GenbatchConfig, load_config
from .correlation import format_correlation_id
from .contracts import BatchStatus, WorkItem
from .downstream import DownstreamClient
from .errors import (
    BatchCreationError,
    GenbatchError,
    JobStoreUnavailableError,
    QuotaExceededError,
    UploadTimeoutError,
)
from .mappers import ResultMapper, load_request_titles
from .persistence import CheckpointFileStore, JobStatus, get_job_store
from .ratelimit import SlidingWindowLimiter
from .recovery import RecoveryEngine, RecoverySummary
from .request_lines import write_request_file
from .sources import FileWorkSource
from .splitter import split_correlated
from .storage import get_record_store
from .submitter import BatchSubmitter
from .utils.logging import setup_logging
from .worker import InvocationReport, Worker

T = TypeVar("T")

EXIT_OK = 0
EXIT_ITEM_FAILURES = 1
EXIT_PARTIAL = 3
EXIT_FATAL = 4

app = typer.Typer(help="Split, submit, checkpoint and reconcile generation batches")

# Command groups
batch_app = typer.Typer(help="Commands for remote batches")
job_app = typer.Typer(help="Commands for resumable jobs")

app.add_typer(batch_app, name="batch")
app.add_typer(job_app, name="job")


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="YAML config file (default: $GENBATCH_CONFIG or genbatch.yaml)"
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
    log_level: Optional[str] = typer.Option(None, "--log-level"),
) -> None:
    """genbatch CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    setup_logging(
        log_level or config.logging.level,
        json_format=json_logs or config.logging.json_format,
    )
    ctx.obj = config


def _config(ctx: typer.Context) -> GenbatchConfig:
    return ctx.obj if isinstance(ctx.obj, GenbatchConfig) else load_config()


def _fail(message: str, code: int = EXIT_FATAL) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


def _make_client(config: GenbatchConfig) -> DownstreamClient:
    return DownstreamClient.from_config(config.downstream, config.worker)


def _make_limiter(config: GenbatchConfig) -> SlidingWindowLimiter:
    return SlidingWindowLimiter(config.worker.window_requests, config.worker.window_seconds)


def _call_service(service: BaseBatchService, coro: Awaitable[T]) -> T:
    """Run ``coro`` against ``service`` and close the service afterwards."""

    async def _run() -> T:
        await service.connect()
        try:
            return await coro
        finally:
            await service.disconnect()

    return asyncio.run(_run())


def _exit_code(report: InvocationReport) -> int:
    if report.fatal:
        return EXIT_FATAL
    if report.failed or (report.done and report.outstanding_failures):
        return EXIT_ITEM_FAILURES
    if report.idle or report.done:
        return EXIT_OK
    return EXIT_PARTIAL


def _print_report(report: InvocationReport) -> None:
    if report.idle:
        typer.echo("No jobs to process")
        return
    typer.echo(f"Job: {report.job_id} ({report.status.value if report.status else 'unknown'})")
    typer.echo(
        f"Succeeded: {len(report.succeeded)}  Failed: {len(report.failed)}  "
        f"Skipped: {report.skipped}"
    )
    total = report.total_items if report.total_items is not None else "?"
    typer.echo(f"Progress: {report.processed_count}/{total}")
    for item_id, error in report.failed.items():
        typer.secho(f"  {item_id}: {error}", fg=typer.colors.RED)
    if report.error:
        typer.secho(f"Error: {report.error}", fg=typer.colors.RED)
    if report.outstanding_failures:
        typer.echo(
            f"{len(report.outstanding_failures)} item(s) failed; re-run with --resume to retry them"
        )
    elif not report.done:
        typer.echo("Partially processed; run again to continue")


def _print_summary(summary: RecoverySummary) -> None:
    typer.echo(
        f"Recovered: {summary.recovered}  Skipped: {summary.skipped}  Failed: {summary.failed}"
    )
    for batch_id in summary.pending:
        typer.echo(f"  {batch_id}: not completed yet")
    for batch_id in summary.not_recoverable:
        typer.secho(f"  {batch_id}: not recoverable", fg=typer.colors.YELLOW)
    for batch_id, error in summary.errors.items():
        typer.secho(f"  {batch_id}: {error}", fg=typer.colors.RED)
    for line in summary.failures:
        typer.secho(f"  {line}", fg=typer.colors.RED)


# ----------------------------------------------------------------------
# Splitting and request files


@app.command("split")
def split(
    ctx: typer.Context,
    inputs: List[Path] = typer.Argument(..., help="One or more correlated JSONL files"),
    out_dir: Path = typer.Option(Path("."), "--out-dir", "-o"),
    parts: Optional[int] = typer.Option(None, "--parts", "-n", help="Number of parts"),
    max_bytes: Optional[int] = typer.Option(None, "--max-bytes", help="Byte ceiling per part"),
) -> None:
    """Split request files into aligned, size-bounded parts."""
    config = _config(ctx)
    try:
        results = split_correlated(
            inputs,
            out_dir,
            num_parts=parts,
            max_part_bytes=max_bytes or config.splitter.max_part_bytes,
            target_part_bytes=config.splitter.target_part_bytes,
        )
    except FileNotFoundError as exc:
        _fail(f"Input not found: {exc.filename}")
    except UnicodeDecodeError as exc:
        _fail(f"Input is not valid UTF-8: {exc}")
    except OSError as exc:
        _fail(f"Cannot split input: {exc}")
    except GenbatchError as exc:
        _fail(str(exc), code=EXIT_ITEM_FAILURES)

    for result in results:
        typer.echo(f"{result.source.name}: {result.total_lines} lines")
        for part in result.parts:
            typer.echo(f"  {part.path}\t{part.line_count} lines\t{part.byte_size} bytes")


@app.command("build-requests")
def build_requests(
    ctx: typer.Context,
    source: Path,
    output: Path,
    kind: str = typer.Option("answer", help="Correlation id kind"),
    owner: str = typer.Option(..., help="Owning scope id embedded in every correlation id"),
    model: Optional[str] = typer.Option(None, help="Model added to bodies that lack one"),
) -> None:
    """Write batch request lines for the work items in SOURCE."""
    config = _config(ctx)
    try:
        items = FileWorkSource(source).load()
    except GenbatchError as exc:
        _fail(str(exc))

    prepared = []
    for sequence, item in enumerate(items, start=1):
        payload = dict(item.payload)
        if model and "model" not in payload:
            payload["model"] = model
        prompt = payload.pop("prompt", None)
        if prompt is not None and "messages" not in payload:
            payload["messages"] = [{"role": "user", "content": prompt}]
        try:
            correlation_id = item.correlation_id or format_correlation_id(kind, owner, sequence)
        except GenbatchError as exc:
            _fail(str(exc), code=2)
        prepared.append(WorkItem(id=item.id, correlation_id=correlation_id, payload=payload))

    written = write_request_file(prepared, output, endpoint=config.batch_service.endpoint)
    typer.echo(f"Wrote {written} requests to {output}")


# ----------------------------------------------------------------------
# Remote batches


def _parse_meta(pairs: List[str]) -> dict[str, str]:
    meta = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected key=value, got {pair!r}")
        meta[key] = value
    return meta


@batch_app.command("submit")
def batch_submit(
    ctx: typer.Context,
    chunk: Path,
    meta: List[str] = typer.Option([], "--meta", "-m", help="Metadata as key=value"),
    endpoint: Optional[str] = typer.Option(None),
) -> None:
    """Upload a chunk and create a remote batch for it."""
    config = _config(ctx)
    metadata = _parse_meta(meta)
    service = get_batch_service(config=config)
    submitter = BatchSubmitter(service, config.batch_service)

    try:
        result = _call_service(
            service, submitter.submit(chunk, metadata=metadata, endpoint=endpoint)
        )
    except QuotaExceededError as exc:
        _fail(str(exc), code=EXIT_PARTIAL)
    except UploadTimeoutError as exc:
        _fail(str(exc))
    except BatchCreationError as exc:
        _fail(f"{exc}. Orphaned file: {exc.file_id}")
    except FileNotFoundError as exc:
        _fail(f"Chunk not found: {exc.filename}")
    except GenbatchError as exc:
        _fail(str(exc))

    typer.echo(f"Batch: {result.batch_id}")
    typer.echo(f"Status: {result.status.value}")
    typer.echo(f"Input file: {result.input_ref}")
    typer.echo(f"Requests: {result.valid_lines} ({result.invalid_lines} invalid skipped)")


@batch_app.command("list")
def batch_list(
    ctx: typer.Context,
    status: List[BatchStatus] = typer.Option([], "--status", "-s"),
) -> None:
    """List remote batches."""
    service = get_batch_service(config=_config(ctx))
    statuses = [s.value for s in status] or None
    try:
        handles = _call_service(service, service.list_batches(statuses=statuses))
    except GenbatchError as exc:
        _fail(str(exc))
    if not handles:
        typer.echo("No batches found")
        return
    for handle in handles:
        counts = handle.request_counts
        typer.echo(
            f"{handle.batch_id}\t{handle.status.value}\t"
            f"{counts.completed}/{counts.total} ({counts.failed} failed)"
        )


@batch_app.command("status")
def batch_status(ctx: typer.Context, batch_id: str) -> None:
    """Show one remote batch."""
    service = get_batch_service(config=_config(ctx))
    try:
        handle = _call_service(service, service.get_batch(batch_id))
    except GenbatchError as exc:
        _fail(str(exc))
    typer.echo(json.dumps(handle.model_dump(mode="json"), indent=2))


@batch_app.command("cancel")
def batch_cancel(ctx: typer.Context, batch_id: str) -> None:
    """Request cancellation of a remote batch (best effort)."""
    config = _config(ctx)
    submitter = BatchSubmitter(get_batch_service(config=config), config.batch_service)
    try:
        handle = _call_service(submitter.service, submitter.cancel(batch_id))
    except GenbatchError as exc:
        _fail(str(exc))
    typer.echo(f"{handle.batch_id}: {handle.status.value}")


@batch_app.command("download")
def batch_download(
    ctx: typer.Context,
    batch_id: str,
    output: Path,
    errors: bool = typer.Option(False, "--errors", help="Download the error file instead"),
) -> None:
    """Save a completed batch's output (or error) file."""
    service = get_batch_service(config=_config(ctx))

    async def _download() -> int:
        handle = await service.get_batch(batch_id)
        ref = handle.error_ref if errors else handle.output_ref
        if not ref:
            raise typer.BadParameter(
                f"Batch {batch_id} ({handle.status.value}) has no "
                f"{'error' if errors else 'output'} file"
            )
        count = 0
        with open(output, "w", encoding="utf-8") as fh:
            async for line in service.download_file(ref):
                if line.strip():
                    fh.write(line + "\n")
                    count += 1
        return count

    try:
        count = _call_service(service, _download())
    except GenbatchError as exc:
        _fail(str(exc))
    typer.echo(f"Wrote {count} lines to {output}")


# ----------------------------------------------------------------------
# Jobs


@job_app.command("create")
def job_create(ctx: typer.Context, job_id: str, source: Path = typer.Option(...)) -> None:
    """Enqueue a job over a work-item file."""
    store = get_job_store(config=_config(ctx))
    try:
        job = asyncio.run(store.create(job_id, source=str(source)))
    except GenbatchError as exc:
        _fail(str(exc))
    typer.echo(f"Created job {job.job_id} ({job.status.value})")


@job_app.command("list")
def job_list(
    ctx: typer.Context, status: Optional[JobStatus] = typer.Option(None, "--status", "-s")
) -> None:
    """List jobs with their progress."""
    store = get_job_store(config=_config(ctx))
    try:
        jobs = asyncio.run(store.list_jobs(status=status))
    except GenbatchError as exc:
        _fail(str(exc))
    if not jobs:
        typer.echo("No jobs found")
        return
    for job in jobs:
        total = job.total_items if job.total_items is not None else "?"
        typer.echo(f"{job.job_id}\t{job.status.value}\t{job.processed_count}/{total}")


@job_app.command("show")
def job_show(ctx: typer.Context, job_id: str) -> None:
    """Show a job's checkpoint."""
    store = get_job_store(config=_config(ctx))
    try:
        job = asyncio.run(store.load(job_id))
    except GenbatchError as exc:
        _fail(str(exc), code=EXIT_ITEM_FAILURES)
    typer.echo(json.dumps(job.to_checkpoint(), indent=2))


@job_app.command("mark")
def job_mark(
    ctx: typer.Context,
    job_id: str,
    status: JobStatus,
    message: Optional[str] = typer.Option(None, "--message"),
) -> None:
    """Set a job's status, e.g. mark it ``error`` to stop workers picking it up."""
    store = get_job_store(config=_config(ctx))
    try:
        job = asyncio.run(store.mark_status(job_id, status, message))
    except GenbatchError as exc:
        _fail(str(exc))
    typer.echo(f"{job.job_id}: {job.status.value}")


async def _run_worker(config: GenbatchConfig, store, job_id, limit, resume) -> InvocationReport:
    async with _make_client(config) as client:
        worker = Worker(
            store, client, _make_limiter(config), batch_size=config.worker.batch_size
        )
        if job_id is None:
            return await worker.run_once()
        return await worker.run_job(job_id, limit=limit, resume=resume)


def _execute(config: GenbatchConfig, store, job_id=None, limit=None, resume=False) -> None:
    try:
        report = asyncio.run(_run_worker(config, store, job_id, limit, resume))
    except ValueError as exc:
        _fail(str(exc))
    except JobStoreUnavailableError as exc:
        _fail(f"Job store unavailable: {exc}")
    except GenbatchError as exc:
        _fail(str(exc))
    _print_report(report)
    raise typer.Exit(code=_exit_code(report))


@job_app.command("resume")
def job_resume(
    ctx: typer.Context,
    job_id: str,
    limit: Optional[int] = typer.Option(None, "--limit", min=1),
) -> None:
    """Resume a job from its checkpoint, retrying failed items."""
    config = _config(ctx)
    _execute(config, get_job_store(config=config), job_id=job_id, limit=limit, resume=True)


@app.command("work")
def work(
    ctx: typer.Context,
    job_id: Optional[str] = typer.Option(None, "--job", help="Run this job instead of the next one"),
    limit: Optional[int] = typer.Option(None, "--limit", min=1),
) -> None:
    """Run one bounded worker invocation."""
    config = _config(ctx)
    if job_id is not None and limit is None:
        limit = config.worker.batch_size
    _execute(config, get_job_store(config=config), job_id=job_id, limit=limit)


@app.command("run")
def run(
    ctx: typer.Context,
    source: Path,
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum items to process"),
    resume: bool = typer.Option(False, "--resume", help="Continue from the checkpoint file"),
    checkpoint: Optional[Path] = typer.Option(None, "--checkpoint"),
) -> None:
    """Process SOURCE through the downstream API with a checkpoint file."""
    config = _config(ctx)
    store = CheckpointFileStore(checkpoint or config.persistence.checkpoint_file)
    job_id = source.stem

    async def _prepare() -> None:
        if resume:
            try:
                job = await store.load(job_id)
            except GenbatchError:
                typer.echo("No checkpoint found, starting fresh")
            else:
                typer.echo(
                    f"Resuming: {len(job.processed_ids)} processed, "
                    f"{len(job.outstanding_failures)} failed"
                )
                return
        else:
            store.reset()
        await store.create(job_id, source=str(source))

    try:
        asyncio.run(_prepare())
    except GenbatchError as exc:
        _fail(str(exc))
    _execute(config, store, job_id=job_id, limit=limit, resume=resume)


# ----------------------------------------------------------------------
# Recovery


@app.command("recover")
def recover(
    ctx: typer.Context,
    batch_id: Optional[str] = typer.Argument(None),
    all_batches: bool = typer.Option(False, "--all", help="Recover every completed batch"),
    requests_file: Optional[Path] = typer.Option(
        None, "--requests", help="Original request file, used to title results"
    ),
) -> None:
    """Reconcile completed batch results into record storage."""
    if (batch_id is None) == (not all_batches):
        raise typer.BadParameter("Pass a BATCH_ID or --all")
    config = _config(ctx)
    titles = load_request_titles(requests_file) if requests_file else None
    engine = RecoveryEngine(
        get_batch_service(config=config),
        get_record_store(config=config),
        mapper=ResultMapper(titles),
        fan_out=config.recovery.fan_out,
    )
    try:
        summary = _call_service(engine.service, engine.recover(batch_id))
    except GenbatchError as exc:
        _fail(str(exc))
    _print_summary(summary)
    if summary.failed or summary.errors or (batch_id and summary.not_recoverable):
        raise typer.Exit(code=EXIT_ITEM_FAILURES)
    if summary.pending:
        raise typer.Exit(code=EXIT_PARTIAL)


if __name__ == "__main__":  # pragma: no cover
    app()
