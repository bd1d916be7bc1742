#!/usr/bin/env python3
"""
Bulk IMAP mailbox migration driver.

Reads account pairs from a CSV file and runs imapsync once per pair, keeping a
bounded number of imapsync processes in flight. Failed accounts are reported,
never fatal.
"""

import argparse
import concurrent.futures
import configparser
import csv
import functools
import os
import re
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, Union


DEFAULT_IMAPSYNC = "imapsync"
DEFAULT_IMAPSYNC_FLAGS = "--ssl1 --noid"
CPU_DIVISOR = 4
STDOUT_TAIL_LINES = 20
MASK = "********"

RECORD_FIELDS = ("source_email", "source_password", "dest_email", "dest_password")

FAILURE_EXECUTION = "execution"
FAILURE_WORKER = "worker"


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


REPORT_FILE_HANDLE = None
LOG_LOCK = threading.Lock()


def open_report_file(path: str) -> None:
    global REPORT_FILE_HANDLE
    if not path:
        return
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    REPORT_FILE_HANDLE = open(path, "a", encoding="utf-8")
    ts = datetime.now().isoformat(timespec="seconds")
    REPORT_FILE_HANDLE.write(f"=== Batch run started {ts} ===\n")
    REPORT_FILE_HANDLE.flush()


def close_report_file() -> None:
    global REPORT_FILE_HANDLE
    if REPORT_FILE_HANDLE:
        ts = datetime.now().isoformat(timespec="seconds")
        REPORT_FILE_HANDLE.write(f"=== Batch run ended {ts} ===\n")
        REPORT_FILE_HANDLE.flush()
        REPORT_FILE_HANDLE.close()
        REPORT_FILE_HANDLE = None


def log_message(message: str) -> None:
    # Workers log too; keep stdout and report lines whole.
    with LOG_LOCK:
        print(message)
        if REPORT_FILE_HANDLE:
            ts = datetime.now().isoformat(timespec="seconds")
            REPORT_FILE_HANDLE.write(f"{ts} {message}\n")
            REPORT_FILE_HANDLE.flush()


def format_elapsed(seconds: float) -> str:
    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def parse_bool(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "t"}:
        return True
    if val in {"0", "false", "no", "n", "f"}:
        return False
    return default


@dataclass(frozen=True)
class Credential:
    email: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Job:
    source_host: str
    source_credential: Credential
    dest_host: str
    dest_credential: Credential

    @property
    def identity(self) -> str:
        return self.source_credential.email

    def secrets(self) -> Tuple[str, str]:
        return self.source_credential.password, self.dest_credential.password


@dataclass(frozen=True)
class SkippedRecord:
    row_num: int
    raw_record: Tuple[str, ...] = field(repr=False)
    reason: str


@dataclass(frozen=True)
class Success:
    job_identity: str


@dataclass(frozen=True)
class Failure:
    job_identity: str
    diagnostic: str
    category: str = FAILURE_EXECUTION


Outcome = Union[Success, Failure]


@dataclass
class Summary:
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    worker_failure_count: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class ImapsyncSettings:
    binary: str = DEFAULT_IMAPSYNC
    flags: Tuple[str, ...] = tuple(shlex.split(DEFAULT_IMAPSYNC_FLAGS))
    timeout: Optional[float] = None
    dry_run: bool = False


@dataclass
class RunnerConfig:
    source_host: str
    dest_host: str
    csv_path: str
    max_concurrency: int
    has_header: bool
    imapsync: ImapsyncSettings


# ---------------------------------------------------------------------------
# Record source and job building
# ---------------------------------------------------------------------------


def load_records(path: str, has_header: bool = True) -> List[Tuple[int, List[str]]]:
    """Read the CSV file into (line number, fields) pairs.

    Blank lines are not records. When ``has_header`` is set the first non-blank
    row is treated as column names and dropped. Raises FileNotFoundError or
    ValueError when the file as a whole cannot be read.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"CSV file not found: {path}")
    records: List[Tuple[int, List[str]]] = []
    header_pending = has_header
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.reader(f)
        try:
            for row in reader:
                if not row:
                    continue
                if header_pending:
                    header_pending = False
                    continue
                records.append((reader.line_num, row))
        except (csv.Error, UnicodeDecodeError) as exc:
            raise ValueError(f"Unable to parse CSV file {path} near line {reader.line_num}: {exc}") from exc
    return records


def build_job(
    row: Sequence[str],
    source_host: str,
    dest_host: str,
    row_num: int,
) -> Union[Job, SkippedRecord]:
    raw = tuple(row)
    if len(row) < len(RECORD_FIELDS):
        return SkippedRecord(
            row_num=row_num,
            raw_record=raw,
            reason=f"expected {len(RECORD_FIELDS)} fields, found {len(row)}",
        )

    values = [row[i] or "" for i in range(len(RECORD_FIELDS))]
    # Emails are trimmed; passwords go to imapsync exactly as written.
    values[0] = values[0].strip()
    values[2] = values[2].strip()
    missing = [name for name, value in zip(RECORD_FIELDS, values) if not value]
    if missing:
        return SkippedRecord(row_num=row_num, raw_record=raw, reason=f"missing {', '.join(missing)}")

    source_email, source_password, dest_email, dest_password = values
    return Job(
        source_host=source_host,
        source_credential=Credential(email=source_email, password=source_password),
        dest_host=dest_host,
        dest_credential=Credential(email=dest_email, password=dest_password),
    )


def build_jobs(
    records: Iterable[Tuple[int, Sequence[str]]],
    source_host: str,
    dest_host: str,
) -> List[Union[Job, SkippedRecord]]:
    results: List[Union[Job, SkippedRecord]] = []
    for row_num, row in records:
        result = build_job(row, source_host, dest_host, row_num)
        if isinstance(result, SkippedRecord):
            account = (row[0] or "").strip() if row else ""
            suffix = f" (source account: {account})" if account else ""
            log_message(f"[SKIP] CSV row {row_num}: {result.reason}{suffix}")
        results.append(result)
    return results


def partition_results(results: Iterable[Union[Job, SkippedRecord]]) -> Tuple[List[Job], List[SkippedRecord]]:
    jobs: List[Job] = []
    skipped: List[SkippedRecord] = []
    for result in results:
        if isinstance(result, SkippedRecord):
            skipped.append(result)
        else:
            jobs.append(result)
    return jobs, skipped


# ---------------------------------------------------------------------------
# imapsync execution
# ---------------------------------------------------------------------------


def build_imapsync_command(job: Job, settings: ImapsyncSettings) -> List[str]:
    return [
        settings.binary,
        "--host1", job.source_host,
        "--user1", job.source_credential.email,
        "--password1", job.source_credential.password,
        "--host2", job.dest_host,
        "--user2", job.dest_credential.email,
        "--password2", job.dest_credential.password,
        *settings.flags,
    ]


def mask_secrets(text: str, job: Job) -> str:
    # Whole occurrences only: a password "A" must not rewrite "AUTH FAILED".
    for secret in job.secrets():
        if secret:
            pattern = r"(?<![A-Za-z0-9])" + re.escape(secret) + r"(?![A-Za-z0-9])"
            text = re.sub(pattern, MASK, text)
    return text


def format_command(cmd: Sequence[str], job: Job) -> str:
    secrets = set(job.secrets())
    return shlex.join([MASK if part in secrets else part for part in cmd])


def tail_lines(text: str, count: int) -> str:
    lines = [line for line in text.splitlines() if line.strip()]
    return "\n".join(lines[-count:])


def execute_job(job: Job, settings: ImapsyncSettings) -> Outcome:
    """Run imapsync for one account pair and classify the result.

    Every path ends in an Outcome so a single bad account cannot abort the
    batch. Diagnostics carry imapsync's stderr with the job's passwords masked.
    """
    cmd = build_imapsync_command(job, settings)
    if settings.dry_run:
        log_message(f"  [DRY-RUN] {format_command(cmd, job)}")
        return Success(job.identity)

    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=settings.timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        return Failure(job.identity, f"{settings.binary} timed out after {exc.timeout:g}s")
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        return Failure(job.identity, mask_secrets(f"Unable to start {settings.binary}: {exc}", job))

    if proc.returncode == 0:
        return Success(job.identity)

    diagnostic = proc.stderr or ""
    if not diagnostic.strip():
        diagnostic = tail_lines(proc.stdout or "", STDOUT_TAIL_LINES)
    if not diagnostic.strip():
        diagnostic = f"{settings.binary} exited with status {proc.returncode}"
    return Failure(job.identity, mask_secrets(diagnostic, job))


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


def available_cpus() -> int:
    try:
        return len(os.sched_getaffinity(0))
    except AttributeError:
        return os.cpu_count() or 1


def resolve_max_concurrency(value: Optional[int], cpu_count: Optional[int] = None) -> int:
    if value is None:
        units = cpu_count if cpu_count is not None else available_cpus()
        return max(1, units // CPU_DIVISOR)
    if value < 1:
        raise ValueError(f"max_concurrency must be at least 1, got {value}")
    return value


def iter_outcomes(
    jobs: Sequence[Job],
    max_concurrency: int,
    execute: Callable[[Job], Outcome],
) -> Iterator[Outcome]:
    """Run ``execute`` over ``jobs`` with at most ``max_concurrency`` calls in
    flight, yielding one Outcome per job in completion order.

    The pool's workers are the permits: a worker takes the next queued job
    only after the previous call has returned or raised. Exceptions escaping
    ``execute`` become worker failures at the join point.
    """
    if max_concurrency < 1:
        raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
    if not jobs:
        return iter(())
    return _drain(list(jobs), max_concurrency, execute)


def _drain(
    jobs: List[Job],
    max_concurrency: int,
    execute: Callable[[Job], Outcome],
) -> Iterator[Outcome]:
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=max_concurrency,
        thread_name_prefix="imapsync",
    )
    try:
        futures = {executor.submit(execute, job): job for job in jobs}
        for future in concurrent.futures.as_completed(futures):
            job = futures[future]
            try:
                outcome = future.result()
            except KeyboardInterrupt:
                raise
            except BaseException as exc:
                outcome = Failure(
                    job.identity,
                    mask_secrets(f"worker crashed: {type(exc).__name__}: {exc}", job),
                    category=FAILURE_WORKER,
                )
            yield outcome
    except BaseException:
        # Interrupted or abandoned by the consumer: drop queued jobs, let running ones finish.
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    finally:
        executor.shutdown(wait=True)


def run_jobs(
    jobs: Sequence[Job],
    max_concurrency: int,
    execute: Callable[[Job], Outcome],
) -> List[Outcome]:
    return list(iter_outcomes(jobs, max_concurrency, execute))


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def format_summary(summary: Summary) -> str:
    line = (
        f"Migration complete. Succeeded: {summary.success_count}, "
        f"Failed: {summary.failure_count}, Skipped: {summary.skipped_count}"
    )
    if summary.worker_failure_count:
        line += f" (worker crashes: {summary.worker_failure_count})"
    return line


def aggregate(
    skipped: Sequence[SkippedRecord],
    outcomes: Iterable[Outcome],
    started_at: Optional[float] = None,
) -> Summary:
    summary = Summary(skipped_count=len(skipped))
    for outcome in outcomes:
        if isinstance(outcome, Success):
            summary.success_count += 1
            log_message(f"[OK] Migrated {outcome.job_identity}")
            continue
        summary.failure_count += 1
        summary.failures.append((outcome.job_identity, outcome.diagnostic))
        if outcome.category == FAILURE_WORKER:
            summary.worker_failure_count += 1
        log_message(f"[ERROR] Failed to migrate {outcome.job_identity}: {outcome.diagnostic.strip()}")

    line = format_summary(summary)
    if started_at is not None:
        line += f". Elapsed {format_elapsed(time.time() - started_at)}"
    log_message(f"\n{line}")
    return summary


# ---------------------------------------------------------------------------
# Configuration and CLI
# ---------------------------------------------------------------------------


def load_config(path: Optional[str]) -> configparser.ConfigParser:
    cfg = configparser.ConfigParser()

    if path:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")
        cfg.read(path)

    return cfg


def _optional_number(raw: Optional[str], convert: Callable[[str], Union[int, float]], label: str):
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return convert(str(raw).strip())
    except ValueError:
        raise ValueError(f"Invalid {label}: {raw!r}") from None


def build_runner_config(args: argparse.Namespace, cfg: configparser.ConfigParser) -> RunnerConfig:
    source_host = args.source_host or cfg.get("source", "host", fallback=_env("SRC_HOST"))
    dest_host = args.dest_host or cfg.get("destination", "host", fallback=_env("DST_HOST"))
    csv_path = args.csv_file or cfg.get("batch", "csv_path", fallback=_env("BATCH_CSV"))

    missing = [
        k for k, v in {
            "source host": source_host,
            "destination host": dest_host,
            "CSV file": csv_path,
        }.items() if not v
    ]
    if missing:
        raise ValueError(f"Missing required settings: {', '.join(missing)}")

    has_header = not args.no_header and parse_bool(
        cfg.get("batch", "has_header", fallback=_env("CSV_HAS_HEADER")), True
    )

    if args.max_concurrency is not None:
        requested = args.max_concurrency
    else:
        requested = _optional_number(
            cfg.get("batch", "max_concurrency", fallback=_env("MAX_CONCURRENCY")), int, "max_concurrency"
        )
    max_concurrency = resolve_max_concurrency(requested)

    binary = args.imapsync or cfg.get("imapsync", "path", fallback=_env("IMAPSYNC_PATH", DEFAULT_IMAPSYNC))
    raw_flags = args.imapsync_flags
    if raw_flags is None:
        raw_flags = cfg.get("imapsync", "flags", fallback=_env("IMAPSYNC_FLAGS", DEFAULT_IMAPSYNC_FLAGS))

    if args.timeout is not None:
        timeout = args.timeout
    else:
        timeout = _optional_number(
            cfg.get("imapsync", "timeout", fallback=_env("IMAPSYNC_TIMEOUT")), float, "timeout"
        )
    if timeout is not None and timeout <= 0:
        timeout = None

    dry_run = args.dry_run or cfg.getboolean("imapsync", "dry_run", fallback=False)

    return RunnerConfig(
        source_host=source_host,
        dest_host=dest_host,
        csv_path=csv_path,
        max_concurrency=max_concurrency,
        has_header=has_header,
        imapsync=ImapsyncSettings(
            binary=binary,
            flags=tuple(shlex.split(raw_flags)),
            timeout=timeout,
            dry_run=dry_run,
        ),
    )


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate IMAP mailboxes in bulk with imapsync")
    parser.add_argument("--config", help="Path to INI config file")
    parser.add_argument("-c", "--csv-file", help="CSV file with source email, source password, dest email, dest password")
    parser.add_argument("-o", "--source-host", "--old-host", dest="source_host", help="Source IMAP server host")
    parser.add_argument("-n", "--dest-host", "--new-host", dest="dest_host", help="Destination IMAP server host")
    parser.add_argument(
        "-j",
        "--max-concurrency",
        type=int,
        help=f"Maximum imapsync processes at once (default: CPUs / {CPU_DIVISOR}, at least 1)",
    )
    parser.add_argument("--imapsync", help=f'imapsync executable (default: "{DEFAULT_IMAPSYNC}")')
    parser.add_argument(
        "--imapsync-flags",
        help=f'Fixed flags passed to every imapsync run (default: "{DEFAULT_IMAPSYNC_FLAGS}")',
    )
    parser.add_argument("--timeout", type=float, help="Seconds before a single imapsync run is abandoned (default: none)")
    parser.add_argument("--no-header", action="store_true", help="CSV file has no header row")
    parser.add_argument("--dry-run", action="store_true", help="Print imapsync commands without running them")
    parser.add_argument("--report-file", help="Path to report log file")
    return parser.parse_args(argv)


def main(argv: List[str]) -> int:
    args = parse_args(argv)
    try:
        cfg_parser = load_config(args.config)
        report_path = args.report_file or cfg_parser.get("report", "path", fallback=None)
        if report_path:
            open_report_file(report_path)
    except (OSError, configparser.Error) as exc:
        log_message(f"Config error: {exc}")
        return 2

    try:
        try:
            config = build_runner_config(args, cfg_parser)
        except (ValueError, configparser.Error) as exc:
            log_message(f"Config error: {exc}")
            return 2

        try:
            records = load_records(config.csv_path, has_header=config.has_header)
        except (OSError, ValueError) as exc:
            log_message(f"[ERROR] {exc}")
            return 1

        jobs, skipped = partition_results(build_jobs(records, config.source_host, config.dest_host))
        log_message(
            f"Loaded {len(jobs)} job(s), skipped {len(skipped)} record(s). "
            f"{config.source_host} -> {config.dest_host}, up to {config.max_concurrency} imapsync process(es) at once."
        )

        execute = functools.partial(execute_job, settings=config.imapsync)
        started_at = time.time()
        try:
            aggregate(skipped, iter_outcomes(jobs, config.max_concurrency, execute), started_at=started_at)
        except KeyboardInterrupt:
            log_message("\nInterrupted by user. Some mailboxes may be partially migrated.")
            return 130
        return 0
    finally:
        close_report_file()


def cli() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
