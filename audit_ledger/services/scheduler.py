"""
Compliance scheduler.

Three recurring jobs run as independent asyncio tasks on UTC calendar
times:

- retention_cleanup   daily at 02:00
- compliance_report   weekly on Sunday at 06:00
- ledger_maintenance  monthly on the 1st at 03:00

A job never overlaps itself (a run that finds the previous one still
going is skipped), is bounded by `job_timeout_seconds`, and reports its
outcome back into the ledger as a SYSTEM_* event.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from nacl.signing import SigningKey

from audit_ledger import metrics
from audit_ledger.config import Settings
from audit_ledger.crypto import verify_key_hex
from audit_ledger.errors import (
    IntegrityHoldError,
    IntegrityViolationError,
    JobTimeoutError,
    UnknownJobError,
)
from audit_ledger.events import AuditEvent, ensure_utc, format_timestamp, utc_now
from audit_ledger.ledger import RetentionCheckpoint, verify_chain
from audit_ledger.models import ChainVerificationResult, ComplianceReport, ComplianceStatus, JobResult
from audit_ledger.risk import Outcome, RiskLevel
from audit_ledger.services.reports import ComplianceReporter
from audit_ledger.services.store import AuditStore

logger = logging.getLogger(__name__)

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"


@dataclass(frozen=True)
class Schedule:
    """Calendar slot in UTC. `weekday` follows datetime.weekday() (Monday=0)."""

    frequency: str
    hour: int
    minute: int = 0
    weekday: Optional[int] = None
    day: Optional[int] = None


@dataclass(frozen=True)
class Job:
    name: str
    event_name: str
    schedule: Schedule
    handler: Callable[[], Awaitable[Dict[str, Any]]]


def next_run_after(now: datetime, schedule: Schedule) -> datetime:
    """
    Next calendar time strictly after `now` matching `schedule`.

    Args:
        now: Reference time (naive values are taken as UTC)
        schedule: Daily, weekly or monthly slot

    Returns:
        Aware UTC datetime of the next run
    """
    now = ensure_utc(now)
    candidate = now.replace(hour=schedule.hour, minute=schedule.minute, second=0, microsecond=0)

    if schedule.frequency == DAILY:
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    if schedule.frequency == WEEKLY:
        candidate += timedelta(days=(schedule.weekday - now.weekday()) % 7)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate

    if schedule.frequency == MONTHLY:
        candidate = candidate.replace(day=schedule.day)
        if candidate <= now:
            if candidate.month == 12:
                candidate = candidate.replace(year=candidate.year + 1, month=1)
            else:
                candidate = candidate.replace(month=candidate.month + 1)
        return candidate

    raise ValueError(f"Unknown schedule frequency: {schedule.frequency}")


def years_before(moment: datetime, years: int) -> datetime:
    """Same calendar date `years` earlier; Feb 29 maps to Feb 28."""
    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        return moment.replace(year=moment.year - years, day=28)


class ComplianceScheduler:
    """Runs retention, reporting and ledger maintenance jobs."""

    def __init__(
        self,
        store: AuditStore,
        emit: Callable[[AuditEvent], None],
        reporter: ComplianceReporter,
        settings: Settings,
        signing_key: Optional[SigningKey] = None
    ):
        self.store = store
        self.emit = emit
        self.reporter = reporter
        self.settings = settings
        self.signing_key = signing_key
        self.trusted_verify_key = verify_key_hex(signing_key) if signing_key else None
        self.timeout = settings.job_timeout_seconds

        self.jobs: Dict[str, Job] = {
            job.name: job for job in (
                Job("retention_cleanup", "DATA_RETENTION_CLEANUP",
                    Schedule(DAILY, hour=2), self.retention_cleanup),
                Job("compliance_report", "COMPLIANCE_REPORT_GENERATED",
                    Schedule(WEEKLY, hour=6, weekday=6), self.compliance_report),
                Job("ledger_maintenance", "AUDIT_LOG_MAINTENANCE",
                    Schedule(MONTHLY, hour=3, day=1), self.ledger_maintenance),
            )
        }

        self._tasks: List[asyncio.Task] = []
        self._active: Set[str] = set()
        self.last_results: Dict[str, JobResult] = {}
        self.last_report: Optional[ComplianceReport] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        if self._tasks:
            return
        for job in self.jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job-{job.name}"))
        logger.info(f"Compliance scheduler started with jobs: {', '.join(self.jobs)}")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Compliance scheduler stopped")

    async def _loop(self, job: Job) -> None:
        while True:
            due = next_run_after(utc_now(), job.schedule)
            logger.debug(f"Job {job.name} next run at {format_timestamp(due)}")
            await asyncio.sleep(max((due - utc_now()).total_seconds(), 0))
            await self.run_job(job.name)

    # ========================================================================
    # Job execution
    # ========================================================================

    async def run_job(self, name: str) -> JobResult:
        """
        Run one job now, with the same guards as a scheduled run.

        Raises:
            UnknownJobError: If no job has this name
        """
        job = self.jobs.get(name)
        if job is None:
            raise UnknownJobError(f"Unknown job: {name}")

        started = utc_now()
        if name in self._active:
            logger.warning(f"Job {name} is still running; skipping this run")
            return self._finish(job, started, "skipped", error="Previous run still in progress")

        self._active.add(name)
        try:
            details = await asyncio.wait_for(job.handler(), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = JobTimeoutError(f"Job {name} exceeded {self.timeout}s")
            logger.error(str(error))
            return self._finish(job, started, "failed", error=str(error))
        except IntegrityHoldError as e:
            logger.warning(f"Job {name} skipped: {e}")
            return self._finish(job, started, "skipped", error=str(e))
        except Exception as e:
            logger.exception(f"Job {name} failed: {e}")
            return self._finish(job, started, "failed", error=str(e))
        finally:
            self._active.discard(name)

        return self._finish(job, started, "success", details=details)

    def _finish(
        self,
        job: Job,
        started: datetime,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> JobResult:
        finished = utc_now()
        result = JobResult(
            job=job.name,
            status=status,
            started_at=started,
            finished_at=finished,
            duration_seconds=(finished - started).total_seconds(),
            details=details or {},
            error=error,
        )
        self.last_results[job.name] = result
        metrics.job_runs.labels(job=job.name, status=status).inc()

        event_details = {"scheduled_task": True, "job": job.name, **result.details}
        if status == "success":
            self.emit(AuditEvent.system(job.event_name, event_details))
        elif status == "skipped":
            self.emit(AuditEvent.system(
                f"{job.event_name}_SKIPPED", event_details, Outcome.WARNING, reason=error
            ))
        else:
            self.emit(AuditEvent.system(
                f"{job.event_name}_FAILED", {**event_details, "error": error},
                Outcome.FAILURE, reason=error
            ))
        return result

    # ========================================================================
    # Jobs
    # ========================================================================

    async def retention_cleanup(self) -> Dict[str, Any]:
        """
        Delete entries past the retention horizon.

        Entries below HIGH older than `retention_years` go; HIGH and
        CRITICAL entries stay unless `high_risk_retention_years` is set and
        exceeded. Each contiguous deleted run is verified first and replaced
        by a retention checkpoint in the same transaction.

        Raises:
            IntegrityHoldError: If an integrity violation is unresolved
            IntegrityViolationError: If a run fails verification
        """
        if await self.store.get_integrity_hold():
            raise IntegrityHoldError("Integrity hold is set; automated deletion halted")

        now = utc_now()
        cutoff = years_before(now, self.settings.retention_years)
        high_cutoff = None
        if self.settings.high_risk_retention_years is not None:
            high_cutoff = years_before(now, self.settings.high_risk_retention_years)

        summary: Dict[str, Any] = {
            "cutoff": format_timestamp(cutoff),
            "scanned": 0,
            "deleted": 0,
            "checkpoints": 0,
        }

        scan_until = await self.store.max_entry_id_before(cutoff)
        if scan_until is None:
            logger.info("Retention cleanup: nothing older than the horizon")
            return summary

        checkpoints = await self.store.fetch_checkpoints()
        page_size = self.settings.retention_page_size
        run: List[AuditEvent] = []
        after_id = 0

        def eligible(entry: AuditEvent) -> bool:
            if entry.timestamp >= cutoff:
                return False
            if not entry.risk_level.at_least(RiskLevel.HIGH):
                return True
            return high_cutoff is not None and entry.timestamp < high_cutoff

        while True:
            page = await self.store.fetch_entries_after(after_id, page_size, until_id=scan_until)
            if not page:
                break
            after_id = page[-1].entry_id
            summary["scanned"] += len(page)

            for entry in page:
                if eligible(entry):
                    run.append(entry)
                    if len(run) >= page_size:
                        await self._delete_run(run, None, checkpoints, summary)
                        run = []
                elif run:
                    await self._delete_run(run, entry, checkpoints, summary)
                    run = []

        if run:
            await self._delete_run(run, None, checkpoints, summary)

        logger.info(
            f"Retention cleanup removed {summary['deleted']} entries "
            f"in {summary['checkpoints']} runs (cutoff {summary['cutoff']})"
        )
        return summary

    async def _delete_run(
        self,
        run: List[AuditEvent],
        successor: Optional[AuditEvent],
        checkpoints: List[RetentionCheckpoint],
        summary: Dict[str, Any]
    ) -> None:
        window = run + [successor] if successor else run
        result = verify_chain(window, checkpoints, anchor=None,
                              trusted_verify_key=self.trusted_verify_key)
        if not result.is_valid:
            await self.flag_integrity_violation(result, "retention_cleanup")
            raise IntegrityViolationError(result.error_message or "Chain verification failed",
                                          entry_id=result.first_invalid_entry_id)

        checkpoint = RetentionCheckpoint.for_run(run, self.signing_key)
        async with self.store.transaction() as conn:
            deleted = await self.store.delete_entries(conn, [e.entry_id for e in run])
            checkpoint.deleted_count = deleted
            checkpoint.finalize(self.signing_key)
            await self.store.insert_checkpoint(conn, checkpoint)

        checkpoints.append(checkpoint)
        summary["deleted"] += deleted
        summary["checkpoints"] += 1
        logger.debug(
            f"Deleted entries {checkpoint.first_deleted_id}..{checkpoint.last_deleted_id} "
            f"({deleted}) under checkpoint {checkpoint.id}"
        )

    async def compliance_report(self) -> Dict[str, Any]:
        """Generate the weekly report for the trailing seven days."""
        report = await self.reporter.weekly()
        self.last_report = report

        if report.compliance_status is not ComplianceStatus.COMPLIANT:
            logger.warning(f"Weekly compliance status: {report.compliance_status.value}")

        return {
            "type": "weekly",
            "total_events": report.total_events,
            "high_risk_events": report.high_risk_events,
            "failure_rate": report.failure_rate,
            "compliance_status": report.compliance_status.value,
        }

    async def ledger_maintenance(self) -> Dict[str, Any]:
        """
        Verify the most recent `integrity_window` entries and count
        archival candidates.

        Raises:
            IntegrityViolationError: If verification fails; the integrity
                hold is set first
        """
        entries = await self.store.fetch_recent_entries(self.settings.integrity_window)
        checkpoints = await self.store.fetch_checkpoints()
        result = verify_chain(entries, checkpoints, anchor=None,
                              trusted_verify_key=self.trusted_verify_key)

        if not result.is_valid:
            await self.flag_integrity_violation(result, "ledger_maintenance")
            raise IntegrityViolationError(result.error_message or "Chain verification failed",
                                          entry_id=result.first_invalid_entry_id)

        archive_cutoff = utc_now() - timedelta(days=self.settings.archive_after_days)
        archival_candidates = await self.store.count_entries_before(archive_cutoff)

        logger.info(
            f"Ledger maintenance verified {result.entries_checked} entries; "
            f"{archival_candidates} archival candidates"
        )
        return {
            "entries_verified": result.entries_checked,
            "gaps_bridged": result.gaps_bridged,
            "archival_candidates": archival_candidates,
        }

    async def flag_integrity_violation(self, result: ChainVerificationResult, source: str) -> None:
        """Set the integrity hold and emit a CRITICAL violation event."""
        reason = result.error_message or "Chain verification failed"
        await self.store.set_integrity_hold(reason)
        metrics.integrity_hold.set(1)

        self.emit(AuditEvent.system(
            "AUDIT_INTEGRITY_VIOLATION",
            {
                "source": source,
                "first_invalid_entry_id": result.first_invalid_entry_id,
                "invalid_entry_ids": result.invalid_entry_ids[:100],
                "entries_checked": result.entries_checked,
            },
            Outcome.FAILURE,
            reason=reason,
        ))
        logger.critical(
            f"Audit ledger integrity violation at entry {result.first_invalid_entry_id}: "
            f"{reason}; automated deletion halted"
        )
