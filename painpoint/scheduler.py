"""Background execution for the pain-point pipeline.

StageWorker drains a queue of pending jobs so HTTP handlers and chained
stages can return immediately; the job record is the handle callers poll.
PipelineScheduler queues stages on cron expressions from config.
"""

import logging
import queue
import threading
from datetime import datetime, timedelta
from typing import Optional

from painpoint.config import SchedulerConfig
from painpoint.stages import STAGES, Pipeline

logger = logging.getLogger(__name__)


def parse_cron(cron_expression: str) -> dict:
    """Parse a cron expression into components.

    Supports: minute hour day_of_month month day_of_week
    Example: "*/30 * * * *" = every 30 minutes

    Returns:
        Dictionary with 'minute', 'hour', 'day', 'month', 'weekday' keys.
        Values are lists of integers, or None for '*' (any).

    Raises:
        ValueError: If the expression does not have five valid fields.
    """
    parts = cron_expression.strip().split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expression}. Expected 5 fields.")

    def parse_field(field: str, min_val: int, max_val: int) -> list[int] | None:
        if field == '*':
            return None
        values: set[int] = set()
        for part in field.split(','):
            step = 1
            if '/' in part:
                part, step_text = part.split('/')
                step = int(step_text)
            if part == '*':
                start, end = min_val, max_val
            elif '-' in part:
                start_text, end_text = part.split('-')
                start, end = int(start_text), int(end_text)
            else:
                start = int(part)
                end = max_val if step > 1 else start
            if start < min_val or end > max_val or step < 1:
                raise ValueError(f"Cron field out of range: {field}")
            values.update(range(start, end + 1, step))
        return sorted(values)

    return {
        'minute': parse_field(parts[0], 0, 59),
        'hour': parse_field(parts[1], 0, 23),
        'day': parse_field(parts[2], 1, 31),
        'month': parse_field(parts[3], 1, 12),
        'weekday': parse_field(parts[4], 0, 6),  # 0 = Sunday
    }


def _matches(cron: dict, moment: datetime) -> bool:
    # Cron weekday: Sunday=0, Python weekday: Monday=0
    cron_weekday = (moment.weekday() + 1) % 7
    checks = [
        ('minute', moment.minute),
        ('hour', moment.hour),
        ('day', moment.day),
        ('month', moment.month),
        ('weekday', cron_weekday),
    ]
    return all(cron[name] is None or value in cron[name] for name, value in checks)


def get_next_run_time(cron_expression: str, after: datetime | None = None) -> datetime:
    """Next minute strictly after ``after`` (default now) matching the expression.

    Raises:
        ValueError: Invalid expression, or no match within a year.
    """
    if after is None:
        after = datetime.now()

    cron = parse_cron(cron_expression)
    current = after.replace(second=0, microsecond=0) + timedelta(minutes=1)

    for _ in range(366 * 24 * 60):
        if _matches(cron, current):
            return current
        current += timedelta(minutes=1)

    raise ValueError(f"Cron expression never fires: {cron_expression}")


def describe_cron(cron_expression: str) -> str:
    """Short human-readable description of a cron expression."""
    try:
        cron = parse_cron(cron_expression)
    except ValueError:
        return f"Invalid: {cron_expression}"

    minute, hour = cron['minute'], cron['hour']
    if hour is None and cron['day'] is None and cron['weekday'] is None:
        if minute is None:
            return "Every minute"
        if len(minute) > 1:
            step = minute[1] - minute[0]
            if all(b - a == step for a, b in zip(minute, minute[1:])) and minute[0] == 0:
                return f"Every {step} minutes"
        if len(minute) == 1:
            return f"Hourly at :{minute[0]:02d}"

    if minute is not None and hour is not None and len(minute) == 1 and len(hour) == 1:
        when = f"at {hour[0]:02d}:{minute[0]:02d}"
        if cron['weekday'] is not None:
            day_names = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
            return ", ".join(day_names[d] for d in cron['weekday']) + " " + when
        if cron['day'] is None and cron['month'] is None:
            return f"Daily {when}"

    return cron_expression


# ============================================================================
# Queue worker
# ============================================================================

class StageWorker(threading.Thread):
    """Background thread running queued stage jobs one at a time."""

    def __init__(self, pipeline: Pipeline):
        super().__init__(daemon=True, name="stage-worker")
        self.pipeline = pipeline
        self._queue: "queue.Queue[tuple[str, str] | None]" = queue.Queue()
        self._stop_event = threading.Event()

    def submit(self, stage: str, parameters: dict | None = None) -> str:
        """Create a pending job and queue it. Returns the job id."""
        job_id = self.pipeline.create(stage, parameters)
        self._queue.put((stage, job_id))
        logger.info(f"[Worker] Queued {stage} job {job_id}")
        return job_id

    def pending(self) -> int:
        return self._queue.qsize()

    def wait_idle(self) -> None:
        """Block until every queued job has been run."""
        self._queue.join()

    def stop(self) -> None:
        """Stop after the job in progress; queued jobs stay pending in the store."""
        self._stop_event.set()
        self._queue.put(None)

    def run(self):
        logger.info("[Worker] Starting stage worker")

        while not self._stop_event.is_set():
            item = self._queue.get()
            try:
                if item is None:
                    continue
                stage, job_id = item
                job = self.pipeline.run_job(stage, job_id)
                logger.info(f"[Worker] {job_id} finished: {job.status}")
            except Exception as e:
                logger.exception(f"[Worker] Could not run queued job {item}: {e}")
            finally:
                self._queue.task_done()

        logger.info("[Worker] Stage worker stopped")


# ============================================================================
# Cron scheduler
# ============================================================================

class PipelineScheduler(threading.Thread):
    """Background thread that queues stages when their cron expression is due."""

    def __init__(self, worker: StageWorker, schedules: SchedulerConfig, check_interval: int = 30):
        """Initialize the scheduler thread.

        Args:
            worker: Worker the due stages are submitted to.
            schedules: Cron expression per stage; empty disables a stage.
            check_interval: Seconds between schedule checks.
        """
        super().__init__(daemon=True, name="pipeline-scheduler")
        self.worker = worker
        self.check_interval = check_interval
        self._stop_event = threading.Event()
        self.expressions = {
            stage: getattr(schedules, stage)
            for stage in STAGES
            if getattr(schedules, stage, "")
        }
        now = datetime.now()
        # Validates expressions up front
        self.next_runs = {
            stage: get_next_run_time(expr, now) for stage, expr in self.expressions.items()
        }

    def stop(self):
        """Signal the scheduler to stop."""
        self._stop_event.set()

    def run(self):
        """Main scheduler loop."""
        logger.info(f"[Scheduler] Starting scheduler for {', '.join(self.expressions) or 'no stages'}")

        while not self._stop_event.is_set():
            try:
                self.check_due()
            except Exception as e:
                logger.exception(f"[Scheduler] Error checking schedules: {e}")

            self._stop_event.wait(timeout=self.check_interval)

        logger.info("[Scheduler] Scheduler thread stopped")

    def check_due(self, now: datetime | None = None) -> list[str]:
        """Submit every stage whose next run time has passed.

        Returns:
            Ids of the jobs submitted.
        """
        now = now or datetime.now()
        submitted = []
        for stage, next_run in self.next_runs.items():
            if next_run > now:
                continue
            logger.info(f"[Scheduler] {stage} due ({describe_cron(self.expressions[stage])})")
            submitted.append(self.worker.submit(stage, {"scheduled": True}))
            self.next_runs[stage] = get_next_run_time(self.expressions[stage], now)
        return submitted


# Global scheduler instance
_scheduler: Optional[PipelineScheduler] = None


def start_scheduler(worker: StageWorker, schedules: SchedulerConfig, check_interval: int = 30) -> PipelineScheduler:
    """Start the global scheduler thread."""
    global _scheduler

    if _scheduler is not None and _scheduler.is_alive():
        logger.warning("[Scheduler] Scheduler already running")
        return _scheduler

    _scheduler = PipelineScheduler(worker, schedules, check_interval=check_interval)
    _scheduler.start()
    return _scheduler


def stop_scheduler():
    """Stop the global scheduler thread."""
    global _scheduler

    if _scheduler is not None:
        _scheduler.stop()
        _scheduler.join(timeout=5)
        _scheduler = None
