from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class OperatorConfig:
    requeue_after_error_seconds: int = int(os.getenv("NBO_REQUEUE_AFTER_ERROR_SECONDS", "60"))
    requeue_after_success_seconds: int = int(os.getenv("NBO_REQUEUE_AFTER_SUCCESS_SECONDS", "300"))
    requeue_while_job_active_seconds: int = int(os.getenv("NBO_REQUEUE_WHILE_JOB_ACTIVE_SECONDS", "60"))
    successful_jobs_history_limit: int = int(os.getenv("NBO_SUCCESSFUL_JOBS_HISTORY_LIMIT", "3"))
    failed_jobs_history_limit: int = int(os.getenv("NBO_FAILED_JOBS_HISTORY_LIMIT", "1"))
    stuck_job_timeout_seconds: int = int(os.getenv("NBO_STUCK_JOB_TIMEOUT_SECONDS", "2400"))
    job_backoff_limit: int = int(os.getenv("NBO_JOB_BACKOFF_LIMIT", "3"))
    job_active_deadline_seconds: int = int(os.getenv("NBO_JOB_ACTIVE_DEADLINE_SECONDS", "1800"))
    job_ttl_seconds_after_finished: int = int(os.getenv("NBO_JOB_TTL_SECONDS_AFTER_FINISHED", "600"))
    backup_image: str = os.getenv("NBO_BACKUP_IMAGE", "restic/restic:0.17.3")
    request_timeout_seconds: int = int(os.getenv("NBO_REQUEST_TIMEOUT_SECONDS", "20"))
    resync_interval_seconds: int = int(os.getenv("NBO_RESYNC_INTERVAL_SECONDS", "30"))
    max_workers: int = int(os.getenv("NBO_MAX_WORKERS", "4"))
    nfs_mount_path: Path = Path(os.getenv("NBO_NFS_MOUNT_PATH", "/mnt/nfs"))
    log_level: str = os.getenv("NBO_LOG_LEVEL", "INFO")

    @property
    def requeue_after_error(self) -> timedelta:
        return timedelta(seconds=self.requeue_after_error_seconds)

    @property
    def requeue_after_success(self) -> timedelta:
        return timedelta(seconds=self.requeue_after_success_seconds)

    @property
    def requeue_while_job_active(self) -> timedelta:
        return timedelta(seconds=self.requeue_while_job_active_seconds)

    @property
    def stuck_job_timeout(self) -> timedelta:
        return timedelta(seconds=self.stuck_job_timeout_seconds)


def validate_config(config: OperatorConfig) -> None:
    for field_name in (
        "requeue_after_error_seconds",
        "requeue_after_success_seconds",
        "requeue_while_job_active_seconds",
        "stuck_job_timeout_seconds",
        "job_active_deadline_seconds",
        "request_timeout_seconds",
        "resync_interval_seconds",
        "max_workers",
    ):
        if getattr(config, field_name) <= 0:
            raise ValueError(f"{field_name} must be positive")
    for field_name in ("successful_jobs_history_limit", "failed_jobs_history_limit", "job_backoff_limit"):
        if getattr(config, field_name) < 0:
            raise ValueError(f"{field_name} must be >= 0")
    if config.job_ttl_seconds_after_finished <= config.requeue_while_job_active_seconds:
        raise ValueError(
            "job_ttl_seconds_after_finished must exceed requeue_while_job_active_seconds "
            "or finished Jobs are deleted before their result is recorded"
        )


def configure_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level}")
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    # The kubernetes client logs every request at DEBUG through urllib3.
    logging.getLogger("urllib3").setLevel(max(resolved, logging.WARNING))
