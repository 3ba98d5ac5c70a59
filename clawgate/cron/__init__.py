"""Cron service for clawgate scheduled jobs."""

from clawgate.cron.service import CronError, CronService
from clawgate.cron.types import CronJob, CronPayload, CronSchedule

__all__ = ["CronService", "CronError", "CronJob", "CronPayload", "CronSchedule"]
