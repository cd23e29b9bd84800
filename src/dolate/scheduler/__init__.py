"""定时任务."""

from dolate.scheduler.tasks import BackgroundSync

__all__ = ["BackgroundSync"]
