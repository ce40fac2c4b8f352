from .runner import BackgroundScheduler, SchedulerJob

__all__ = ["BackgroundScheduler", "SchedulerJob"]
