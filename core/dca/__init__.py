from .scheduler import DcaScheduler, DcaTickResult, next_run_after

__all__ = ["DcaScheduler", "DcaTickResult", "next_run_after"]
