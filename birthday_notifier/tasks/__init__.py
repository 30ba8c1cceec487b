from .cron import *

__all__ = [
    # Scheduled/Cron Tasks
    "dispatch_tick_task",
    "recovery_sweep_task",
]
