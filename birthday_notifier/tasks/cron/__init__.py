from .dispatch_tick import dispatch_tick_task
from .recovery_sweep import recovery_sweep_task

__all__ = [
    "dispatch_tick_task",
    "recovery_sweep_task",
]
