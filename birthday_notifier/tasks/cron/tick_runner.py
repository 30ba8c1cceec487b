from typing import Any, Dict

from birthday_notifier.config.settings import settings
from birthday_notifier.db.session import build_engine, build_session_factory
from birthday_notifier.services.scheduler_service import build_scheduler_service
from birthday_notifier.utils.logging import get_logger


async def run_scheduler_tick(kind: str, request_id: str) -> Dict[str, Any]:
    """
    Run one dispatch tick or recovery sweep inside a Celery worker.

    Every task invocation gets its own event loop from ``asyncio.run``, so the
    engine is created and disposed here instead of reusing the module-level
    one, whose pooled connections belong to a different loop.
    """
    logger = get_logger().bind(request_id=request_id)
    engine = build_engine()
    try:
        service = build_scheduler_service(
            settings, session_factory=build_session_factory(engine)
        )
        tick = service.dispatch_tick if kind == "dispatch" else service.recovery_sweep
        summary = await tick()
        return {"success": not summary.errors, **summary.to_dict()}
    except Exception as e:
        logger.exception(f"Scheduler {kind} task exception: {str(e)}")
        return {"success": False, "kind": kind, "request_id": request_id, "error": str(e)}
    finally:
        await engine.dispose()
