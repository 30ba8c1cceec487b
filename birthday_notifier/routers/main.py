from fastapi import APIRouter

from birthday_notifier.routers.health import health_router
from birthday_notifier.routers.scheduler import scheduler_router
from birthday_notifier.routers.users import users_router

main_router = APIRouter()

main_router.include_router(health_router, prefix="/health", tags=["Health Checks"])
main_router.include_router(users_router, prefix="/users", tags=["Users"])
main_router.include_router(scheduler_router, prefix="/scheduler", tags=["Scheduler"])
