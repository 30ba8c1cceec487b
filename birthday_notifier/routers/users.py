import uuid

from fastapi import APIRouter, Depends, Request, status

from birthday_notifier.schemas.user_schemas import CreateUserRequest, UpdateUserRequest
from birthday_notifier.services.user_service import UserService, get_user_service
from birthday_notifier.utils.responses import ResponseBuilder

users_router = APIRouter()


@users_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a user",
    description="Create a user and schedule their birthday notifications for the planning horizon",
)
async def create_user(
    request: Request,
    user_data: CreateUserRequest,
    user_service: UserService = Depends(get_user_service),
):
    user = await user_service.create_user(user_data)

    return ResponseBuilder.success(
        request=request,
        data=user.model_dump(by_alias=True),
        message="User created successfully",
        status_code=status.HTTP_201_CREATED,
    )


@users_router.get("/{user_id}", summary="Get a user with their pending notification count")
async def get_user(
    request: Request,
    user_id: uuid.UUID,
    user_service: UserService = Depends(get_user_service),
):
    user = await user_service.get_user(user_id)

    return ResponseBuilder.success(
        request=request,
        data=user.model_dump(by_alias=True),
        message="User retrieved successfully",
    )


@users_router.put(
    "/{user_id}",
    summary="Update a user",
    description="Birthday or timezone changes replace the user's pending notifications",
)
async def update_user(
    request: Request,
    user_id: uuid.UUID,
    update_data: UpdateUserRequest,
    user_service: UserService = Depends(get_user_service),
):
    user = await user_service.update_user(user_id, update_data)

    return ResponseBuilder.success(
        request=request,
        data=user.model_dump(by_alias=True),
        message="User updated successfully",
    )


@users_router.delete("/{user_id}", summary="Delete a user and all of their notifications")
async def delete_user(
    request: Request,
    user_id: uuid.UUID,
    user_service: UserService = Depends(get_user_service),
):
    await user_service.delete_user(user_id)

    return ResponseBuilder.success(request=request, message="User deleted successfully")
