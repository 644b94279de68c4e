from fastapi import APIRouter, Depends, Request, status

from app.auth.providers import AuthenticatedUser, current_user, get_auth_provider

router = APIRouter()
current_user_dependency = Depends(current_user)


@router.get("/me")
def me(user: AuthenticatedUser = current_user_dependency) -> dict[str, object]:
    safe_fields = ("sub", "email", "role", "iss", "exp")
    return {key: user.claims[key] for key in safe_fields if key in user.claims}


@router.post("/auth/sign-out", status_code=status.HTTP_204_NO_CONTENT)
async def sign_out(request: Request, user: AuthenticatedUser = current_user_dependency) -> None:
    await get_auth_provider(request).sign_out(user.access_token)
