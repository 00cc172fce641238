from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from authcore.auth.claims import Identity
from authcore.auth.deps import get_auth_service, require_identity
from authcore.auth.rbac import authorize
from authcore.auth.schemas import (
    AuthResponse,
    LoginRequest,
    MeResponse,
    ProfileUpdate,
    RegisterRequest,
    SwitchTenantRequest,
    UserOut,
)
from authcore.auth.service import AuthService, RegisterInput
from authcore.core.schemas import MessageResponse

router = APIRouter()


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, service: AuthService = Depends(get_auth_service)):
    result = service.register(
        RegisterInput(
            username=payload.username,
            password=payload.password,
            email=payload.email,
            name=payload.name,
            tenant_id=payload.tenant_id,
        )
    )
    return AuthResponse.model_validate(result)


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, service: AuthService = Depends(get_auth_service)):
    return AuthResponse.model_validate(service.login(payload.username, payload.password))


@router.get("/me", response_model=MeResponse)
def me(
    request: Request,
    identity: Identity = Depends(require_identity),
    service: AuthService = Depends(get_auth_service),
):
    return MeResponse.model_validate(service.current_user(request.state.token))


@router.post("/logout", response_model=MessageResponse)
def logout(service: AuthService = Depends(get_auth_service)):
    return service.logout()


@router.post("/switch-tenant", response_model=AuthResponse)
def switch_tenant(
    payload: SwitchTenantRequest,
    identity: Identity = Depends(require_identity),
    service: AuthService = Depends(get_auth_service),
):
    return AuthResponse.model_validate(service.switch_tenant(identity.user_id, payload.tenant_id))


# --- Profile (always the caller's own record) ---


@router.get("/profile", response_model=UserOut)
def get_profile(
    identity: Identity = Depends(authorize("profile", "view")),
    service: AuthService = Depends(get_auth_service),
):
    return service.profile(identity.user_id)


@router.patch("/profile", response_model=UserOut)
def update_profile(
    payload: ProfileUpdate,
    identity: Identity = Depends(authorize("profile", "edit")),
    service: AuthService = Depends(get_auth_service),
):
    patch = payload.model_dump(exclude_unset=True)
    current_password = patch.pop("current_password", None)
    return service.update_profile(identity.user_id, patch, current_password)


# --- Identity provider ---


@router.get("/idp")
def idp_login(
    redirect_uri: str | None = Query(default=None, alias="redirect_uri"),
    service: AuthService = Depends(get_auth_service),
):
    return RedirectResponse(service.begin_idp(redirect_uri), status_code=status.HTTP_302_FOUND)


@router.get("/callback")
def idp_callback(
    code: str = Query(default=""),
    state: str = Query(default=""),
    service: AuthService = Depends(get_auth_service),
):
    result = service.complete_idp(code, state)
    target = result.redirect_uri or service.settings.POST_LOGIN_URL
    if target:
        sep = "&" if "?" in target else "?"
        return RedirectResponse(
            f"{target}{sep}{urlencode({'token': result.token})}",
            status_code=status.HTTP_302_FOUND,
        )
    return AuthResponse.model_validate(result)
