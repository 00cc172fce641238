import logging
import threading
from dataclasses import dataclass

from authcore.auth.idp import IdpClient
from authcore.auth.security import PasswordHasher
from authcore.auth.tokens import HmacSecret, KeyResolver, TokenCodec
from authcore.core.config import Settings, settings as default_settings
from authcore.governance.policy_engine import PolicyEngine

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Process-wide services shared by every request."""

    settings: Settings
    hasher: PasswordHasher
    codec: TokenCodec
    signing_key: HmacSecret
    resolver: KeyResolver
    policy_engine: PolicyEngine
    idp: IdpClient


def build_runtime(settings: Settings | None = None) -> Runtime:
    settings = settings or default_settings
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not set; refusing to start")
    if settings.JWT_ALGORITHM not in settings.JWT_ALLOWED_ALGORITHMS:
        raise RuntimeError(
            f"JWT_ALGORITHM {settings.JWT_ALGORITHM} is not in JWT_ALLOWED_ALGORITHMS"
        )

    codec = TokenCodec(settings.JWT_ALLOWED_ALGORITHMS, leeway=settings.JWT_LEEWAY_SECONDS)
    signing_key = HmacSecret(
        secret=settings.JWT_SECRET,
        kid=settings.JWT_KEY_ID or None,
        algorithm=settings.JWT_ALGORITHM,
    )
    runtime = Runtime(
        settings=settings,
        hasher=PasswordHasher(settings.BCRYPT_ROUNDS),
        codec=codec,
        signing_key=signing_key,
        resolver=KeyResolver(signing_key),
        policy_engine=PolicyEngine(),
        idp=IdpClient(settings, codec),
    )
    logger.info(
        "runtime ready: alg=%s allowed=%s bcrypt_rounds=%s idp_configured=%s",
        settings.JWT_ALGORITHM,
        ",".join(settings.JWT_ALLOWED_ALGORITHMS),
        settings.BCRYPT_ROUNDS,
        settings.idp_configured,
    )
    return runtime


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is not None:
        return _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = build_runtime()
        return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    """Replace the process runtime (tests, or a restart with new settings)."""
    global _runtime
    with _runtime_lock:
        _runtime = runtime
