import logging

from fastapi import Depends

from authcore.auth.claims import Identity
from authcore.auth.deps import require_identity
from authcore.core.config import Settings
from authcore.core.errors import Forbidden, Unauthenticated
from authcore.system.runtime import Runtime, get_runtime

logger = logging.getLogger(__name__)


def warn_if_authorization_disabled(settings: Settings) -> bool:
    """Called once at startup; checks themselves stay silent."""
    if settings.DISABLE_AUTHORIZATION:
        logger.warning("DISABLE_AUTHORIZATION is set: every authenticated request is allowed")
        return True
    return False


def authorize(resource: str, action: str):
    def checker(
        identity: Identity = Depends(require_identity),
        runtime: Runtime = Depends(get_runtime),
    ) -> Identity:
        if runtime.settings.DISABLE_AUTHORIZATION:
            return identity
        if not identity.roles and not identity.is_super_admin:
            raise Unauthenticated()
        if identity.is_super_admin:
            return identity

        decision = runtime.policy_engine.decide(identity.roles, resource, action)
        if not decision.allowed:
            logger.info(
                "access denied: user_id=%s roles=%s %s %s",
                identity.user_id,
                ",".join(identity.roles),
                resource,
                action,
            )
            raise Forbidden(f"Access denied: {resource} {action}")
        return identity

    return checker
