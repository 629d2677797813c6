"""API Key authentication logic.

Keys are validated against a comma-separated list from environment variables.
Each entry may carry the principal it authenticates::

    APP_API_KEYS="k1=alice:admin,k2=bob:premium|system.rate_limits.reset,k3"

Roles after the colon are split on ``|``: the admin role marks an
administrator, names containing a dot are permissions, anything else is a
capability. A bare key authenticates a principal named after the key's hash.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Header, HTTPException, status

from app.core.config import settings
from app.core.errors import AuthenticationAppError
from app.core.logging import hash_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated API key holder."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return settings.app.admin_role in self.roles

    @property
    def permissions(self) -> frozenset[str]:
        return frozenset(role for role in self.roles if "." in role)

    @property
    def capabilities(self) -> frozenset[str]:
        return frozenset(
            role for role in self.roles
            if "." not in role and role != settings.app.admin_role
        )


def _parse_entry(entry: str) -> tuple[str, Principal]:
    key, _, principal_spec = entry.partition("=")
    key = key.strip()
    principal_spec = principal_spec.strip()
    if not principal_spec:
        return key, Principal(user_id=f"key-{hash_identifier(key)}")

    user_id, _, roles_spec = principal_spec.partition(":")
    roles = frozenset(role.strip() for role in roles_spec.split("|") if role.strip())
    return key, Principal(user_id=user_id.strip() or f"key-{hash_identifier(key)}", roles=roles)


def parse_api_keys(keys_string: str | None) -> dict[str, Principal]:
    """Parse comma-separated API key entries into a key → principal map.

    Args:
        keys_string: Comma-separated entries ``key`` or ``key=user:role|role``.

    Returns:
        Mapping of trimmed, non-empty keys to their principals.

    Examples:
        >>> sorted(parse_api_keys("key1, key2"))
        ['key1', 'key2']
        >>> parse_api_keys("k=alice:admin")["k"].user_id
        'alice'
        >>> parse_api_keys(None)
        {}
    """
    if not keys_string:
        return {}

    principals: dict[str, Principal] = {}
    for entry in keys_string.split(","):
        if not entry.strip():
            continue
        key, principal = _parse_entry(entry)
        if key:
            principals[key] = principal
    return principals


def validate_api_key(provided_key: str) -> Principal | None:
    """Validate that provided API key matches configured keys.

    Pure validation logic without FastAPI dependencies for easy testing.

    Args:
        provided_key: API key to validate.

    Returns:
        The matching principal; None when authentication is disabled and the
        key is unknown.

    Raises:
        AuthenticationAppError: If key is invalid or authentication is required but no keys configured.
    """
    valid_keys = parse_api_keys(settings.app.api_keys)

    if not settings.app.api_key_required:
        # Authentication disabled - known keys still identify their principal
        return valid_keys.get(provided_key)

    if not valid_keys:
        logger.error(
            "api_key_validation_failed",
            extra={
                "reason": "api_keys_not_configured",
                "auth_required": settings.app.api_key_required,
            },
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS environment variable or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    principal = valid_keys.get(provided_key)
    if principal is None:
        logger.warning(
            "api_key_validation_failed",
            extra={
                "reason": "invalid_api_key",
                "api_key_hash": hash_identifier(provided_key),
                "auth_required": settings.app.api_key_required,
            },
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )
    return principal


async def verify_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> Principal | None:
    """FastAPI dependency for API key authentication.

    Validates the X-API-Key header against configured API keys.
    Can be disabled by setting APP_API_KEY_REQUIRED=false; requests are then
    anonymous unless they send a known key.

    Usage:
        @router.get("/protected")
        async def protected_endpoint(principal: Principal | None = Depends(verify_api_key)):
            ...

    Args:
        x_api_key: API key from X-API-Key header (injected by FastAPI).

    Returns:
        The authenticated principal, or None for anonymous callers.

    Raises:
        HTTPException: 403 Forbidden if authentication fails.
    """
    if not settings.app.api_key_required and not x_api_key:
        logger.debug(
            "auth.skipped",
            extra={"reason": "auth_required_false"},
        )
        return None

    if not x_api_key:
        logger.warning(
            "auth.missing_key",
            extra={
                "auth_required": True,
                "api_key_present": False,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Provide X-API-Key header.",
        )

    try:
        principal = validate_api_key(x_api_key)
    except AuthenticationAppError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.message,
        ) from exc

    logger.info(
        "auth.success",
        extra={
            "auth_required": settings.app.api_key_required,
            "api_key_present": True,
            "api_key_hash": hash_identifier(x_api_key),
            "authenticated": principal is not None,
        },
    )
    return principal
