"""Unit tests for API key authentication module."""

from unittest.mock import patch

import pytest
from fastapi import HTTPException

from app.core.auth import Principal, parse_api_keys, validate_api_key, verify_api_key
from app.core.errors import AuthenticationAppError


class TestParseAPIKeys:
    """Test API key parsing utility function."""

    def test_parse_single_key(self) -> None:
        """Test parsing a single bare API key."""
        result = parse_api_keys("my-secret-key")
        assert set(result) == {"my-secret-key"}
        assert result["my-secret-key"].user_id.startswith("key-")
        assert result["my-secret-key"].roles == frozenset()

    def test_parse_keys_with_whitespace(self) -> None:
        """Test that whitespace is trimmed from keys."""
        result = parse_api_keys("key1 , key2  ,  key3")
        assert set(result) == {"key1", "key2", "key3"}

    def test_parse_none_returns_empty_mapping(self) -> None:
        assert parse_api_keys(None) == {}

    def test_parse_whitespace_only_returns_empty_mapping(self) -> None:
        assert parse_api_keys("   ,  ,  ") == {}

    def test_parse_principal_and_roles(self) -> None:
        """Test 'key=user:role|role' entries."""
        result = parse_api_keys("k1=alice:admin, k2=bob:premium|system.rate_limits.reset")

        assert result["k1"] == Principal(user_id="alice", roles=frozenset({"admin"}))
        assert result["k2"].user_id == "bob"
        assert result["k2"].roles == frozenset({"premium", "system.rate_limits.reset"})

    def test_bare_keys_get_distinct_principals(self) -> None:
        result = parse_api_keys("key1,key2")
        assert result["key1"].user_id != result["key2"].user_id


class TestPrincipal:
    def test_roles_split_into_admin_capabilities_permissions(self) -> None:
        principal = Principal(
            user_id="alice",
            roles=frozenset({"admin", "premium", "system.rate_limits.reset"}),
        )

        assert principal.is_admin is True
        assert principal.capabilities == frozenset({"premium"})
        assert principal.permissions == frozenset({"system.rate_limits.reset"})

    def test_plain_user_is_not_admin(self) -> None:
        assert Principal(user_id="bob").is_admin is False


class TestValidateAPIKey:
    """Test core API key validation logic."""

    @patch("app.core.auth.settings")
    def test_unknown_key_anonymous_when_auth_disabled(self, mock_settings) -> None:
        """Test that validation is skipped when API_KEY_REQUIRED=false."""
        mock_settings.app.api_key_required = False
        mock_settings.app.api_keys = "valid-key=alice"

        assert validate_api_key("any-random-key") is None
        assert validate_api_key("valid-key").user_id == "alice"

    @patch("app.core.auth.settings")
    def test_validate_raises_when_no_keys_configured(self, mock_settings) -> None:
        """Test error when authentication is required but no keys are configured."""
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = None

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_api_key("some-key")

        assert exc_info.value.code == "api_keys_not_configured"
        assert "no valid keys are configured" in exc_info.value.message

    @patch("app.core.auth.settings")
    def test_validate_accepts_valid_key(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = "valid-key-1=alice,valid-key-2"

        assert validate_api_key("valid-key-1").user_id == "alice"
        assert validate_api_key("valid-key-2") is not None

    @patch("app.core.auth.settings")
    def test_validate_rejects_invalid_key(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = "valid-key-1,valid-key-2"

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_api_key("invalid-key")

        assert exc_info.value.code == "invalid_api_key"
        assert "Invalid or missing API key" in exc_info.value.message

    @patch("app.core.auth.settings")
    def test_validate_handles_whitespace_in_configured_keys(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = " key1 , key2 , key3 "

        validate_api_key("key1")
        validate_api_key("key2")

        with pytest.raises(AuthenticationAppError):
            validate_api_key(" key1 ")


class TestVerifyAPIKeyDependency:
    """Test FastAPI dependency for API key verification."""

    @pytest.mark.asyncio
    @patch("app.core.auth.settings")
    async def test_anonymous_when_auth_disabled(self, mock_settings) -> None:
        mock_settings.app.api_key_required = False

        assert await verify_api_key(x_api_key=None) is None

    @pytest.mark.asyncio
    @patch("app.core.auth.settings")
    async def test_verify_raises_403_when_header_missing(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = "valid-key"

        with pytest.raises(HTTPException) as exc_info:
            await verify_api_key(x_api_key=None)

        assert exc_info.value.status_code == 403
        assert "Missing API key" in exc_info.value.detail

    @pytest.mark.asyncio
    @patch("app.core.auth.settings")
    async def test_verify_raises_403_when_key_invalid(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = "valid-key"

        with pytest.raises(HTTPException) as exc_info:
            await verify_api_key(x_api_key="wrong-key")

        assert exc_info.value.status_code == 403
        assert "Invalid or missing API key" in exc_info.value.detail

    @pytest.mark.asyncio
    @patch("app.core.auth.settings")
    async def test_verify_returns_principal(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = "my-valid-key=alice:premium"

        principal = await verify_api_key(x_api_key="my-valid-key")

        assert principal.user_id == "alice"
        assert principal.roles == frozenset({"premium"})
