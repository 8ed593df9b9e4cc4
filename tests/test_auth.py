"""Unit tests for admin key authentication."""

from unittest.mock import patch

import pytest

from app.core.auth import parse_api_keys, validate_admin_key, verify_admin_key
from app.core.errors import AuthenticationAppError


class TestParseAPIKeys:
    """Test key list parsing."""

    def test_parse_single_key(self) -> None:
        assert parse_api_keys("my-secret-key") == {"my-secret-key"}

    def test_parse_keys_with_whitespace(self) -> None:
        """Test that whitespace is trimmed from keys."""
        assert parse_api_keys("key1 , key2  ,  key3") == {"key1", "key2", "key3"}

    def test_parse_none_returns_empty_set(self) -> None:
        assert parse_api_keys(None) == set()

    def test_parse_whitespace_only_returns_empty_set(self) -> None:
        assert parse_api_keys("   ,  ,  ") == set()

    def test_parse_removes_duplicate_keys(self) -> None:
        assert parse_api_keys("key1,key2,key1") == {"key1", "key2"}


class TestValidateAdminKey:
    """Test core admin key validation logic."""

    @patch("app.core.auth.settings")
    def test_raises_when_no_keys_configured(self, mock_settings) -> None:
        """Admin endpoints are closed when no keys are configured."""
        mock_settings.app.admin_api_keys = None

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_admin_key("some-key")

        assert exc_info.value.code == "admin_keys_not_configured"
        assert exc_info.value.details["hint"]

    @patch("app.core.auth.settings")
    def test_accepts_valid_key(self, mock_settings) -> None:
        mock_settings.app.admin_api_keys = "valid-key-1,valid-key-2"

        # Should not raise
        validate_admin_key("valid-key-1")
        validate_admin_key("valid-key-2")

    @patch("app.core.auth.settings")
    def test_rejects_invalid_key(self, mock_settings) -> None:
        mock_settings.app.admin_api_keys = "valid-key-1,valid-key-2"

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_admin_key("invalid-key")

        assert exc_info.value.code == "invalid_admin_key"

    @patch("app.core.auth.settings")
    def test_rejects_missing_key(self, mock_settings) -> None:
        mock_settings.app.admin_api_keys = "valid-key"

        for provided in (None, ""):
            with pytest.raises(AuthenticationAppError) as exc_info:
                validate_admin_key(provided)
            assert exc_info.value.code == "missing_admin_key"

    @patch("app.core.auth.settings")
    def test_configured_keys_are_trimmed(self, mock_settings) -> None:
        mock_settings.app.admin_api_keys = " key1 , key2 "

        validate_admin_key("key1")

        # Provided keys are compared verbatim
        with pytest.raises(AuthenticationAppError):
            validate_admin_key(" key1 ")


class TestVerifyAdminKeyDependency:
    """Test the FastAPI dependency."""

    @pytest.mark.asyncio
    @patch("app.core.auth.settings")
    async def test_accepts_valid_key(self, mock_settings) -> None:
        mock_settings.app.admin_api_keys = "my-valid-key,another-key"

        await verify_admin_key(x_admin_key="my-valid-key")
        await verify_admin_key(x_admin_key="another-key")

    @pytest.mark.asyncio
    @patch("app.core.auth.settings")
    async def test_rejects_missing_header(self, mock_settings) -> None:
        mock_settings.app.admin_api_keys = "valid-key"

        with pytest.raises(AuthenticationAppError) as exc_info:
            await verify_admin_key(x_admin_key=None)

        assert exc_info.value.code == "missing_admin_key"

    @pytest.mark.asyncio
    async def test_uses_configured_test_keys(self) -> None:
        """The test environment configures two admin keys."""
        await verify_admin_key(x_admin_key="test-admin-key-456")
