"""
Tests for application settings.
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from delivery_service.core.config import DEFAULT_JWT_SECRET, Settings


class TestSettings:
    """Tests for Settings validation and derived properties."""

    def test_defaults(self):
        settings = Settings(environment="development")

        assert settings.otp_length == 6
        assert settings.delivery_base_fee == Decimal("30.00")
        assert settings.urgent_delivery_surcharge == Decimal("20.00")
        assert settings.placeholder_customer_name == "Customer"
        assert settings.placeholder_vendor_name == "Vendor Store"
        assert settings.is_development

    def test_test_environment_from_env(self):
        settings = Settings()

        assert settings.is_test
        assert settings.uses_sqlite

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("APP_OTP_LENGTH", "4")
        monkeypatch.setenv("APP_DELIVERY_BASE_FEE", "45.50")

        settings = Settings()

        assert settings.otp_length == 4
        assert settings.delivery_base_fee == Decimal("45.50")

    @pytest.mark.parametrize(
        "url",
        [
            "postgresql://u:p@localhost:5432/db",
            "postgresql+asyncpg://u:p@localhost:5432/db",
            "sqlite+aiosqlite:///./delivery.db",
        ],
    )
    def test_accepted_database_urls(self, url):
        assert Settings(database_url=url).database_url == url

    def test_rejects_unsupported_database_url(self):
        with pytest.raises(ValidationError, match="Database URL must start with"):
            Settings(database_url="mysql://u:p@localhost/db")

    def test_default_secret_rejected_in_production(self):
        with pytest.raises(ValidationError, match="Default JWT secret"):
            Settings(environment="production", jwt_secret=DEFAULT_JWT_SECRET)

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_cors_origins_from_comma_string(self):
        settings = Settings(cors_origins="https://a.example, https://b.example,")

        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    @pytest.mark.parametrize("length", [3, 11])
    def test_otp_length_bounds(self, length):
        with pytest.raises(ValidationError):
            Settings(otp_length=length)
