from functools import lru_cache
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Comma-separated in the environment; JSON decoding is skipped so _split_csv sees the raw string.
CsvList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    supabase_url: str = ""
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = ""
    database_url: str = ""
    environment: str = Field(default="development", validation_alias=AliasChoices("ENVIRONMENT", "APP_ENV"))

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False
    auto_create_schema: bool = False

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: CsvList = Field(
        default_factory=lambda: [
            "phone",
            "email",
            "address",
            "location",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    default_request_location: str = "Remote"
    default_deadline_days: int = Field(default=30, ge=1)
    provider_search_limit: int = Field(default=50, ge=1)
    enable_change_feed: bool = True

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    cors_allow_origins: CsvList = Field(default_factory=list)
    cors_allow_methods: CsvList = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PUT",
        "PATCH",
        "OPTIONS",
    ])
    cors_allow_headers: CsvList = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}

    def validate_required_config(self) -> list[str]:
        errors: list[str] = []
        if not self.database_url:
            errors.append("DATABASE_URL is not set")
        if not self.supabase_jwt_secret and not self.supabase_url:
            errors.append("SUPABASE_JWT_SECRET or SUPABASE_URL is required for token verification")
        return errors


@lru_cache
def get_settings() -> Settings:
    return Settings()
