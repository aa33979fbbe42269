"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables
  - Fall back to a .env file
  - Validate the RFC, paths and tunables at startup
  - Keep the key passphrase out of logs (SecretStr)

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated via env_nested_delimiter="__", so CREDENTIAL__RFC maps to
credential.rfc and SERVICE__MAX_ATTEMPTS to service.max_attempts.

ServiceSettings is also the explicit configuration value handed to the
transport and the download client; its defaults are the SAT production
endpoints and the retry policy the service tolerates.
"""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

RFC_PATTERN = re.compile(r"^[A-Z&Ñ]{3,4}\d{6}[A-Z\d]{3}$")


def normalize_rfc(value: str) -> str:
    return value.strip().upper()


class CredentialSettings(BaseModel):
    """Where the e.firma lives and whose it is."""

    certificate_path: Path = Field(description="Path to the DER or PEM certificate (.cer)")
    key_path: Path = Field(description="Path to the private key (.key, DER or PEM)")
    passphrase: SecretStr = Field(default=SecretStr(""), description="Private key passphrase")
    rfc: str = Field(description="Requester RFC (12 or 13 characters)")

    @field_validator("rfc")
    @classmethod
    def validate_rfc(cls, value: str) -> str:
        """Reject anything that is not a well-formed RFC."""
        normalized = normalize_rfc(value)
        if not RFC_PATTERN.match(normalized):
            raise ValueError(f"Invalid RFC format: {value!r}")
        return normalized


class ServiceSettings(BaseModel):
    """
    SAT Descarga Masiva endpoints and client tunables.

    Defaults:
      timeout_seconds=60: hard per-attempt timeout
      max_attempts=3: total attempts per POST (not retries)
      retry_delay_seconds=3: fixed delay between attempts
      token_lifetime_seconds=240: tighter than the service's 5-minute window
      parse_workers=1: sequential parsing of package members
    """

    auth_url: str = Field(
        default="https://cfdidescargamasivasolicitud.clouda.sat.gob.mx/Autenticacion/Autenticacion.svc",
        description="Autenticacion endpoint",
    )
    request_url: str = Field(
        default="https://cfdidescargamasivasolicitud.clouda.sat.gob.mx/SolicitaDescargaService.svc",
        description="SolicitaDescarga endpoint",
    )
    verify_url: str = Field(
        default="https://cfdidescargamasivasolicitud.clouda.sat.gob.mx/VerificaSolicitudDescargaService.svc",
        description="VerificaSolicitudDescarga endpoint",
    )
    download_url: str = Field(
        default="https://cfdidescargamasiva.clouda.sat.gob.mx/DescargaMasivaService.svc",
        description="Descargar endpoint",
    )
    timeout_seconds: float = Field(default=60, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=3, ge=0)
    token_lifetime_seconds: int = Field(default=240, ge=1)
    token_safety_margin_seconds: int = Field(default=0, ge=0)
    parse_workers: int = Field(default=1, ge=1)


class AppSettings(BaseSettings):
    """
    Root application settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    credential: CredentialSettings
    service: ServiceSettings = Field(default_factory=lambda: ServiceSettings())

    log_level: str = Field(default="INFO")
