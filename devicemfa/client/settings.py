"""Client configuration settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Device-side settings; read from ``MFA_CLIENT_*`` variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="MFA_CLIENT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    server_url: str = Field(default="http://localhost:8000", description="Credential authority base URL")
    api_prefix: str = Field(default="/api/v1", description="Mount point of the REST API")
    timeout: float = Field(default=10.0, description="HTTP timeout in seconds")

    state_path: Path = Field(
        default=Path("~/.devicemfa/state.json"),
        description="Local enrollment state file"
    )
    key_dir: Optional[Path] = Field(
        default=Path("~/.devicemfa/keys"),
        description="Directory for software-held keys (None keeps keys in memory)"
    )

    # Hardware token
    pkcs11_library: Optional[str] = Field(default=None, description="PKCS#11 module path")
    pkcs11_pin: Optional[str] = Field(default=None, description="Token user PIN")
    pkcs11_slot: int = Field(default=0, description="Token slot index")

    # Console gate
    passcode_hash: Optional[str] = Field(
        default=None, description="PBKDF2 hash of the local passcode"
    )
    presence_consent: bool = Field(
        default=False, description="Offer presence confirmation as the strong factor"
    )

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Timeout must be positive."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @property
    def resolved_state_path(self) -> Path:
        return self.state_path.expanduser()
