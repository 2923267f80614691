from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CSRFBlockSettings(BaseSettings):
    # Name of the hidden input carrying the token
    parameter_name: str = "SEC"
    # Request header checked before the form parameter
    header_name: str = "X-CSRF-Token"
    # Max 40: length of a SHA-1 hex digest
    token_length: int = Field(default=16, ge=1, le=40)
    session_key: str = "csrfblock.token"

    add_meta: bool = False
    meta_name: str = "csrftoken"

    onetime: bool = False

    model_config = SettingsConfigDict(
        env_prefix="CSRFBLOCK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )


settings = CSRFBlockSettings()
