from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendSettings(BaseSettings):
    """
    Backend Service configuration.
    Reads the bare PORT variable so the container runtime can assign it.
    """

    PORT: int = Field(3000, ge=1, le=65535)
    HOST: str = "0.0.0.0"


class RouterSettings(BaseSettings):
    """
    Edge Router configuration loaded from ROUTER_* environment variables.
    """

    HOST: str = "0.0.0.0"
    PORT: int = Field(80, ge=1, le=65535)
    STATIC_ROOT: Path = Path("frontend/build")
    INDEX_DOCUMENT: str = "index.html"
    UPSTREAM_URL: str = "http://backend:3000"

    CONNECT_TIMEOUT: float = 5.0
    READ_TIMEOUT: float = 60.0

    model_config = SettingsConfigDict(env_prefix="ROUTER_")


class PipelineSettings(BaseSettings):
    """
    Release Pipeline configuration.
    Registry credentials and branch names come from the CI_* variables the
    runner exports; everything else uses the SHIPYARD_ prefix.
    """

    DESCRIPTOR_FILE: Path = Path("docker-compose.yml")
    DEFAULT_BRANCH: str = Field("main", validation_alias=AliasChoices("CI_DEFAULT_BRANCH", "SHIPYARD_DEFAULT_BRANCH"))
    COMMIT_BRANCH: str | None = Field(None, validation_alias=AliasChoices("CI_COMMIT_BRANCH", "SHIPYARD_COMMIT_BRANCH"))

    REGISTRY: str | None = Field(None, validation_alias=AliasChoices("CI_REGISTRY", "SHIPYARD_REGISTRY"))
    REGISTRY_USER: str | None = Field(None, validation_alias=AliasChoices("CI_REGISTRY_USER", "SHIPYARD_REGISTRY_USER"))
    REGISTRY_PASSWORD: SecretStr | None = Field(
        None, validation_alias=AliasChoices("CI_REGISTRY_PASSWORD", "SHIPYARD_REGISTRY_PASSWORD")
    )

    REQUIRE_APPROVAL: bool = True
    MAX_PARALLEL_JOBS: int = Field(4, ge=1)
    PRUNE_IMAGES: bool = True
    DOCKER_BASE_URL: str | None = None  # Optional: deploy to a remote docker host

    model_config = SettingsConfigDict(env_prefix="SHIPYARD_", populate_by_name=True)

    @property
    def has_credentials(self) -> bool:
        return bool(self.REGISTRY_USER and self.REGISTRY_PASSWORD)


@lru_cache
def get_backend_settings() -> BackendSettings:
    return BackendSettings()


@lru_cache
def get_router_settings() -> RouterSettings:
    return RouterSettings()


@lru_cache
def get_pipeline_settings() -> PipelineSettings:
    """
    Creates a singleton instance of PipelineSettings.
    Uses lru_cache so the environment is read only once per process.
    """
    return PipelineSettings()
