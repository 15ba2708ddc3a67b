"""Runtime settings read from the environment."""

import os
from functools import lru_cache
from pathlib import Path
from typing import Mapping

from pydantic import AliasChoices, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Upper bound on commits listed ahead of a pin (local log traversal)
MAX_AHEAD_COMMITS = 500
# Flat log length used when the pin is not an ancestor of the ref
FALLBACK_LOG_COMMITS = 100
# The pinned commit plus 50 older ones
OLDER_COMMITS = 51
# Hosted API paging
API_PAGE_SIZE = 100
API_MAX_PAGES = 5

BATCH_SIZE_WITH_TOKEN = 10
BATCH_SIZE_WITHOUT_TOKEN = 2


def get_cache_root(environ: Mapping[str, str] | None = None) -> Path:
    """Get the melt cache directory ($XDG_CACHE_HOME/melt or ~/.cache/melt)."""
    environ = os.environ if environ is None else environ
    xdg_cache = environ.get('XDG_CACHE_HOME')
    if xdg_cache:
        return Path(xdg_cache) / 'melt'
    return Path.home() / '.cache' / 'melt'


def get_data_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Get the melt data directory ($XDG_DATA_HOME/melt or ~/.local/share/melt)."""
    environ = os.environ if environ is None else environ
    xdg_data = environ.get('XDG_DATA_HOME')
    if xdg_data:
        return Path(xdg_data) / 'melt'
    return Path.home() / '.local' / 'share' / 'melt'


class Settings(BaseSettings):
    """Tunables for the sync engine.

    Tokens only change throughput: with a GitHub token more inputs are
    checked concurrently and the hosted API allows more requests.

    Recognized variables:
        GITHUB_TOKEN / GH_TOKEN / GITHUB_PAT: GitHub API token
        GITLAB_TOKEN: GitLab API token
        GITEA_TOKEN / CODEBERG_TOKEN: Gitea-family API token
        MELT_CONCURRENCY: inputs checked concurrently per batch
        MELT_API_DELAY_MS: pause before each API request
        MELT_NO_API: always use local bare clones
        MELT_CACHE_DIR: overrides $XDG_CACHE_HOME/melt
        MELT_HTTP_TIMEOUT, MELT_GIT_TIMEOUT, MELT_NIX_TIMEOUT: seconds
    """

    model_config = SettingsConfigDict(
        env_prefix='MELT_',
        env_ignore_empty=True,
        extra='ignore',
        populate_by_name=True,
    )

    cache_dir: Path = Field(default_factory=get_cache_root)
    github_token: str | None = Field(
        default=None, validation_alias=AliasChoices('GITHUB_TOKEN', 'GH_TOKEN', 'GITHUB_PAT')
    )
    gitlab_token: str | None = Field(default=None, validation_alias='GITLAB_TOKEN')
    gitea_token: str | None = Field(default=None, validation_alias=AliasChoices('GITEA_TOKEN', 'CODEBERG_TOKEN'))
    # None until resolved against the GitHub token below
    batch_size: int | None = Field(default=None, validation_alias='MELT_CONCURRENCY')
    api_delay_ms: float = Field(default=0.0, validation_alias='MELT_API_DELAY_MS')
    no_api: bool = Field(default=False, validation_alias='MELT_NO_API')
    http_timeout: float = 30.0
    git_timeout: float = 120.0
    nix_timeout: float = 120.0

    @field_validator('github_token', 'gitlab_token', 'gitea_token', mode='before')
    @classmethod
    def _blank_token(cls, value):
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator('batch_size', 'api_delay_ms', 'http_timeout', 'git_timeout', 'nix_timeout', mode='before')
    @classmethod
    def _number_or_default(cls, value, info: ValidationInfo):
        # Garbage in the environment falls back to the default
        if isinstance(value, str):
            try:
                number = float(value.strip())
                return int(number) if info.field_name == 'batch_size' else number
            except (ValueError, OverflowError):
                return cls.model_fields[info.field_name].get_default(call_default_factory=True)
        return value

    @field_validator('no_api', mode='before')
    @classmethod
    def _flag(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        return value

    @field_validator('batch_size')
    @classmethod
    def _clamp_batch_size(cls, value: int | None) -> int | None:
        return None if value is None else max(1, value)

    @field_validator('api_delay_ms')
    @classmethod
    def _clamp_delay(cls, value: float) -> float:
        return max(0.0, value)

    @model_validator(mode='after')
    def _default_batch_size(self) -> 'Settings':
        if self.batch_size is None:
            self.batch_size = BATCH_SIZE_WITH_TOKEN if self.github_token else BATCH_SIZE_WITHOUT_TOKEN
        return self

    @property
    def api_delay(self) -> float:
        """Seconds slept before each API request."""
        return self.api_delay_ms / 1000

    @property
    def use_api(self) -> bool:
        return not self.no_api

    @property
    def git_cache_dir(self) -> Path:
        return self.cache_dir / 'git'


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process settings. Result is cached."""
    return Settings()
