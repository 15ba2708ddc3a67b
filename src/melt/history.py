"""Choose between hosted APIs and local clones for commit history."""

import logging

from .api import API_FORGES, ForgeApi
from .config import Settings, get_settings
from .errors import ApiError
from .flake import FlakeInput
from .forge import RepoInfo
from .git import LocalHistory
from .models import ChangelogResult, Commit
from .process import CancelToken

logger = logging.getLogger(__name__)


class CommitHistory:
    """Commit history of flake inputs, whichever way it is available.

    Forges with a commit API are queried over HTTP unless MELT_NO_API is
    set; SourceHut and generic remotes always go through a bare clone. A
    generic API failure (server error, garbled response) falls back to the
    clone. Rate limits, auth failures and missing repos are reported as is.
    """

    def __init__(
        self,
        cancel: CancelToken,
        settings: Settings | None = None,
        api: ForgeApi | None = None,
        local: LocalHistory | None = None,
    ):
        self.cancel = cancel
        self.settings = settings or get_settings()
        self.api = api or ForgeApi(cancel, self.settings)
        self.local = local or LocalHistory(cancel, self.settings)

    async def aclose(self) -> None:
        await self.api.aclose()

    def uses_api(self, info: RepoInfo) -> bool:
        return self.settings.use_api and info.forge in API_FORGES

    async def commits_since(self, flake_input: FlakeInput, info: RepoInfo) -> list[Commit]:
        if self.uses_api(info):
            try:
                return await self.api.commits_since(flake_input, info)
            except ApiError as e:
                logger.info('%s: API failed (%s), using local clone', flake_input.name, e)
        return await self.local.commits_since(flake_input, info)

    async def changelog(self, flake_input: FlakeInput, info: RepoInfo) -> ChangelogResult:
        if self.uses_api(info):
            try:
                return await self.api.changelog(flake_input, info)
            except ApiError as e:
                logger.info('%s: API failed (%s), using local clone', flake_input.name, e)
        return await self.local.changelog(flake_input, info)
