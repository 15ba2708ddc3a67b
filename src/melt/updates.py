"""Concurrent update checks across flake inputs."""

import asyncio
import logging
from collections.abc import Callable

from .errors import AbortedError, MeltError
from .flake import FlakeInput
from .forge import RepoInfo, resolve_repo_info
from .history import CommitHistory
from .models import UpdateStatus
from .process import CancelToken

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str, UpdateStatus], None]


class UpdateChecker:
    """Computes how many commits each input is behind its ref.

    Inputs are checked in batches of batch_size: all checks of a batch run
    concurrently and a batch finishes before the next one starts. Only one
    sweep runs at a time per checker.
    """

    def __init__(self, history: CommitHistory, cancel: CancelToken, batch_size: int):
        if batch_size < 1:
            raise ValueError('batch_size must be at least 1')
        self.history = history
        self.cancel = cancel
        self.batch_size = batch_size
        self._checking = False

    @property
    def checking(self) -> bool:
        return self._checking

    async def _check_one(self, flake_input: FlakeInput, info: RepoInfo) -> UpdateStatus:
        try:
            commits = await self.history.commits_since(flake_input, info)
        except (MeltError, OSError) as e:
            if not isinstance(e, AbortedError):
                logger.warning('update check for %s failed: %s', flake_input.name, e)
            return UpdateStatus.failed(e)
        except Exception as e:
            logger.exception('update check for %s crashed', flake_input.name)
            return UpdateStatus.failed(e)
        return UpdateStatus.behind(len(commits))

    async def check_all(
        self,
        inputs: list[FlakeInput],
        on_status: StatusCallback | None = None,
    ) -> dict[str, UpdateStatus] | None:
        """Check every input with a resolvable repository.

        Args:
            inputs: Inputs of the flake
            on_status: Called with (name, status) as each input starts and finishes

        Returns a map of input name to final status, or None if the sweep was
        skipped because another one is running or the token is cancelled.
        """
        if self._checking:
            logger.debug('update check already running, skipping')
            return None
        if self.cancel.cancelled:
            return None

        self._checking = True
        try:
            checkable = []
            results = {}
            for flake_input in inputs:
                info = resolve_repo_info(flake_input)
                if info is None:
                    continue
                checkable.append((flake_input, info))
                results[flake_input.name] = UpdateStatus.checking()
                if on_status:
                    on_status(flake_input.name, results[flake_input.name])

            async def run(flake_input: FlakeInput, info: RepoInfo) -> None:
                status = await self._check_one(flake_input, info)
                results[flake_input.name] = status
                if on_status:
                    on_status(flake_input.name, status)

            for start in range(0, len(checkable), self.batch_size):
                batch = checkable[start : start + self.batch_size]
                await asyncio.gather(*(run(flake_input, info) for flake_input, info in batch))

            logger.info('checked %d inputs', len(checkable))
            return results
        finally:
            self._checking = False
