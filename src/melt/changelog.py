"""Changelog assembly around a pinned revision."""

import logging
from typing import TYPE_CHECKING

from .errors import MeltError
from .flake import FlakeInput
from .forge import resolve_repo_info
from .models import ChangelogResult, Commit, revision_matches

if TYPE_CHECKING:
    from .history import CommitHistory

logger = logging.getLogger(__name__)


def assemble(ahead: list[Commit], older: list[Commit], rev: str) -> ChangelogResult:
    """Merge commits ahead of a pin with the pin and its history.

    Args:
        ahead: Commits newer than the pin, newest first
        older: History starting at the pin, newest first
        rev: The pinned revision

    Returns a ChangelogResult whose pinned_index points at the pinned
    commit, or -1 when the older history does not start with it.
    """
    pinned_index = -1
    if older and revision_matches(older[0].sha, rev):
        older[0].is_pinned = True
        pinned_index = len(ahead)
    for commit in ahead:
        commit.is_pinned = False
    return ChangelogResult(commits=[*ahead, *older], pinned_index=pinned_index)


async def load_changelog(history: 'CommitHistory', flake_input: FlakeInput) -> ChangelogResult:
    """Build the changelog of an input without raising.

    Failures produce an empty result with the error message set.
    """
    info = resolve_repo_info(flake_input)
    if info is None:
        return ChangelogResult(error=f'Changelog not available for {flake_input.type} inputs')
    try:
        return await history.changelog(flake_input, info)
    except (MeltError, OSError) as e:
        logger.warning('changelog for %s failed: %s', flake_input.name, e)
        return ChangelogResult(error=str(e))
    except Exception as e:
        logger.exception('changelog for %s crashed', flake_input.name)
        return ChangelogResult(error=str(e) or e.__class__.__name__)
