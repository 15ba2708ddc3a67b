"""CLI commands for managing the bare-clone cache."""

import click

from .config import get_settings
from .git import BareCloneCache
from .process import CancelToken


@click.group()
def cache():
    """Manage the git clone cache.

    Inputs that are not on a forge with a commit API (and all inputs when
    MELT_NO_API is set) are inspected through bare clones stored under
    $XDG_CACHE_HOME/melt/git.
    """
    pass


@cache.command('path')
def path_cmd():
    """Print the cache directory."""
    click.echo(str(get_settings().git_cache_dir))


@cache.command()
def clear():
    """Delete all cached clones.

    \b
    Examples:
      melt cache clear
    """
    settings = get_settings()
    removed = BareCloneCache(settings.git_cache_dir, CancelToken()).clear()
    if removed:
        click.echo(f'Removed {removed} cached repositories from {settings.git_cache_dir}')
    else:
        click.echo('Cache is empty.')
