"""CLI entry point for melt."""

import asyncio
import sys

import click

from . import nix
from .changelog import load_changelog
from .cli_cache import cache
from .config import get_settings
from .errors import InputError, MeltError
from .flake import FlakeData, FlakeInput
from .forge import lock_url, resolve_repo_info
from .history import CommitHistory
from .log import setup_logging, warn
from .models import ChangelogResult, UpdateStatus
from .process import CancelToken
from .updates import UpdateChecker


def _fail(msg: str):
    click.echo(f'error: {msg}', err=True)
    sys.exit(1)


def _get_input(data: FlakeData, name: str) -> FlakeInput:
    flake_input = data.get_input(name)
    if flake_input is None:
        names = ', '.join(i.name for i in data.inputs) or 'none'
        raise InputError(f"input '{name}' not found in {data.path} (inputs: {names})")
    return flake_input


async def _check(flake: str, verbose: bool) -> tuple[FlakeData, dict[str, UpdateStatus]]:
    settings = get_settings()
    cancel = CancelToken()
    data = await nix.load_flake(flake, cancel, settings, verbose)
    history = CommitHistory(cancel, settings)
    try:
        checker = UpdateChecker(history, cancel, settings.batch_size)
        statuses = await checker.check_all(data.inputs) or {}
    finally:
        await history.aclose()
    return data, statuses


async def _changelog(flake: str, name: str, verbose: bool) -> tuple[FlakeInput, ChangelogResult]:
    settings = get_settings()
    cancel = CancelToken()
    data = await nix.load_flake(flake, cancel, settings, verbose)
    flake_input = _get_input(data, name)
    history = CommitHistory(cancel, settings)
    try:
        return flake_input, await load_changelog(history, flake_input)
    finally:
        await history.aclose()


@click.group(invoke_without_command=True)
@click.version_option()
@click.option('-v', '--verbose', is_flag=True, help='Show commands being run and log debug output')
@click.pass_context
def cli(ctx, verbose):
    """melt - inspect and update flake inputs.

    Without a command, opens the interactive view for the flake in the
    current directory.
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    setup_logging(verbose)
    if ctx.invoked_subcommand is None:
        ctx.invoke(ui)


# Register subcommand groups
cli.add_command(cache)


@cli.command()
@click.argument('flake', default='.')
@click.pass_context
def ui(ctx, flake):
    """Open the interactive view.

    \b
    Keys:
      j/k      move            space  select input
      u        update selected U      update all
      c        changelog       r      refresh
      q/esc    back or quit

    \b
    Examples:
      melt ui
      melt ui ~/nixos-config
    """
    from .tui import run_tui

    run_tui(flake, get_settings())


@cli.command()
@click.argument('flake', default='.')
@click.pass_context
def status(ctx, flake):
    """Show how far each input is behind its branch.

    \b
    Examples:
      melt status
      melt status ./path/to/flake
    """
    try:
        data, statuses = asyncio.run(_check(flake, ctx.obj['verbose']))
    except MeltError as e:
        _fail(str(e))

    if not data.inputs:
        click.echo('No inputs.')
        return

    width = max(len(i.name) for i in data.inputs)
    failed = updatable = 0
    for flake_input in data.inputs:
        st = statuses.get(flake_input.name)
        label = st.display() if st else '-'
        line = f'{flake_input.name:<{width}}  {flake_input.type:<9}  {flake_input.short_rev or "-":<7}  {label}'
        if st and st.error:
            failed += 1
            line += f'  ({st.error})'
        elif st and st.has_update:
            updatable += 1
        click.echo(line)

    if updatable:
        click.echo(f'\n{updatable} input(s) can be updated')
    if failed:
        warn(f'{failed} input(s) could not be checked')


@cli.command()
@click.argument('input_name', metavar='INPUT')
@click.option('--flake', default='.', help='Flake directory (default: current directory)')
@click.option('-n', '--limit', type=int, default=None, help='Show at most N commits')
@click.pass_context
def changelog(ctx, input_name, flake, limit):
    """List commits around an input's pinned revision.

    The pinned commit is marked with '*'.

    \b
    Examples:
      melt changelog nixpkgs
      melt changelog home-manager --flake ~/nixos-config -n 20
    """
    try:
        _, result = asyncio.run(_changelog(flake, input_name, ctx.obj['verbose']))
    except MeltError as e:
        _fail(str(e))

    if result.error:
        _fail(result.error)

    commits = result.commits[:limit] if limit else result.commits
    for commit in commits:
        mark = '*' if commit.is_pinned else ' '
        click.echo(f'{mark} {commit.short_sha}  {commit.date:<8}  {commit.author}: {commit.message}')
    if result.pinned_index < 0:
        warn('pinned revision not found in recent history')
    else:
        click.echo(
            f'\n{len(result.commits_ahead)} commit(s) ahead of the pinned revision, '
            f'{len(result.commits_older)} older'
        )


@cli.command()
@click.argument('input_name', metavar='INPUT')
@click.argument('rev')
@click.option('--flake', default='.', help='Flake directory (default: current directory)')
@click.option('--dry-run', is_flag=True, help='Print the override instead of running nix')
@click.pass_context
def lock(ctx, input_name, rev, flake, dry_run):
    """Pin an input to a specific revision.

    \b
    Examples:
      melt lock nixpkgs 0123abc
      melt lock nixpkgs 0123abc --dry-run
    """
    verbose = ctx.obj['verbose']

    async def run():
        settings = get_settings()
        cancel = CancelToken()
        data = await nix.load_flake(flake, cancel, settings, verbose)
        flake_input = _get_input(data, input_name)
        info = resolve_repo_info(flake_input)
        if info is None:
            raise InputError(f"cannot lock {flake_input.type} input '{input_name}' to a revision")
        override = lock_url(flake_input, info, rev)
        if dry_run:
            click.echo(override)
            return None
        return await nix.lock_input(data.path, input_name, override, cancel, settings, verbose)

    try:
        result = asyncio.run(run())
    except MeltError as e:
        _fail(str(e))

    if result is None:
        return
    if not result.ok:
        _fail(result.output)
    click.echo(f'Locked {input_name} to {rev[:7]}')


@cli.command()
@click.argument('names', nargs=-1)
@click.option('--flake', default='.', help='Flake directory (default: current directory)')
@click.pass_context
def update(ctx, names, flake):
    """Update inputs to their latest revisions (all inputs if none named).

    \b
    Examples:
      melt update
      melt update nixpkgs home-manager
    """
    verbose = ctx.obj['verbose']

    async def run():
        settings = get_settings()
        cancel = CancelToken()
        data = await nix.load_flake(flake, cancel, settings, verbose)
        for name in names:
            _get_input(data, name)
        if names:
            return await nix.update_inputs(data.path, list(names), cancel, settings, verbose)
        return await nix.update_all(data.path, cancel, settings, verbose)

    try:
        result = asyncio.run(run())
    except MeltError as e:
        _fail(str(e))

    if not result.ok:
        _fail(result.output)
    if result.output.strip():
        click.echo(result.output.rstrip(), err=True)


if __name__ == '__main__':
    cli()
