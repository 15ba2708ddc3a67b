"""Nix command wrappers."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from .config import Settings, get_settings
from .errors import FlakeError, MeltError
from .flake import FlakeData, parse_metadata, resolve_flake_path
from .process import CancelToken, run_command

logger = logging.getLogger(__name__)

NIX = ['nix', '--extra-experimental-features', 'nix-command flakes']


@dataclass
class NixResult:
    """Outcome of a nix invocation that changes flake.lock."""

    ok: bool
    output: str


async def _run_nix(
    args: list[str],
    cancel: CancelToken,
    settings: Settings | None = None,
    verbose: bool = False,
) -> NixResult:
    """Run a nix subcommand, folding every failure into a NixResult."""
    settings = settings or get_settings()
    cmd = NIX + args
    try:
        result = await run_command(cmd, cancel, timeout=settings.nix_timeout, verbose=verbose)
    except MeltError as e:
        logger.warning('%s failed: %s', ' '.join(args[:2]), e)
        return NixResult(ok=False, output=str(e))

    if result.returncode != 0:
        output = result.stderr.strip() or f'Process exited with code {result.returncode}'
        logger.warning('%s failed: %s', ' '.join(args[:2]), output)
        return NixResult(ok=False, output=output)
    # nix reports lock changes on stderr
    return NixResult(ok=True, output=result.stdout or result.stderr)


async def load_flake(
    path: str | Path | None,
    cancel: CancelToken,
    settings: Settings | None = None,
    verbose: bool = False,
) -> FlakeData:
    """Load a flake's direct inputs from `nix flake metadata`.

    The lock file is never written: --no-update-lock-file makes nix fail
    instead of locking missing inputs.

    Raises:
        FlakeError: no flake.nix, nix failed, or the output is not JSON
        AbortedError: the token was cancelled
    """
    flake_dir = resolve_flake_path(path)
    cmd_args = ['flake', 'metadata', '--json', '--no-update-lock-file', str(flake_dir)]
    settings = settings or get_settings()

    result = await run_command(NIX + cmd_args, cancel, timeout=settings.nix_timeout, verbose=verbose)
    if result.returncode != 0:
        raise FlakeError(f'Failed to load flake metadata: {result.stderr.strip()}')
    try:
        metadata = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise FlakeError('Failed to parse metadata JSON') from e

    data = parse_metadata(flake_dir, metadata)
    logger.info('loaded %d inputs from %s', len(data.inputs), flake_dir)
    return data


async def update_inputs(
    flake_dir: Path,
    names: list[str],
    cancel: CancelToken,
    settings: Settings | None = None,
    verbose: bool = False,
) -> NixResult:
    """Update the named inputs to their latest revisions."""
    return await _run_nix(['flake', 'update', *names, '--flake', str(flake_dir)], cancel, settings, verbose)


async def update_all(
    flake_dir: Path,
    cancel: CancelToken,
    settings: Settings | None = None,
    verbose: bool = False,
) -> NixResult:
    """Update every input of the flake."""
    return await _run_nix(['flake', 'update', '--flake', str(flake_dir)], cancel, settings, verbose)


async def lock_input(
    flake_dir: Path,
    name: str,
    override: str,
    cancel: CancelToken,
    settings: Settings | None = None,
    verbose: bool = False,
) -> NixResult:
    """Pin one input to an explicit flake reference.

    Args:
        flake_dir: Directory containing flake.nix
        name: Input name
        override: Flake reference carrying the revision (see forge.lock_url)
        cancel: Cancellation token
        settings: Timeouts
        verbose: Print commands
    """
    args = ['flake', 'update', name, '--override-input', name, override, '--flake', str(flake_dir)]
    return await _run_nix(args, cancel, settings, verbose)
