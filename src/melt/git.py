"""Local git history: the bare-clone cache and log traversal."""

import asyncio
import hashlib
import logging
import re
import shutil
import subprocess
from pathlib import Path

from .changelog import assemble
from .config import FALLBACK_LOG_COMMITS, MAX_AHEAD_COMMITS, OLDER_COMMITS, Settings, get_settings
from .errors import CommandError, InputError
from .flake import FlakeInput
from .forge import RepoInfo, clone_url, commit_url
from .models import ChangelogResult, Commit, format_commit_date, revision_matches
from .process import CancelToken, run_command

logger = logging.getLogger(__name__)

# One line per commit: sha|subject|author|author date (ISO 8601)
LOG_FORMAT = '--pretty=format:%H|%s|%an|%aI'


async def run_git(
    args: list[str],
    cancel: CancelToken,
    cwd: Path | None = None,
    timeout: float | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run a git command.

    Raises:
        CommandError: git exited nonzero (only when check is set)
        AbortedError: the token was cancelled
    """
    cmd = ['git', *args]
    result = await run_command(cmd, cancel, cwd=cwd, timeout=timeout)
    if check and result.returncode != 0:
        raise CommandError(cmd, result.returncode, result.stderr)
    return result


def parse_git_log(output: str, info: RepoInfo | None = None) -> list[Commit]:
    """Parse `git log` output written with LOG_FORMAT.

    The subject may itself contain '|', so the sha is taken from the front
    and author and date from the back.
    """
    commits = []
    for line in output.splitlines():
        if not line.strip() or '|' not in line:
            continue
        sha, rest = line.split('|', 1)
        fields = rest.rsplit('|', 2)
        if len(fields) != 3:
            continue
        subject, author, date = fields
        commits.append(
            Commit(
                sha=sha,
                message=subject,
                author=author,
                date=format_commit_date(date),
                url=commit_url(info, sha) if info else None,
            )
        )
    return commits


def _normalize_url(url: str) -> str:
    normalized = url.strip().rstrip('/')
    if normalized.endswith('.git'):
        normalized = normalized[:-4]
    return normalized


def cache_key(url: str) -> str:
    """Get the cache directory name for a remote URL.

    A readable prefix of the URL plus the first 16 hex digits of the
    SHA-256 of the normalized URL.
    """
    normalized = _normalize_url(url)
    digest = hashlib.sha256(normalized.encode()).hexdigest()[:16]
    safe = re.sub(r'[^a-zA-Z0-9]', '_', normalized)[:32]
    return f'{safe}_{digest}'


def _branch_name(ref: str) -> str:
    return ref[len('refs/heads/') :] if ref.startswith('refs/heads/') else ref


class BareCloneCache:
    """Bare, blob-filtered clones of remotes under <cache root>/git.

    Calls for the same remote are serialized with a per-key lock, so inputs
    sharing a repository never clone into the same directory at once.
    """

    def __init__(self, root: Path, cancel: CancelToken, timeout: float | None = None):
        self.root = root
        self.cancel = cancel
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def path_for(self, url: str) -> Path:
        return self.root / cache_key(url)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def ensure(self, url: str, ref: str | None = None) -> Path:
        """Make sure an up-to-date clone of url exists and return its path.

        An existing clone is refreshed with `git fetch --all --prune`; a
        missing or broken one is (re)cloned, fetching only ref when known.
        """
        path = self.path_for(url)
        async with self._lock_for(path.name):
            if (path / 'HEAD').is_file():
                logger.debug('fetching %s into %s', url, path)
                await run_git(['fetch', '--all', '--prune'], self.cancel, cwd=path, timeout=self.timeout)
                return path

            if path.exists():
                # Leftover from an interrupted clone
                shutil.rmtree(path)
            path.parent.mkdir(parents=True, exist_ok=True)

            cmd = ['clone', '--bare', '--filter=blob:none']
            if ref and ref != 'HEAD':
                cmd.extend(['--single-branch', '--branch', _branch_name(ref)])
            cmd.extend([url, str(path)])

            logger.info('cloning %s into %s', url, path)
            try:
                await run_git(cmd, self.cancel, timeout=self.timeout)
                # Bare clones have no fetch refspec, so later fetches would not move branches
                await run_git(
                    ['config', '--replace-all', 'remote.origin.fetch', '+refs/heads/*:refs/heads/*'],
                    self.cancel,
                    cwd=path,
                )
            except BaseException:
                shutil.rmtree(path, ignore_errors=True)
                raise
            return path

    def clear(self) -> int:
        """Delete every cached clone. Returns the number of clones removed."""
        if not self.root.is_dir():
            return 0
        count = sum(1 for p in self.root.iterdir() if p.is_dir())
        shutil.rmtree(self.root)
        logger.info('removed %d cached clones from %s', count, self.root)
        return count


class LocalHistory:
    """Commit history read from the bare-clone cache."""

    def __init__(self, cancel: CancelToken, settings: Settings | None = None, cache: BareCloneCache | None = None):
        self.cancel = cancel
        self.settings = settings or get_settings()
        self.cache = cache or BareCloneCache(self.settings.git_cache_dir, cancel, timeout=self.settings.git_timeout)

    async def _git(self, args: list[str], cwd: Path, check: bool = True) -> subprocess.CompletedProcess:
        return await run_git(args, self.cancel, cwd=cwd, timeout=self.settings.git_timeout, check=check)

    async def _ensure(self, flake_input: FlakeInput, info: RepoInfo) -> Path:
        if not flake_input.rev:
            raise InputError(f'{flake_input.name} has no locked revision')
        return await self.cache.ensure(clone_url(flake_input, info), flake_input.ref)

    async def _ahead(self, path: Path, flake_input: FlakeInput, info: RepoInfo) -> list[Commit]:
        ref = flake_input.ref or 'HEAD'
        rev = flake_input.rev
        result = await self._git(
            ['log', f'{rev}..{ref}', LOG_FORMAT, f'--max-count={MAX_AHEAD_COMMITS}'],
            cwd=path,
            check=False,
        )
        if result.returncode == 0:
            return parse_git_log(result.stdout, info)

        # Pin not reachable from ref (force-push, other branch): scan a flat log
        logger.info('%s: %s..%s failed, scanning recent history', flake_input.name, rev[:7], ref)
        result = await self._git(['log', ref, LOG_FORMAT, f'--max-count={FALLBACK_LOG_COMMITS}'], cwd=path)
        commits = parse_git_log(result.stdout, info)
        for i, commit in enumerate(commits):
            if revision_matches(commit.sha, rev):
                return commits[:i]
        return commits

    async def _older(self, path: Path, flake_input: FlakeInput, info: RepoInfo) -> list[Commit]:
        try:
            result = await self._git(
                ['log', flake_input.rev, LOG_FORMAT, f'--max-count={OLDER_COMMITS}'],
                cwd=path,
            )
        except CommandError as e:
            logger.info('%s: no history before pin: %s', flake_input.name, e)
            return []
        return parse_git_log(result.stdout, info)

    async def commits_since(self, flake_input: FlakeInput, info: RepoInfo) -> list[Commit]:
        """Commits on the input's ref that are newer than its pin, newest first."""
        path = await self._ensure(flake_input, info)
        return await self._ahead(path, flake_input, info)

    async def changelog(self, flake_input: FlakeInput, info: RepoInfo) -> ChangelogResult:
        path = await self._ensure(flake_input, info)
        ahead = await self._ahead(path, flake_input, info)
        older = await self._older(path, flake_input, info)
        return assemble(ahead, older, flake_input.rev)
