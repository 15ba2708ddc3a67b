"""Commit listing through hosted forge REST APIs (GitHub, GitLab, Gitea family)."""

import logging
from datetime import datetime
from urllib.parse import quote

import httpx

from . import __version__
from .changelog import assemble
from .config import API_MAX_PAGES, API_PAGE_SIZE, OLDER_COMMITS, Settings, get_settings
from .errors import ApiError, AuthError, InputError, NetworkError, NotFoundError, RateLimitError
from .flake import FlakeInput
from .forge import Forge, RepoInfo, commit_url
from .models import ChangelogResult, Commit, format_commit_date, revision_matches
from .process import CancelToken

logger = logging.getLogger(__name__)

USER_AGENT = f'melt/{__version__}'

API_FORGES = (Forge.GITHUB, Forge.GITLAB, Forge.CODEBERG, Forge.GITEA)

_FORGE_NAMES = {
    Forge.GITHUB: 'GitHub',
    Forge.GITLAB: 'GitLab',
    Forge.CODEBERG: 'Codeberg',
    Forge.GITEA: 'Gitea',
}


def _header(response: httpx.Response, *names: str) -> str | None:
    for name in names:
        value = response.headers.get(name)
        if value is not None:
            return value
    return None


class ForgeApi:
    """Async client for the commit-listing endpoints of hosted forges.

    Every request waits for the configured pacing delay and is aborted when
    the cancellation token fires.
    """

    def __init__(
        self,
        cancel: CancelToken,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.cancel = cancel
        self.settings = settings or get_settings()
        self.client = httpx.AsyncClient(
            timeout=self.settings.http_timeout,
            transport=transport,
            headers={'User-Agent': USER_AGENT},
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> 'ForgeApi':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _endpoint(self, info: RepoInfo) -> str:
        host = info.web_host
        if info.forge == Forge.GITHUB:
            base = 'https://api.github.com' if host == 'github.com' else f'https://{host}/api/v3'
            return f'{base}/repos/{info.owner}/{info.repo}/commits'
        elif info.forge == Forge.GITLAB:
            project = quote(f'{info.owner}/{info.repo}', safe='')
            return f'https://{host}/api/v4/projects/{project}/repository/commits'
        elif info.forge in (Forge.CODEBERG, Forge.GITEA):
            return f'https://{host}/api/v1/repos/{info.owner}/{info.repo}/commits'
        raise InputError(f'No commit API for {info.forge.value} remotes')

    def _params(self, info: RepoInfo, ref: str | None, page: int, per_page: int) -> dict:
        if info.forge == Forge.GITHUB:
            params = {'per_page': per_page, 'page': page}
            if ref:
                params['sha'] = ref
        elif info.forge == Forge.GITLAB:
            params = {'per_page': per_page, 'page': page}
            if ref:
                params['ref_name'] = ref
        else:
            # Skip the expensive per-commit extras Gitea computes by default
            params = {'limit': per_page, 'page': page, 'stat': 'false', 'verification': 'false', 'files': 'false'}
            if ref:
                params['sha'] = ref
        return params

    def _headers(self, info: RepoInfo) -> dict:
        headers = {'Accept': 'application/json'}
        if info.forge == Forge.GITHUB:
            headers['Accept'] = 'application/vnd.github+json'
            if self.settings.github_token:
                headers['Authorization'] = f'Bearer {self.settings.github_token}'
        elif info.forge == Forge.GITLAB:
            if self.settings.gitlab_token:
                headers['PRIVATE-TOKEN'] = self.settings.gitlab_token
        elif self.settings.gitea_token:
            headers['Authorization'] = f'token {self.settings.gitea_token}'
        return headers

    def _parse_commit(self, info: RepoInfo, item: dict) -> Commit:
        if info.forge == Forge.GITLAB:
            sha = item.get('id', '')
            message = item.get('title') or (item.get('message') or '').split('\n', 1)[0]
            author = item.get('author_name', '')
            date = item.get('authored_date') or item.get('created_at') or ''
            url = item.get('web_url') or commit_url(info, sha)
        else:
            # GitHub and Gitea share a response shape
            sha = item.get('sha', '')
            details = item.get('commit') or {}
            message = (details.get('message') or '').split('\n', 1)[0]
            author_info = details.get('author') or {}
            author = author_info.get('name', '')
            date = author_info.get('date') or item.get('created') or ''
            url = item.get('html_url') or commit_url(info, sha)
        return Commit(sha=sha, message=message, author=author, date=format_commit_date(date), url=url)

    def _raise_for_status(self, response: httpx.Response, info: RepoInfo) -> None:
        if response.is_success:
            return
        status = response.status_code
        name = _FORGE_NAMES.get(info.forge, info.forge.value)
        remaining = _header(response, 'x-ratelimit-remaining', 'ratelimit-remaining')

        if status == 429 or (status == 403 and remaining == '0'):
            reset = _header(response, 'x-ratelimit-reset', 'ratelimit-reset')
            reset_at = int(reset) if reset and reset.isdigit() else None
            message = f'{name} API rate limit exceeded'
            if reset_at:
                message += f' (resets at {datetime.fromtimestamp(reset_at).strftime("%H:%M")})'
            raise RateLimitError(message, reset_at=reset_at)
        if status in (401, 403):
            raise AuthError(f'{name} API authentication failed ({status})')
        if status == 404:
            raise NotFoundError(f'{info.owner}/{info.repo} not found on {info.web_host}')
        raise ApiError(f'{name} API error: {status} {response.reason_phrase}', status=status)

    async def _get_page(self, info: RepoInfo, ref: str | None, page: int, per_page: int) -> list[dict]:
        """Fetch one page of commits.

        Raises:
            RateLimitError, AuthError, NotFoundError, ApiError: the forge refused
            NetworkError: the request did not complete
            AbortedError: the token was cancelled
        """
        await self.cancel.sleep(self.settings.api_delay)
        url = self._endpoint(info)
        params = self._params(info, ref, page, per_page)
        logger.debug('GET %s %s', url, params)
        try:
            response = await self.cancel.guard(self.client.get(url, params=params, headers=self._headers(info)))
        except httpx.TransportError as e:
            raise NetworkError(f'Request to {info.web_host} failed: {str(e) or e.__class__.__name__}') from e
        except httpx.HTTPError as e:
            raise ApiError(f'Bad response from {info.web_host}: {str(e) or e.__class__.__name__}') from e

        self._raise_for_status(response, info)
        try:
            data = response.json()
        except ValueError as e:
            raise ApiError(f'Invalid JSON from {info.web_host}', status=response.status_code) from e
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            raise ApiError(f'Unexpected response from {info.web_host}', status=response.status_code)
        return data

    def _check_input(self, flake_input: FlakeInput, info: RepoInfo) -> None:
        if not info.owner or not info.repo:
            raise InputError(f'{flake_input.name}: owner and repo are required for API lookup')
        if not flake_input.rev:
            raise InputError(f'{flake_input.name} has no locked revision')

    async def commits_since(self, flake_input: FlakeInput, info: RepoInfo) -> list[Commit]:
        """Commits on the input's ref newer than its pin, newest first.

        Pages until the pinned revision shows up, a page comes back empty,
        or API_MAX_PAGES pages have been read. Forges may cap pages below
        API_PAGE_SIZE, so a short page is not the end of the history.
        """
        self._check_input(flake_input, info)
        commits = []
        for page in range(1, API_MAX_PAGES + 1):
            items = await self._get_page(info, flake_input.ref, page, API_PAGE_SIZE)
            for item in items:
                commit = self._parse_commit(info, item)
                if revision_matches(commit.sha, flake_input.rev):
                    return commits
                commits.append(commit)
            if not items:
                break
        logger.debug('%s: pin not found in %d commits', flake_input.name, len(commits))
        return commits

    async def older_commits(self, flake_input: FlakeInput, info: RepoInfo) -> list[Commit]:
        """The pinned commit followed by its ancestors."""
        self._check_input(flake_input, info)
        try:
            items = await self._get_page(info, flake_input.rev, 1, OLDER_COMMITS)
        except (NotFoundError, ApiError) as e:
            logger.info('%s: no history before pin: %s', flake_input.name, e)
            return []
        return [self._parse_commit(info, item) for item in items[:OLDER_COMMITS]]

    async def changelog(self, flake_input: FlakeInput, info: RepoInfo) -> ChangelogResult:
        ahead = await self.commits_since(flake_input, info)
        older = await self.older_commits(flake_input, info)
        return assemble(ahead, older, flake_input.rev)
