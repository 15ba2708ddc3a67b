"""Tests for the hosted forge API client."""

import httpx
import pytest

from melt.api import ForgeApi
from melt.config import API_PAGE_SIZE, OLDER_COMMITS, Settings
from melt.errors import AbortedError, ApiError, AuthError, InputError, NetworkError, NotFoundError, RateLimitError
from melt.forge import Forge, RepoInfo
from melt.process import CancelToken

from .conftest import make_input

GITHUB = RepoInfo(Forge.GITHUB, 'NixOS', 'nixpkgs', 'github.com')
PIN = 'deadbeef' * 5


def github_commit(sha, message='msg', author='Alice', date='2024-01-01T00:00:00Z'):
    return {
        'sha': sha,
        'html_url': f'https://github.com/NixOS/nixpkgs/commit/{sha}',
        'commit': {'message': message, 'author': {'name': author, 'date': date}},
    }


async def run_api(handler, call, settings=None, cancel=None):
    """Await call(api) against a mock transport and return its result."""
    settings = settings or Settings()
    cancel = cancel or CancelToken()
    async with ForgeApi(cancel, settings, transport=httpx.MockTransport(handler)) as api:
        return await call(api)


class TestCommitsSince:
    """Tests for ForgeApi.commits_since."""

    @pytest.mark.asyncio
    async def test_stops_at_pin(self):
        """Test that five commits above the pin give five results."""
        items = [github_commit(f'{i:040x}', f'commit {i}') for i in range(5)]
        items.append(github_commit(PIN))
        items.append(github_commit('f' * 40))

        def handler(request):
            return httpx.Response(200, json=items)

        flake_input = make_input(rev=PIN)
        commits = await run_api(handler, lambda api: api.commits_since(flake_input, GITHUB))
        assert len(commits) == 5
        assert commits[0].message == 'commit 0'
        assert commits[0].author == 'Alice'
        assert commits[0].url == f'https://github.com/NixOS/nixpkgs/commit/{"0" * 40}'

    @pytest.mark.asyncio
    async def test_abbreviated_pin(self):
        """Test that a short lock revision still stops the listing."""
        items = [github_commit('1' * 40), github_commit(PIN)]
        flake_input = make_input(rev=PIN[:12])
        commits = await run_api(
            lambda r: httpx.Response(200, json=items), lambda api: api.commits_since(flake_input, GITHUB)
        )
        assert len(commits) == 1

    @pytest.mark.asyncio
    async def test_github_request(self):
        """Test URL, params and headers sent to GitHub."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[github_commit(PIN)])

        settings = Settings(github_token='ghp_secret')
        flake_input = make_input(rev=PIN, ref='nixos-unstable')
        await run_api(handler, lambda api: api.commits_since(flake_input, GITHUB), settings=settings)

        request = seen[0]
        assert request.url.host == 'api.github.com'
        assert request.url.path == '/repos/NixOS/nixpkgs/commits'
        assert request.url.params['sha'] == 'nixos-unstable'
        assert request.url.params['per_page'] == str(API_PAGE_SIZE)
        assert request.headers['Authorization'] == 'Bearer ghp_secret'
        assert request.headers['User-Agent'].startswith('melt/')

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        await run_api(handler, lambda api: api.commits_since(make_input(), GITHUB))
        assert 'Authorization' not in seen[0].headers

    @pytest.mark.asyncio
    async def test_pages_until_pin(self):
        """Test that a full page is followed by the next one."""
        pages = {
            '1': [github_commit(f'{i:040x}') for i in range(API_PAGE_SIZE)],
            '2': [github_commit('a' * 40), github_commit(PIN)],
        }
        requested = []

        def handler(request):
            page = request.url.params['page']
            requested.append(page)
            return httpx.Response(200, json=pages[page])

        commits = await run_api(handler, lambda api: api.commits_since(make_input(rev=PIN), GITHUB))
        assert requested == ['1', '2']
        assert len(commits) == API_PAGE_SIZE + 1

    @pytest.mark.asyncio
    async def test_empty_page_stops(self):
        """Test that an empty page without the pin ends paging."""
        requested = []

        def handler(request):
            page = request.url.params['page']
            requested.append(page)
            return httpx.Response(200, json=[github_commit('1' * 40)] if page == '1' else [])

        commits = await run_api(handler, lambda api: api.commits_since(make_input(rev=PIN), GITHUB))
        assert requested == ['1', '2']
        assert len(commits) == 1

    @pytest.mark.asyncio
    async def test_capped_pages_keep_paging(self):
        """Test that a forge serving fewer items than asked still yields the exact count."""
        history = [github_commit(f'{i:040x}') for i in range(70)] + [github_commit(PIN)]
        requested = []

        def handler(request):
            # Gitea serves at most 50 items per page whatever limit is asked
            page = int(request.url.params['page'])
            requested.append(page)
            return httpx.Response(200, json=history[(page - 1) * 50 : page * 50])

        info = RepoInfo(Forge.CODEBERG, 'forgejo', 'forgejo', 'codeberg.org')
        flake_input = make_input('forgejo', type='git', rev=PIN, ref='forgejo')
        commits = await run_api(handler, lambda api: api.commits_since(flake_input, info))
        assert len(commits) == 70
        assert requested == [1, 2]

    @pytest.mark.asyncio
    async def test_page_limit(self):
        """Test that paging stops after the maximum number of pages."""
        requested = []

        def handler(request):
            requested.append(request.url.params['page'])
            return httpx.Response(200, json=[github_commit(f'{i:040x}') for i in range(API_PAGE_SIZE)])

        await run_api(handler, lambda api: api.commits_since(make_input(rev=PIN), GITHUB))
        assert requested == ['1', '2', '3', '4', '5']

    @pytest.mark.asyncio
    async def test_missing_rev(self):
        with pytest.raises(InputError):
            await run_api(
                lambda r: httpx.Response(200, json=[]), lambda api: api.commits_since(make_input(rev=''), GITHUB)
            )


class TestErrors:
    """Tests for HTTP status mapping."""

    async def _fetch(self, response):
        return await run_api(lambda request: response, lambda api: api.commits_since(make_input(rev=PIN), GITHUB))

    @pytest.mark.asyncio
    async def test_rate_limit_403(self):
        """Test that 403 with no remaining quota is a rate limit."""
        response = httpx.Response(403, headers={'X-RateLimit-Remaining': '0', 'X-RateLimit-Reset': '1700000000'})
        with pytest.raises(RateLimitError) as exc_info:
            await self._fetch(response)
        assert exc_info.value.reset_at == 1700000000
        assert 'GitHub API rate limit exceeded' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rate_limit_429(self):
        with pytest.raises(RateLimitError):
            await self._fetch(httpx.Response(429))

    @pytest.mark.asyncio
    async def test_forbidden_is_auth(self):
        """Test that 403 with quota left is an auth failure."""
        with pytest.raises(AuthError):
            await self._fetch(httpx.Response(403, headers={'X-RateLimit-Remaining': '10'}))

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        with pytest.raises(AuthError):
            await self._fetch(httpx.Response(401))

    @pytest.mark.asyncio
    async def test_not_found(self):
        with pytest.raises(NotFoundError) as exc_info:
            await self._fetch(httpx.Response(404))
        assert 'NixOS/nixpkgs' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_server_error(self):
        with pytest.raises(ApiError) as exc_info:
            await self._fetch(httpx.Response(500))
        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        with pytest.raises(ApiError):
            await self._fetch(httpx.Response(200, content=b'<html>'))

    @pytest.mark.asyncio
    async def test_not_a_list(self):
        with pytest.raises(ApiError):
            await self._fetch(httpx.Response(200, json={'message': 'nope'}))

    @pytest.mark.asyncio
    async def test_non_object_items(self):
        with pytest.raises(ApiError):
            await self._fetch(httpx.Response(200, json=['oops']))

    @pytest.mark.asyncio
    async def test_redirect_loop(self):
        """Test that non-transport httpx failures become API errors."""

        def handler(request):
            raise httpx.TooManyRedirects('Exceeded maximum allowed redirects.', request=request)

        with pytest.raises(ApiError):
            await run_api(handler, lambda api: api.commits_since(make_input(rev=PIN), GITHUB))

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        with pytest.raises(NetworkError):
            await run_api(handler, lambda api: api.commits_since(make_input(rev=PIN), GITHUB))

    @pytest.mark.asyncio
    async def test_cancelled(self):
        """Test that a cancelled token aborts before any request."""
        seen = []
        cancel = CancelToken()
        cancel.cancel()

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        with pytest.raises(AbortedError):
            await run_api(handler, lambda api: api.commits_since(make_input(rev=PIN), GITHUB), cancel=cancel)
        assert seen == []


class TestOtherForges:
    """Tests for GitLab and Gitea endpoints."""

    @pytest.mark.asyncio
    async def test_gitlab(self):
        """Test the GitLab endpoint, params, token and response shape."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json=[
                    {
                        'id': '1' * 40,
                        'title': 'Fix build',
                        'author_name': 'Bob',
                        'authored_date': '2024-01-01T00:00:00Z',
                        'web_url': 'https://gitlab.gnome.org/GNOME/glib/-/commit/111',
                    },
                    {'id': PIN, 'title': 'Pinned', 'author_name': 'Bob', 'authored_date': '2024-01-01T00:00:00Z'},
                ],
            )

        info = RepoInfo(Forge.GITLAB, 'GNOME', 'glib', 'gitlab.gnome.org')
        settings = Settings(gitlab_token='glpat')
        flake_input = make_input('glib', type='gitlab', rev=PIN, ref='main')
        commits = await run_api(handler, lambda api: api.commits_since(flake_input, info), settings=settings)

        request = seen[0]
        assert request.url.host == 'gitlab.gnome.org'
        assert request.url.raw_path.startswith(b'/api/v4/projects/GNOME%2Fglib/repository/commits')
        assert request.url.params['ref_name'] == 'main'
        assert request.headers['PRIVATE-TOKEN'] == 'glpat'
        assert [c.message for c in commits] == ['Fix build']
        assert commits[0].author == 'Bob'

    @pytest.mark.asyncio
    async def test_gitea(self):
        """Test the Gitea endpoint and its expensive fields turned off."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[github_commit(PIN)])

        info = RepoInfo(Forge.CODEBERG, 'forgejo', 'forgejo', 'codeberg.org')
        settings = Settings(gitea_token='tok')
        flake_input = make_input('forgejo', type='git', rev=PIN, ref='forgejo')
        await run_api(handler, lambda api: api.commits_since(flake_input, info), settings=settings)

        request = seen[0]
        assert request.url.host == 'codeberg.org'
        assert request.url.path == '/api/v1/repos/forgejo/forgejo/commits'
        assert request.url.params['sha'] == 'forgejo'
        assert request.url.params['limit'] == str(API_PAGE_SIZE)
        assert request.url.params['stat'] == 'false'
        assert request.url.params['files'] == 'false'
        assert request.headers['Authorization'] == 'token tok'

    @pytest.mark.asyncio
    async def test_github_enterprise(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        info = RepoInfo(Forge.GITHUB, 'a', 'b', 'github.example.com')
        await run_api(handler, lambda api: api.commits_since(make_input(rev=PIN), info))
        assert str(seen[0].url).startswith('https://github.example.com/api/v3/repos/a/b/commits')


class TestChangelog:
    """Tests for ForgeApi.changelog."""

    @pytest.mark.asyncio
    async def test_pinned_index(self):
        """Test that the pin sits after the commits ahead of it."""
        ahead = [github_commit('1' * 40), github_commit('2' * 40)]
        older = [github_commit(PIN, 'pinned'), github_commit('3' * 40)]

        def handler(request):
            if request.url.params['sha'] == PIN:
                assert request.url.params['per_page'] == str(OLDER_COMMITS)
                return httpx.Response(200, json=older)
            return httpx.Response(200, json=ahead + older)

        flake_input = make_input(rev=PIN, ref='main')
        result = await run_api(handler, lambda api: api.changelog(flake_input, GITHUB))
        assert result.pinned_index == 2
        assert result.commits[2].is_pinned
        assert result.commits[2].message == 'pinned'
        assert sum(c.is_pinned for c in result.commits) == 1
        assert len(result.commits) == 4

    @pytest.mark.asyncio
    async def test_older_not_found(self):
        """Test that a missing pin history leaves the pin unmarked."""

        def handler(request):
            if request.url.params['sha'] == PIN:
                return httpx.Response(404)
            page = request.url.params['page']
            return httpx.Response(200, json=[github_commit('1' * 40)] if page == '1' else [])

        result = await run_api(handler, lambda api: api.changelog(make_input(rev=PIN, ref='main'), GITHUB))
        assert result.pinned_index == -1
        assert len(result.commits) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_propagates(self):
        response = httpx.Response(429)
        with pytest.raises(RateLimitError):
            await run_api(lambda r: response, lambda api: api.changelog(make_input(rev=PIN), GITHUB))
