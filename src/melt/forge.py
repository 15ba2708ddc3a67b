"""Forge detection and forge-specific URL construction.

Every remote flake input is mapped to a RepoInfo (forge, owner, repo, host).
Unknown hosts degrade to Forge.GENERIC, which is served from a local bare
clone instead of a hosted API.
"""

import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import unquote, urlsplit

from .flake import FORGE_SCHEMES, FlakeInput


class Forge(str, Enum):
    GITHUB = 'github'
    GITLAB = 'gitlab'
    SOURCEHUT = 'sourcehut'
    CODEBERG = 'codeberg'
    GITEA = 'gitea'
    GENERIC = 'generic'

    @property
    def default_host(self) -> str | None:
        return _DEFAULT_HOSTS.get(self)


_DEFAULT_HOSTS = {
    Forge.GITHUB: 'github.com',
    Forge.GITLAB: 'gitlab.com',
    Forge.SOURCEHUT: 'git.sr.ht',
    Forge.CODEBERG: 'codeberg.org',
    Forge.GITEA: 'gitea.com',
}

FORGE_HOSTS = {
    'github.com': Forge.GITHUB,
    'gitlab.com': Forge.GITLAB,
    'codeberg.org': Forge.CODEBERG,
    'git.sr.ht': Forge.SOURCEHUT,
    # Common self-hosted GitLab instances
    'gitlab.gnome.org': Forge.GITLAB,
    'gitlab.freedesktop.org': Forge.GITLAB,
    'gitlab.alpinelinux.org': Forge.GITLAB,
    'invent.kde.org': Forge.GITLAB,
    # Common Gitea/Forgejo instances
    'gitea.com': Forge.GITEA,
    'forgejo.org': Forge.GITEA,
    'notabug.org': Forge.GITEA,
}

# Substrings of a host name that identify a self-hosted forge
HOST_HINTS = [
    ('gitlab', Forge.GITLAB),
    ('gitea', Forge.GITEA),
    ('forgejo', Forge.GITEA),
    ('gogs', Forge.GITEA),  # Gogs speaks the Gitea API
]

# Input types backed by a git remote; everything else has no history to inspect
REMOTE_TYPES = ('github', 'gitlab', 'sourcehut', 'git')

# user@host:path
_SCP_RE = re.compile(r'^(?P<user>[^@/:]+)@(?P<host>[^:/]+):(?P<path>.+)$')


@dataclass(frozen=True)
class RepoInfo:
    """Canonical location of an input's repository."""

    forge: Forge
    owner: str
    repo: str
    host: str | None = None

    @property
    def web_host(self) -> str | None:
        return self.host or self.forge.default_host


def _strip_owner(owner: str) -> str:
    # SourceHut owners are written ~owner; providers add the tilde back
    return owner[1:] if owner.startswith('~') else owner


def _is_shorthand(url: str) -> bool:
    scheme, sep, rest = url.partition(':')
    return bool(sep) and scheme in FORGE_SCHEMES and not rest.startswith('//')


def parse_shorthand(url: str) -> dict:
    """Split a forge shorthand such as `gitlab:GNOME/glib/main?host=gitlab.gnome.org`.

    Returns a dict with owner and repo, plus ref, rev and host when the
    URL carries them. A path component after the repo is the ref.
    """
    url, _, query = url.partition('?')
    parts = [p for p in url.split(':', 1)[1].split('/') if p]
    result = {'owner': parts[0] if parts else '', 'repo': parts[1] if len(parts) > 1 else ''}
    if len(parts) > 2:
        result['ref'] = '/'.join(parts[2:])
    for part in query.split('&'):
        key, sep, value = part.partition('=')
        if sep and key in ('ref', 'rev', 'host'):
            result[key] = value
    return result


def parse_git_url(url: str) -> tuple[str, str] | None:
    """Split a git remote URL into (host, path).

    Handles:
        https://github.com/owner/repo(.git)
        git@github.com:owner/repo.git
        git+ssh://git@github.com/owner/repo
        ssh://git@host:2222/owner/repo.git
        git.example.org/owner/repo

    The host keeps an explicit port; the path has no leading slash,
    query string or .git suffix.
    """
    normalized = url.strip()
    if not normalized:
        return None
    if normalized.startswith('git+'):
        normalized = normalized[4:]
    normalized = normalized.split('?', 1)[0].split('#', 1)[0].rstrip('/')
    if normalized.endswith('.git'):
        normalized = normalized[:-4]

    scp = _SCP_RE.match(normalized)
    if scp and '://' not in normalized:
        return scp.group('host'), scp.group('path').lstrip('/')

    if '://' not in normalized:
        normalized = f'https://{normalized}'
    parts = urlsplit(normalized)
    host = parts.netloc.rsplit('@', 1)[-1]
    return host, parts.path.lstrip('/')


def extract_owner_repo(path: str) -> tuple[str, str]:
    """Split a repository path into (owner, repo).

    The repository is the last segment; everything before it is the owner,
    so GitLab subgroups stay intact. A leading ~ on the owner is stripped.
    """
    parts = [p for p in path.split('/') if p]
    if not parts:
        return '', ''
    return _strip_owner('/'.join(parts[:-1])), parts[-1]


def detect_forge(url: str) -> Forge:
    """Detect the forge of a flake URL or git remote URL."""
    if _is_shorthand(url):
        return Forge(url.split(':', 1)[0])

    parsed = parse_git_url(url)
    if parsed is None:
        return Forge.GENERIC
    host = parsed[0].split(':', 1)[0].lower()

    if host in FORGE_HOSTS:
        return FORGE_HOSTS[host]
    for hint, forge in HOST_HINTS:
        if hint in host:
            return forge
    return Forge.GENERIC


def resolve_repo_info(flake_input: FlakeInput) -> RepoInfo | None:
    """Determine which repository an input tracks.

    Returns None for inputs without a git remote (paths, tarballs, files),
    which are left out of update checks and changelogs.
    """
    if flake_input.type not in REMOTE_TYPES:
        return None

    url = flake_input.url or ''
    owner = flake_input.owner
    repo = flake_input.repo
    host = flake_input.host

    if url:
        forge = detect_forge(url)
    elif flake_input.type in FORGE_SCHEMES:
        forge = Forge(flake_input.type)
    else:
        return None

    if _is_shorthand(url):
        parsed = parse_shorthand(url)
        owner = owner or unquote(parsed['owner'])
        repo = repo or parsed['repo']
        host = host or parsed.get('host')
    elif url:
        url_host, path = parse_git_url(url)
        host = host or url_host or None
        if not (owner and repo):
            owner, repo = extract_owner_repo(path)

    if not (owner or repo):
        if not url:
            return None
        forge = Forge.GENERIC
    elif forge != Forge.GENERIC and not (owner and repo):
        forge = Forge.GENERIC

    return RepoInfo(forge=forge, owner=_strip_owner(owner or ''), repo=repo or '', host=host or forge.default_host)


def _strip_query(url: str) -> str:
    return url.split('?', 1)[0]


def normalize_git_url(url: str) -> str:
    """Convert a remote URL into a plain URL git and nix both accept.

    SCP syntax (git@host:owner/repo) becomes ssh://git@host/owner/repo and
    bare hosts get https://. The git+ prefix and any query are removed.
    """
    normalized = url.strip()
    if normalized.startswith('git+'):
        normalized = normalized[4:]
    normalized = _strip_query(normalized)

    scp = _SCP_RE.match(normalized)
    if scp and '://' not in normalized:
        path = scp.group('path')
        sep = '' if path.startswith('/') else '/'
        return f'ssh://{scp.group("user")}@{scp.group("host")}{sep}{path}'
    if '://' not in normalized:
        return f'https://{normalized}'
    return normalized


def clone_url(flake_input: FlakeInput, info: RepoInfo) -> str:
    """Get the URL to clone an input's repository from.

    Plain git inputs are cloned from their own URL so SSH remotes keep
    working; forge shorthands are cloned over HTTPS.
    """
    if flake_input.type == 'git' and flake_input.url:
        return normalize_git_url(flake_input.url)

    host = info.web_host
    if info.forge == Forge.SOURCEHUT:
        return f'https://{host}/~{info.owner}/{info.repo}'
    if info.forge == Forge.GENERIC:
        return normalize_git_url(flake_input.url)
    return f'https://{host}/{info.owner}/{info.repo}.git'


def commit_url(info: RepoInfo, sha: str) -> str | None:
    """Get the web page of a commit, or None for generic remotes."""
    host = info.web_host
    if info.forge == Forge.GITHUB:
        return f'https://{host}/{info.owner}/{info.repo}/commit/{sha}'
    elif info.forge == Forge.GITLAB:
        return f'https://{host}/{info.owner}/{info.repo}/-/commit/{sha}'
    elif info.forge == Forge.SOURCEHUT:
        return f'https://{host}/~{info.owner}/{info.repo}/commit/{sha}'
    elif info.forge in (Forge.CODEBERG, Forge.GITEA):
        return f'https://{host}/{info.owner}/{info.repo}/commit/{sha}'
    return None


def _git_url_with_rev(base: str, ref: str | None, rev: str) -> str:
    params = []
    if ref:
        params.append(f'ref={ref}')
    params.append(f'rev={rev}')
    return f'git+{base}?{"&".join(params)}'


def lock_url(flake_input: FlakeInput, info: RepoInfo, rev: str) -> str:
    """Build the flake reference that pins an input to a revision.

    Uses the short scheme where nix has one (github, sourcehut, gitlab.com)
    and a git+https URL with ?rev= otherwise.

    Examples:
        github -> github:NixOS/nixpkgs/<rev>
        gitlab.gnome.org -> git+https://gitlab.gnome.org/GNOME/glib?rev=<rev>
        generic git@host:a/b -> git+ssh://git@host/a/b?rev=<rev>
    """
    host = info.host
    owner, repo = info.owner, info.repo

    if info.forge == Forge.GITHUB:
        url = f'github:{owner}/{repo}/{rev}'
        if host and host != Forge.GITHUB.default_host:
            url += f'?host={host}'
        return url

    elif info.forge == Forge.GITLAB:
        if not host or host == Forge.GITLAB.default_host:
            # Subgroups must be escaped in the gitlab: scheme
            return f'gitlab:{owner.replace("/", "%2F")}/{repo}/{rev}'
        return _git_url_with_rev(f'https://{host}/{owner}/{repo}', flake_input.ref, rev)

    elif info.forge == Forge.SOURCEHUT:
        url = f'sourcehut:~{owner}/{repo}/{rev}'
        if host and host != Forge.SOURCEHUT.default_host:
            url += f'?host={host}'
        return url

    elif info.forge in (Forge.CODEBERG, Forge.GITEA):
        return _git_url_with_rev(f'https://{info.web_host}/{owner}/{repo}', flake_input.ref, rev)

    return _git_url_with_rev(normalize_git_url(flake_input.url), flake_input.ref, rev)
