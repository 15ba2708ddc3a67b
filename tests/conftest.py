"""Shared fixtures and utilities for melt tests."""

import os
import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from melt.config import get_settings
from melt.flake import FlakeInput


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the user's cache, logs and API tokens."""
    monkeypatch.setenv('XDG_CACHE_HOME', str(tmp_path / 'cache'))
    monkeypatch.setenv('XDG_DATA_HOME', str(tmp_path / 'data'))
    for var in (
        'GITHUB_TOKEN',
        'GH_TOKEN',
        'GITHUB_PAT',
        'GITLAB_TOKEN',
        'GITEA_TOKEN',
        'CODEBERG_TOKEN',
        'MELT_CONCURRENCY',
        'MELT_API_DELAY_MS',
        'MELT_NO_API',
        'MELT_CACHE_DIR',
        'MELT_HTTP_TIMEOUT',
        'MELT_GIT_TIMEOUT',
        'MELT_NIX_TIMEOUT',
        'MELT_LOG',
    ):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def temp_flake_dir():
    """Create a temporary directory with an empty flake.nix."""
    d = tempfile.mkdtemp(prefix='melt_test_')
    (Path(d) / 'flake.nix').write_text('{ outputs = _: { }; }\n')
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


def git_available() -> bool:
    """Check if git is on PATH."""
    return shutil.which('git') is not None


@pytest.fixture
def require_git():
    """Skip test if git is not available."""
    if not git_available():
        pytest.skip('git not available')


def git_env(home: Path) -> dict:
    env = os.environ.copy()
    env.update(
        {
            'HOME': str(home),
            'GIT_CONFIG_NOSYSTEM': '1',
            'GIT_AUTHOR_NAME': 'Test Author',
            'GIT_AUTHOR_EMAIL': 'test@example.com',
            'GIT_COMMITTER_NAME': 'Test Author',
            'GIT_COMMITTER_EMAIL': 'test@example.com',
        }
    )
    return env


class GitRepo:
    """A throwaway upstream repository to clone from."""

    def __init__(self, path: Path, home: Path):
        self.path = path
        self.env = git_env(home)
        self.git('init', '-q', '-b', 'main')
        self.git('config', 'uploadpack.allowFilter', 'true')

    def git(self, *args: str) -> str:
        result = subprocess.run(
            ['git', *args], cwd=self.path, env=self.env, capture_output=True, text=True, check=True
        )
        return result.stdout.strip()

    def commit(self, message: str) -> str:
        """Create an empty commit and return its sha."""
        self.git('commit', '-q', '--allow-empty', '-m', message)
        return self.git('rev-parse', 'HEAD')

    @property
    def url(self) -> str:
        return self.path.as_uri()


@pytest.fixture
def git_repo(require_git, tmp_path, monkeypatch):
    """An upstream repository with git configured for the test process too."""
    home = tmp_path / 'home'
    home.mkdir()
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.setenv('GIT_CONFIG_NOSYSTEM', '1')
    path = tmp_path / 'upstream'
    path.mkdir()
    return GitRepo(path, home)


def make_input(name: str = 'nixpkgs', **kwargs) -> FlakeInput:
    """Build a FlakeInput with GitHub defaults."""
    defaults = {
        'type': 'github',
        'owner': 'NixOS',
        'repo': 'nixpkgs',
        'url': 'github:NixOS/nixpkgs',
        'rev': 'abc123abc123abc123abc123abc123abc123abc1',
        'last_modified': 1700000000,
    }
    defaults.update(kwargs)
    return FlakeInput(name=name, **defaults)


# `nix flake metadata --json` output for a flake with one input of each kind
SAMPLE_METADATA = {
    'description': 'Sample flake',
    'path': '/nix/store/abc-source',
    'locks': {
        'root': 'root',
        'version': 7,
        'nodes': {
            'root': {
                'inputs': {
                    'nixpkgs': 'nixpkgs',
                    'home-manager': 'home-manager',
                    'glib': 'glib',
                    'hare': 'hare',
                    'local': 'local',
                    'extra': 'extra',
                    'pkgs-stable': ['nixpkgs'],
                    'hm-nixpkgs': ['home-manager', 'nixpkgs'],
                    'dangling': ['missing'],
                }
            },
            'nixpkgs': {
                'locked': {
                    'type': 'github',
                    'owner': 'NixOS',
                    'repo': 'nixpkgs',
                    'rev': 'abc123abc123abc123abc123abc123abc123abc1',
                    'lastModified': 1700000000,
                },
                'original': {'type': 'github', 'owner': 'NixOS', 'repo': 'nixpkgs', 'ref': 'nixos-unstable'},
            },
            'home-manager': {
                'inputs': {'nixpkgs': ['nixpkgs']},
                'locked': {
                    'type': 'github',
                    'owner': 'nix-community',
                    'repo': 'home-manager',
                    'rev': 'def456def456def456def456def456def456def4',
                    'lastModified': 1700001000,
                },
                'original': {'type': 'github', 'owner': 'nix-community', 'repo': 'home-manager'},
            },
            'glib': {
                'locked': {
                    'type': 'gitlab',
                    'owner': 'GNOME',
                    'repo': 'glib',
                    'host': 'gitlab.gnome.org',
                    'rev': '1111111111111111111111111111111111111111',
                    'lastModified': 1700002000,
                },
                'original': {'type': 'gitlab', 'owner': 'GNOME', 'repo': 'glib', 'host': 'gitlab.gnome.org'},
            },
            'hare': {
                'locked': {
                    'type': 'sourcehut',
                    'owner': '~sircmpwn',
                    'repo': 'hare',
                    'rev': '2222222222222222222222222222222222222222',
                    'lastModified': 1700003000,
                },
                'original': {'type': 'sourcehut', 'owner': '~sircmpwn', 'repo': 'hare'},
            },
            'local': {
                'locked': {'type': 'path', 'path': '/home/user/local', 'lastModified': 1700004000},
                'original': {'type': 'path', 'path': '/home/user/local'},
            },
            'extra': {
                'locked': {
                    'type': 'git',
                    'url': 'https://codeberg.org/forgejo/forgejo.git',
                    'rev': '3333333333333333333333333333333333333333',
                    'lastModified': 1700005000,
                },
                'original': {'type': 'git', 'url': 'https://codeberg.org/forgejo/forgejo.git', 'ref': 'forgejo'},
            },
        },
    },
}
