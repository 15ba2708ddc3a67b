"""Commit, changelog and update-status records shared across melt."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from .errors import ErrorKind, error_kind

_LONG_UNITS = [
    (365 * 24 * 60 * 60, 'year', 'years'),
    (30 * 24 * 60 * 60, 'month', 'months'),
    (7 * 24 * 60 * 60, 'week', 'weeks'),
    (24 * 60 * 60, 'day', 'days'),
    (60 * 60, 'hour', 'hours'),
    (60, 'min', 'mins'),
]

_SHORT_UNITS = [
    (7 * 24 * 60 * 60, 'w'),
    (24 * 60 * 60, 'd'),
    (60 * 60, 'h'),
    (60, 'm'),
]

_MONTH = 30 * 24 * 60 * 60


def _now() -> datetime:
    return datetime.now(timezone.utc)


def format_relative(timestamp: int, now: datetime | None = None) -> str:
    """Format a unix timestamp as relative time (e.g. "3 days ago")."""
    if not timestamp:
        return 'unknown'
    now = now or _now()
    secs = int((now - datetime.fromtimestamp(timestamp, timezone.utc)).total_seconds())
    for unit_secs, singular, plural in _LONG_UNITS:
        if secs >= unit_secs:
            count = secs // unit_secs
            return f'{count} {singular if count == 1 else plural} ago'
    return 'just now'


def format_commit_date(iso_date: str, now: datetime | None = None) -> str:
    """Format an ISO 8601 date as short relative time.

    Examples:
        5 minutes ago -> "5m ago"
        3 days ago -> "3d ago"
        older than a month -> "Jan 05"
    """
    try:
        dt = datetime.fromisoformat(iso_date.replace('Z', '+00:00'))
    except ValueError:
        return iso_date
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    now = now or _now()
    secs = int((now - dt).total_seconds())
    if secs < 60:
        return 'now'
    if secs >= _MONTH:
        return dt.strftime('%b %d')
    for unit_secs, suffix in _SHORT_UNITS:
        if secs >= unit_secs:
            return f'{secs // unit_secs}{suffix} ago'
    return 'now'


def revision_matches(sha: str, rev: str | None) -> bool:
    """Check whether a commit SHA and a (possibly abbreviated) revision agree.

    Either side may be a prefix of the other. An empty revision never matches.
    """
    if not sha or not rev:
        return False
    return sha == rev or sha.startswith(rev) or rev.startswith(sha)


@dataclass
class Commit:
    """A commit as shown in the changelog."""

    sha: str
    message: str  # first line only
    author: str
    date: str  # formatted for display
    url: str | None = None
    is_pinned: bool = False

    @property
    def short_sha(self) -> str:
        return self.sha[:7]


@dataclass
class ChangelogResult:
    """Commits around a pinned revision.

    Commits ahead of the pin come first (newest first), then the pinned
    commit at pinned_index, then older commits. pinned_index is -1 when
    the pin was not found in the traversed history.
    """

    commits: list[Commit] = field(default_factory=list)
    pinned_index: int = -1
    error: str | None = None

    @property
    def commits_ahead(self) -> list[Commit]:
        if self.pinned_index < 0:
            return list(self.commits)
        return self.commits[: self.pinned_index]

    @property
    def commits_older(self) -> list[Commit]:
        if self.pinned_index < 0:
            return []
        return self.commits[self.pinned_index + 1 :]


@dataclass
class UpdateStatus:
    """Update state of one input during a check sweep."""

    commits_behind: int = 0
    loading: bool = False
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def checking(cls) -> 'UpdateStatus':
        return cls(loading=True)

    @classmethod
    def behind(cls, count: int) -> 'UpdateStatus':
        return cls(commits_behind=count)

    @classmethod
    def failed(cls, exc: BaseException) -> 'UpdateStatus':
        return cls(error=str(exc) or exc.__class__.__name__, error_kind=error_kind(exc))

    @property
    def has_update(self) -> bool:
        return not self.loading and self.error is None and self.commits_behind > 0

    def display(self) -> str:
        """Short text for the status column."""
        if self.loading:
            return '...'
        if self.error is not None:
            return '?'
        if self.commits_behind == 0:
            return 'ok'
        return f'+{self.commits_behind}'
