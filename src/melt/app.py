"""Application state machine: views, key handling and background work.

handle_key() applies navigation to the state and returns the action to
run, if any. App executes actions as asyncio tasks and folds their results
back into the state, notifying the renderer through on_change.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from . import nix
from .changelog import load_changelog
from .config import Settings, get_settings
from .errors import AbortedError, ErrorKind, MeltError
from .flake import FlakeData, FlakeInput
from .forge import RepoInfo, lock_url, resolve_repo_info
from .history import CommitHistory
from .models import ChangelogResult, Commit, UpdateStatus
from .process import CancelToken
from .updates import UpdateChecker

logger = logging.getLogger(__name__)


class View(Enum):
    LOADING = 'loading'
    ERROR = 'error'
    LIST = 'list'
    LOADING_CHANGELOG = 'loading-changelog'
    CHANGELOG = 'changelog'
    QUITTING = 'quitting'


class Level(Enum):
    INFO = 'info'
    SUCCESS = 'success'
    WARNING = 'warning'
    ERROR = 'error'


# Seconds a status message stays visible; info messages stay until replaced
MESSAGE_DURATIONS = {
    Level.INFO: None,
    Level.SUCCESS: 3.0,
    Level.WARNING: 4.0,
    Level.ERROR: 5.0,
}


@dataclass
class StatusMessage:
    text: str
    level: Level
    created: float = field(default_factory=time.monotonic)

    def expired(self, now: float | None = None) -> bool:
        duration = MESSAGE_DURATIONS[self.level]
        if duration is None:
            return False
        return (now if now is not None else time.monotonic()) - self.created >= duration


@dataclass
class ListState:
    """The input list: cursor, selection and per-input update status."""

    flake: FlakeData
    cursor: int = 0
    selected: set[str] = field(default_factory=set)
    statuses: dict[str, UpdateStatus] = field(default_factory=dict)
    busy: bool = False

    @property
    def current(self) -> FlakeInput | None:
        if 0 <= self.cursor < len(self.flake.inputs):
            return self.flake.inputs[self.cursor]
        return None

    def move(self, delta: int) -> None:
        if self.flake.inputs:
            self.cursor = max(0, min(len(self.flake.inputs) - 1, self.cursor + delta))

    def toggle(self) -> None:
        current = self.current
        if current is None:
            return
        if current.name in self.selected:
            self.selected.discard(current.name)
        else:
            self.selected.add(current.name)

    def selected_names(self) -> list[str]:
        """Selected inputs in display order."""
        return [i.name for i in self.flake.inputs if i.name in self.selected]

    def update_flake(self, flake: FlakeData) -> None:
        """Replace the flake after a reload, keeping what still applies."""
        self.flake = flake
        names = {i.name for i in flake.inputs}
        self.selected &= names
        self.statuses.clear()
        self.cursor = min(self.cursor, max(0, len(flake.inputs) - 1))


@dataclass
class ChangelogState:
    """The changelog of one input, with the lock confirmation overlay."""

    flake_input: FlakeInput
    info: RepoInfo
    result: ChangelogResult
    cursor: int = 0
    confirm: int | None = None  # index of the commit awaiting confirmation

    @classmethod
    def open(cls, flake_input: FlakeInput, info: RepoInfo, result: ChangelogResult) -> 'ChangelogState':
        cursor = result.pinned_index if result.pinned_index >= 0 else 0
        return cls(flake_input=flake_input, info=info, result=result, cursor=cursor)

    @property
    def current(self) -> Commit | None:
        if 0 <= self.cursor < len(self.result.commits):
            return self.result.commits[self.cursor]
        return None

    def move(self, delta: int) -> None:
        if self.result.commits:
            self.cursor = max(0, min(len(self.result.commits) - 1, self.cursor + delta))

    @property
    def confirm_commit(self) -> Commit | None:
        if self.confirm is not None and 0 <= self.confirm < len(self.result.commits):
            return self.result.commits[self.confirm]
        return None


@dataclass
class AppState:
    view: View = View.LOADING
    list: ListState | None = None
    changelog: ChangelogState | None = None
    loading_input: FlakeInput | None = None  # input whose changelog is loading
    error: str | None = None


# Actions returned by handle_key


@dataclass
class Quit:
    pass


@dataclass
class CancelAndQuit:
    pass


@dataclass
class UpdateSelected:
    names: list[str]


@dataclass
class UpdateAll:
    pass


@dataclass
class Refresh:
    pass


@dataclass
class OpenChangelog:
    name: str


@dataclass
class CloseChangelog:
    pass


@dataclass
class ConfirmLock:
    name: str
    rev: str
    lock_url: str


@dataclass
class ShowWarning:
    text: str


Action = Quit | CancelAndQuit | UpdateSelected | UpdateAll | Refresh | OpenChangelog | CloseChangelog | ConfirmLock | ShowWarning

QUIT_KEYS = ('q', 'escape')
DOWN_KEYS = ('j', 'down')
UP_KEYS = ('k', 'up')


def handle_key(state: AppState, key: str) -> Action | None:
    """Apply a key press to the state.

    Keys are textual key names ('up', 'escape', 'ctrl+c', 'space', 'enter')
    or the typed character ('j', 'U').

    Returns the action to execute, or None when the key only moved the
    cursor or does nothing in the current view.
    """
    if key == 'ctrl+c':
        return CancelAndQuit()

    if state.view == View.LOADING:
        return CancelAndQuit() if key in QUIT_KEYS else None
    if state.view == View.LOADING_CHANGELOG:
        # Leave the pending changelog behind; its result is dropped on arrival
        return CloseChangelog() if key in QUIT_KEYS else None
    if state.view == View.ERROR:
        if key == 'r':
            return Refresh()
        return Quit() if key in QUIT_KEYS else None
    if state.view == View.LIST and state.list is not None:
        return _handle_list_key(state.list, key)
    if state.view == View.CHANGELOG and state.changelog is not None:
        if state.changelog.confirm is not None:
            if key == 'y' and state.list is not None and state.list.busy:
                return ShowWarning('Operation in progress')
            return _handle_confirm_key(state.changelog, key)
        return _handle_changelog_key(state.changelog, key)
    return None


def _handle_list_key(lst: ListState, key: str) -> Action | None:
    if key in QUIT_KEYS:
        if lst.selected:
            lst.selected.clear()
            return None
        return Quit()
    if not lst.flake.inputs:
        return Refresh() if key == 'r' and not lst.busy else None

    if key in DOWN_KEYS:
        lst.move(1)
    elif key in UP_KEYS:
        lst.move(-1)
    elif key == 'space':
        if not lst.busy:
            lst.toggle()
    elif key in ('u', 'U', 'r', 'c', 'enter') and lst.busy:
        return ShowWarning('Operation in progress')
    elif key == 'u':
        names = lst.selected_names()
        if not names:
            return ShowWarning('No inputs selected')
        lst.busy = True
        return UpdateSelected(names)
    elif key == 'U':
        lst.busy = True
        return UpdateAll()
    elif key == 'r':
        lst.busy = True
        return Refresh()
    elif key in ('c', 'enter'):
        current = lst.current
        if current is None:
            return None
        if resolve_repo_info(current) is None:
            return ShowWarning(f'Changelog not available for {current.type} inputs')
        return OpenChangelog(current.name)
    return None


def _handle_changelog_key(cs: ChangelogState, key: str) -> Action | None:
    if key in QUIT_KEYS:
        return CloseChangelog()
    if key in DOWN_KEYS:
        cs.move(1)
    elif key in UP_KEYS:
        cs.move(-1)
    elif key in ('space', 'enter'):
        commit = cs.current
        if commit is None:
            return None
        if commit.is_pinned:
            return ShowWarning('Already locked to this commit')
        cs.confirm = cs.cursor
    return None


def _handle_confirm_key(cs: ChangelogState, key: str) -> Action | None:
    if key == 'y':
        commit = cs.confirm_commit
        if commit is None:
            cs.confirm = None
            return None
        return ConfirmLock(
            name=cs.flake_input.name,
            rev=commit.sha,
            lock_url=lock_url(cs.flake_input, cs.info, commit.sha),
        )
    if key in ('n', 'q', 'escape'):
        cs.confirm = None
    return None


class App:
    """Runs the state machine against the engine.

    Args:
        flake_path: Flake directory or flake.nix path (None for cwd)
        settings: Engine settings (defaults to the environment)
        history: Commit history provider, shared with the update checker
        on_change: Called whenever the state or status message changes

    Spawned commands are never echoed: the terminal belongs to the UI, so
    they only reach the log file.
    """

    def __init__(
        self,
        flake_path: str | Path | None = None,
        settings: Settings | None = None,
        history: CommitHistory | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.flake_path = flake_path
        self.settings = settings or get_settings()
        self.cancel = CancelToken()
        self.history = history or CommitHistory(self.cancel, self.settings)
        self.checker = UpdateChecker(self.history, self.cancel, self.settings.batch_size)
        self.on_change = on_change or (lambda: None)
        self.state = AppState()
        self.message: StatusMessage | None = None
        self._tasks: set[asyncio.Task] = set()
        self._changelog_request = 0

    @property
    def flake_dir(self) -> Path:
        return self.state.list.flake.path

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run a coroutine in the background, keeping a reference until it finishes."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, AbortedError):
            logger.error('background task failed', exc_info=exc)
            self.show(f'Unexpected error: {exc}', Level.ERROR)

    async def wait_idle(self) -> None:
        """Wait until no background task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def show(self, text: str, level: Level = Level.INFO) -> None:
        self.message = StatusMessage(text, level)
        self.on_change()

    def expire_message(self, now: float | None = None) -> None:
        if self.message is not None and self.message.expired(now):
            self.message = None
            self.on_change()

    def start(self) -> asyncio.Task:
        """Load the flake; the view moves to LIST or ERROR when done."""
        return self.spawn(self._load())

    async def shutdown(self) -> None:
        """Abort everything in flight and release the HTTP client."""
        self.cancel.cancel()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.history.aclose()

    # Key dispatch

    def press(self, key: str) -> None:
        if self.state.view == View.QUITTING:
            return
        action = handle_key(self.state, key)
        if action is not None:
            self.dispatch(action)
        self.on_change()

    def dispatch(self, action: Action) -> None:
        state = self.state
        if isinstance(action, Quit):
            state.view = View.QUITTING
        elif isinstance(action, CancelAndQuit):
            self.cancel.cancel()
            state.view = View.QUITTING
        elif isinstance(action, UpdateSelected):
            self.show(f'Updating {len(action.names)} input(s)...')
            self.spawn(self._update(action.names))
        elif isinstance(action, UpdateAll):
            self.show('Updating all inputs...')
            self.spawn(self._update(None))
        elif isinstance(action, Refresh):
            if state.view == View.ERROR:
                state.view = View.LOADING
                state.error = None
            self.show('Refreshing...')
            self.spawn(self._load('Refreshed'))
        elif isinstance(action, OpenChangelog):
            self._open_changelog(action.name)
        elif isinstance(action, CloseChangelog):
            # Bumping the request id drops a changelog still loading
            self._changelog_request += 1
            state.view = View.LIST
            state.changelog = None
            state.loading_input = None
        elif isinstance(action, ConfirmLock):
            self.show(f'Locking {action.name} to {action.rev[:7]}...')
            if state.list is not None:
                state.list.busy = True
            self.spawn(self._lock(action))
        elif isinstance(action, ShowWarning):
            self.show(action.text, Level.WARNING)

    # Background work

    async def _load(self, success_message: str | None = None) -> None:
        try:
            flake = await nix.load_flake(self.flake_path, self.cancel, self.settings)
        except AbortedError:
            return
        except MeltError as e:
            logger.error('loading flake failed: %s', e)
            if self.state.list is None:
                self.state.view = View.ERROR
                self.state.error = str(e)
                self.message = None
            else:
                self.state.list.busy = False
                self.show(str(e), Level.ERROR)
            self.on_change()
            return

        self._apply_flake(flake)
        if success_message:
            self.show(success_message, Level.SUCCESS)

    def _apply_flake(self, flake: FlakeData) -> None:
        state = self.state
        if state.list is None:
            state.list = ListState(flake)
        else:
            state.list.update_flake(flake)
        state.list.busy = False
        if state.view in (View.LOADING, View.ERROR):
            state.view = View.LIST
            state.error = None
        self.on_change()
        self.spawn(self._check_updates())

    async def _check_updates(self) -> None:
        lst = self.state.list
        if lst is None:
            return
        statuses = await self.checker.check_all(lst.flake.inputs, self._set_status)
        if not statuses:
            return
        rate_limited = [s for s in statuses.values() if s.error_kind == ErrorKind.RATE_LIMIT]
        if rate_limited and not self.settings.github_token:
            self.show('API rate limit reached; set GITHUB_TOKEN for higher limits', Level.WARNING)
        elif rate_limited:
            self.show('API rate limit reached', Level.WARNING)

    def _set_status(self, name: str, status: UpdateStatus) -> None:
        if self.state.list is not None:
            self.state.list.statuses[name] = status
            self.on_change()

    async def _update(self, names: list[str] | None) -> None:
        lst = self.state.list
        if names is None:
            result = await nix.update_all(self.flake_dir, self.cancel, self.settings)
            done = 'Updated all inputs'
        else:
            result = await nix.update_inputs(self.flake_dir, names, self.cancel, self.settings)
            done = f'Updated {", ".join(names)}'

        if self.cancel.cancelled:
            return
        if not result.ok:
            lst.busy = False
            self.show(f'Update failed: {result.output}', Level.ERROR)
            return
        if names is not None:
            lst.selected.difference_update(names)
        await self._load(done)

    def _open_changelog(self, name: str) -> None:
        lst = self.state.list
        flake_input = lst.flake.get_input(name) if lst else None
        if flake_input is None:
            return
        self._changelog_request += 1
        self.state.view = View.LOADING_CHANGELOG
        self.state.loading_input = flake_input
        self.spawn(self._load_changelog(self._changelog_request, flake_input))

    async def _load_changelog(self, request: int, flake_input: FlakeInput) -> None:
        result = await load_changelog(self.history, flake_input)
        if request != self._changelog_request or self.state.view != View.LOADING_CHANGELOG:
            logger.debug('dropping stale changelog for %s', flake_input.name)
            return
        if self.cancel.cancelled:
            return

        info = resolve_repo_info(flake_input)
        self.state.changelog = ChangelogState.open(flake_input, info, result)
        self.state.loading_input = None
        self.state.view = View.CHANGELOG
        if result.error:
            self.show(f'Changelog failed: {result.error}', Level.ERROR)
        elif result.pinned_index < 0 and result.commits:
            self.show('Pinned revision not found in recent history', Level.WARNING)
        self.on_change()

    async def _lock(self, action: ConfirmLock) -> None:
        result = await nix.lock_input(self.flake_dir, action.name, action.lock_url, self.cancel, self.settings)
        if self.cancel.cancelled:
            return
        if not result.ok:
            if self.state.list is not None:
                self.state.list.busy = False
            if self.state.changelog is not None:
                self.state.changelog.confirm = None
            self.show(f'Lock failed: {result.output}', Level.ERROR)
            return

        self.state.changelog = None
        self.state.view = View.LIST
        await self._load(f'Locked {action.name} to {action.rev[:7]}')
