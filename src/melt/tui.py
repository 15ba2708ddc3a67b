"""Textual front end for the melt state machine."""

from pathlib import Path

from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable, Static

from .app import App as Controller
from .app import Level, View
from .config import Settings
from .models import UpdateStatus, format_relative

SHORTCUTS = {
    View.LOADING: [('q/esc', 'cancel')],
    View.ERROR: [('r', 'retry'), ('q/esc', 'quit')],
    View.LIST: [
        ('j/k', 'nav'),
        ('space', 'select'),
        ('u', 'update'),
        ('U', 'all'),
        ('c', 'changelog'),
        ('r', 'refresh'),
        ('q/esc', 'quit'),
    ],
    View.LOADING_CHANGELOG: [('q/esc', 'back')],
    View.CHANGELOG: [('j/k', 'nav'), ('space', 'lock'), ('q/esc', 'back')],
}

CONFIRM_SHORTCUTS = [('y', 'confirm'), ('n/q', 'cancel')]

LEVEL_STYLES = {
    Level.INFO: 'cyan',
    Level.SUCCESS: 'green',
    Level.WARNING: 'yellow',
    Level.ERROR: 'bold red',
}


def key_name(event: events.Key) -> str:
    """Map a key event to the name the state machine expects.

    Printable keys are reported as the typed character so that 'U' and 'u'
    stay distinct; everything else uses textual's key name.
    """
    if event.key == 'space':
        return 'space'
    if event.character and len(event.character) == 1 and event.character.isprintable():
        return event.character
    return event.key


def status_text(status: UpdateStatus | None) -> Text:
    if status is None:
        return Text('-', style='dim')
    label = status.display()
    if status.loading:
        return Text(label, style='dim')
    if status.error is not None:
        return Text(label, style='red')
    if status.commits_behind:
        return Text(label, style='yellow')
    return Text(label, style='green')


def help_text(items: list[tuple[str, str]]) -> Text:
    text = Text()
    for i, (key, description) in enumerate(items):
        if i:
            text.append('  ')
        text.append(key, style='bold')
        text.append(f' {description}', style='dim')
    return text


class MeltApp(App[None]):
    """Full-screen view of a flake's inputs and their changelogs."""

    TITLE = 'melt'
    CSS = """
    #header {
        height: auto;
        padding: 0 1;
        background: $boost;
    }
    DataTable {
        height: 1fr;
    }
    #confirm {
        height: auto;
        padding: 1 2;
        border: round $warning;
    }
    #message, #help {
        height: 1;
        padding: 0 1;
    }
    """

    BINDINGS = [Binding('ctrl+c', 'cancel_quit', 'Quit', show=False, priority=True)]

    def __init__(self, flake_path: str | Path | None = None, settings: Settings | None = None):
        super().__init__()
        self.controller = Controller(flake_path, settings, on_change=self.refresh_view)
        self._view_ready = False

    def compose(self) -> ComposeResult:
        yield Static(id='header')
        yield DataTable(id='inputs', cursor_type='row', zebra_stripes=True)
        yield DataTable(id='commits', cursor_type='row')
        yield Static(id='confirm')
        yield Static(id='message')
        yield Static(id='help')

    def on_mount(self) -> None:
        inputs = self.query_one('#inputs', DataTable)
        commits = self.query_one('#commits', DataTable)
        # Keys are handled by the state machine, not by the tables
        inputs.can_focus = False
        commits.can_focus = False
        inputs.add_columns(' ', 'Input', 'Type', 'Rev', 'Updated', 'Status')
        commits.add_columns(' ', 'Commit', 'Message', 'Author', 'Date')

        self._view_ready = True
        self.set_interval(0.5, self.controller.expire_message)
        self.controller.start()
        self.refresh_view()

    async def on_key(self, event: events.Key) -> None:
        event.stop()
        event.prevent_default()
        self.controller.press(key_name(event))
        await self._exit_if_quitting()

    async def action_cancel_quit(self) -> None:
        self.controller.press('ctrl+c')
        await self._exit_if_quitting()

    async def _exit_if_quitting(self) -> None:
        if self.controller.state.view == View.QUITTING:
            self.exit()

    async def on_unmount(self) -> None:
        await self.controller.shutdown()

    def refresh_view(self) -> None:
        if not self._view_ready:
            return
        state = self.controller.state
        lst = state.list

        header = self.query_one('#header', Static)
        if state.view == View.LOADING:
            header.update(Text('Loading flake...', style='bold'))
        elif state.view == View.ERROR:
            header.update(Text(f'Error: {state.error}', style='bold red'))
        elif state.view in (View.CHANGELOG, View.LOADING_CHANGELOG):
            flake_input = state.changelog.flake_input if state.changelog else state.loading_input
            title = Text(f'{flake_input.name}', style='bold') if flake_input else Text()
            if flake_input:
                title.append(f'  {flake_input.url}', style='dim')
            header.update(title)
        elif lst is not None:
            title = Text(str(lst.flake.path), style='bold')
            if lst.flake.description:
                title.append(f'  {lst.flake.description}', style='dim')
            header.update(title)

        inputs = self.query_one('#inputs', DataTable)
        commits = self.query_one('#commits', DataTable)
        inputs.display = lst is not None and state.view in (View.LIST, View.LOADING_CHANGELOG)
        commits.display = state.view == View.CHANGELOG

        if inputs.display:
            self._fill_inputs(inputs)
        if commits.display:
            self._fill_commits(commits)

        confirm = self.query_one('#confirm', Static)
        cs = state.changelog
        commit = cs.confirm_commit if state.view == View.CHANGELOG and cs else None
        confirm.display = commit is not None
        if commit is not None:
            text = Text(f'Lock {cs.flake_input.name} to ', style='bold')
            text.append(commit.short_sha, style='bold yellow')
            text.append(f'?\n{commit.message}')
            confirm.update(text)

        message = self.query_one('#message', Static)
        msg = self.controller.message
        if state.view == View.LOADING_CHANGELOG and msg is None:
            message.update(Text('Loading changelog...', style='dim'))
        elif msg is not None:
            message.update(Text(msg.text, style=LEVEL_STYLES[msg.level]))
        else:
            message.update('')

        help_bar = self.query_one('#help', Static)
        items = CONFIRM_SHORTCUTS if commit is not None else SHORTCUTS.get(state.view, [])
        help_bar.update(help_text(items))

    def _fill_inputs(self, table: DataTable) -> None:
        lst = self.controller.state.list
        table.clear()
        for flake_input in lst.flake.inputs:
            mark = Text('*', style='bold magenta') if flake_input.name in lst.selected else Text(' ')
            table.add_row(
                mark,
                Text(flake_input.name, style='bold'),
                Text(flake_input.type, style='dim'),
                Text(flake_input.short_rev or '-'),
                Text(format_relative(flake_input.last_modified) if flake_input.last_modified else '-'),
                status_text(lst.statuses.get(flake_input.name)),
            )
        if lst.flake.inputs:
            table.move_cursor(row=lst.cursor)

    def _fill_commits(self, table: DataTable) -> None:
        cs = self.controller.state.changelog
        table.clear()
        for commit in cs.result.commits:
            style = 'bold green' if commit.is_pinned else ''
            table.add_row(
                Text('>' if commit.is_pinned else ' ', style=style),
                Text(commit.short_sha, style='yellow'),
                Text(commit.message, style=style),
                Text(commit.author, style='dim'),
                Text(commit.date, style='dim'),
            )
        if cs.result.commits:
            table.move_cursor(row=cs.cursor)


def run_tui(flake_path: str | Path | None = None, settings: Settings | None = None) -> None:
    MeltApp(flake_path, settings).run()
