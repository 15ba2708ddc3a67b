"""Flake handling - input records and lock metadata parsing."""

from dataclasses import dataclass, field
from pathlib import Path

from .errors import FlakeError

# Forge kinds that name an owner/repo pair directly in the flake URL
FORGE_SCHEMES = ('github', 'gitlab', 'sourcehut')


@dataclass(frozen=True)
class FlakeInput:
    """A direct input of the flake, as pinned in flake.lock."""

    name: str
    type: str  # github, gitlab, sourcehut, git, path, tarball, ...
    owner: str | None = None
    repo: str | None = None
    ref: str | None = None
    url: str = ''
    rev: str = ''
    last_modified: int = 0
    host: str | None = None
    path: str | None = None

    @property
    def short_rev(self) -> str:
        return self.rev[:7]


@dataclass
class FlakeData:
    """A loaded flake: where it lives and what it depends on."""

    path: Path
    description: str | None = None
    inputs: list[FlakeInput] = field(default_factory=list)

    def get_input(self, name: str) -> FlakeInput | None:
        for inp in self.inputs:
            if inp.name == name:
                return inp
        return None


def _display_url(type_: str, owner: str | None, repo: str | None, host: str | None, locked: dict, original: dict) -> str:
    """Build the URL shown for an input (and used to detect its forge)."""
    if type_ in FORGE_SCHEMES:
        if type_ == 'sourcehut' and owner and not owner.startswith('~'):
            owner = f'~{owner}'
        url = f'{type_}:{owner}/{repo}'
        if host:
            url += f'?host={host}'
        return url
    if type_ == 'path':
        return locked.get('path') or original.get('path') or 'path:unknown'
    return locked.get('url') or original.get('url') or 'unknown'


def _resolve_node(nodes: dict, root: str, ref) -> str | None:
    """Resolve a lock input reference to a node name.

    A string names a node directly. A list is a follows path starting at
    the root node (e.g. ["home-manager", "nixpkgs"]).
    """
    if isinstance(ref, str):
        return ref
    if not isinstance(ref, list):
        return None

    node_name = root
    for step in ref:
        node_inputs = nodes.get(node_name, {}).get('inputs') or {}
        if step not in node_inputs:
            return None
        target = node_inputs[step]
        if isinstance(target, list):
            # Nested follows are relative to the root again
            target = _resolve_node(nodes, root, target)
        if not isinstance(target, str):
            return None
        node_name = target
    return node_name


def parse_input(name: str, node: dict) -> FlakeInput | None:
    """Build a FlakeInput from a lock node. Nodes without a locked entry are skipped."""
    locked = node.get('locked')
    if not locked:
        return None
    original = node.get('original') or {}

    type_ = locked.get('type') or original.get('type') or 'other'
    owner = locked.get('owner') or original.get('owner')
    repo = locked.get('repo') or original.get('repo')
    host = locked.get('host') or original.get('host')
    rev = locked.get('rev') or ''

    return FlakeInput(
        name=name,
        type=type_,
        owner=owner,
        repo=repo,
        ref=original.get('ref'),
        url=_display_url(type_, owner, repo, host, locked, original),
        rev=rev,
        last_modified=locked.get('lastModified') or 0,
        host=host,
        path=(locked.get('path') or original.get('path')) if type_ == 'path' else None,
    )


def parse_metadata(path: Path, metadata: dict) -> FlakeData:
    """Parse `nix flake metadata --json` output into a FlakeData.

    Only direct inputs of the root node are returned, sorted by name.
    """
    locks = metadata.get('locks') or {}
    nodes = locks.get('nodes') or {}
    root = locks.get('root', 'root')
    root_inputs = nodes.get(root, {}).get('inputs') or {}

    inputs = []
    for name, ref in root_inputs.items():
        node_name = _resolve_node(nodes, root, ref)
        if node_name is None or node_name not in nodes:
            continue
        flake_input = parse_input(name, nodes[node_name])
        if flake_input is not None:
            inputs.append(flake_input)

    inputs.sort(key=lambda i: i.name.lower())
    return FlakeData(path=path, description=metadata.get('description'), inputs=inputs)


def resolve_flake_path(path: str | Path | None = None) -> Path:
    """Resolve a user-supplied flake location to the flake directory.

    Accepts a directory or a path to flake.nix; defaults to the current
    directory.

    Raises:
        FlakeError: no flake.nix at the resolved location
    """
    resolved = Path(path or '.').resolve()
    if resolved.name == 'flake.nix':
        resolved = resolved.parent
    if not (resolved / 'flake.nix').is_file():
        raise FlakeError(f'No flake.nix found in {resolved}')
    return resolved
