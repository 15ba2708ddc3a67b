"""melt - inspect and update the pinned inputs of a Nix flake."""

__version__ = '0.1.0'
