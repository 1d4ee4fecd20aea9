"""flaketree - lazy explorer for the attribute tree of a Nix flake."""

__version__ = "0.1.0"
