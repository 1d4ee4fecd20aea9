"""Configuration constants.

Values here are protocol constraints and implementation details that are
not user-configurable. For configurable values, see models.py.
"""

REPO_CONFIG_NAME = ".flaketree.yaml"
"""Per-flake config file, looked up in the flake directory."""

FLAKE_FILE = "flake.nix"
"""A directory without this file is not a flake and halts evaluation."""

SEARCH_SUGGESTIONS_MAX = 30
"""Maximum autocomplete suggestions returned for a query."""

SEARCH_TOP_LEVEL_MAX = 20
"""Maximum suggestions shown for an empty query."""

SCALAR_DESCRIPTION_MAX = 50
"""Scalar strings longer than this are truncated in node descriptions."""
