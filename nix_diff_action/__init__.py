"""nix-diff-action: compare nix closures of a pull request against its base branch with dix."""

__version__ = "1.0.0"
