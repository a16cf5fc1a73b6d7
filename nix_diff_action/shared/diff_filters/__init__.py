"""
Diff Filters Module
Text heuristics applied to dix output before it is shown on a pull request.
"""

from .filters import (
    # Change detection
    has_dix_changes,
    has_package_changes,

    # Noise suppression
    is_minor_system_update_line,
    filter_nixpkgs_minor_updates,
)

__all__ = [
    'has_dix_changes',
    'has_package_changes',
    'is_minor_system_update_line',
    'filter_nixpkgs_minor_updates',
]
