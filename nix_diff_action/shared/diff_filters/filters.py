from __future__ import annotations
import re
from typing import List, Optional

# dix output starts with the two compared paths:
#   <<< /nix/store/xxx-name.drv
#   >>> /nix/store/yyy-name.drv
_BASE_PATH_RE = re.compile(r"^<<<\s*(.+)$", re.MULTILINE)
_PR_PATH_RE = re.compile(r"^>>>\s*(.+)$", re.MULTILINE)

# [U.] nixos-system-host 26.05.20251225.3e2499d.drv -> 26.05.20251228.c0b0e0f.drv
_PACKAGE_LINE_RE = re.compile(r"^\[([A-Z.]+)\]\s+(\S+)\s+(.+?)\s+->\s+(.+)$")
_MAJOR_MINOR_RE = re.compile(r"^(\d+\.\d+)\..+\.drv$")
_SECTION_HEADER_RE = re.compile(r"^[A-Z]+$")

_PACKAGE_SECTION_MIN_LINES = 5


# ----------------- Change detection -----------------
def has_dix_changes(diff: Optional[str]) -> bool:
    """Whether dix output describes a real change.

    Store paths are content-addressed, so equal before/after paths mean
    equal content. Output that cannot be parsed counts as changed.
    """
    if not diff or not diff.strip():
        return False

    base_match = _BASE_PATH_RE.search(diff)
    pr_match = _PR_PATH_RE.search(diff)
    if not base_match or not pr_match:
        return True

    return base_match.group(1).strip() != pr_match.group(1).strip()


def has_package_changes(diff: Optional[str]) -> bool:
    """Whether dix output carries a package section beyond the path/size summary."""
    if not diff or not diff.strip():
        return False
    return len(re.split(r"\r?\n", diff)) > _PACKAGE_SECTION_MIN_LINES


# ----------------- Minor nixpkgs update suppression -----------------
def _major_minor(version: str) -> Optional[str]:
    match = _MAJOR_MINOR_RE.match(version)
    return match.group(1) if match else None


def is_minor_system_update_line(line: str) -> bool:
    """True for ``[U.]`` system-closure lines whose major.minor version did not change.

    Only ``nixos-system-*`` and ``darwin-system`` entries with single,
    comma-free ``.drv`` versions qualify.
    """
    match = _PACKAGE_LINE_RE.match(line)
    if not match:
        return False

    status, package_name, before, after = match.groups()
    if status != "U.":
        return False
    if not package_name.startswith("nixos-system-") and package_name != "darwin-system":
        return False

    before, after = before.strip(), after.strip()
    if "," in before or "," in after:
        return False

    before_mm = _major_minor(before)
    after_mm = _major_minor(after)
    return before_mm is not None and before_mm == after_mm


def filter_nixpkgs_minor_updates(diff: str) -> str:
    """Drop system-closure lines that only moved within a nixpkgs release.

    A section header (``CHANGED`` etc.) left with no entries by the
    filtering is removed too, together with the blank line closing it.
    """
    if not diff:
        return diff

    out: List[str] = []
    header_index: Optional[int] = None
    entries = 0
    filtered = False

    for line in re.split(r"\r?\n", diff):
        if is_minor_system_update_line(line):
            filtered = True
            continue

        if header_index is not None and line == "":
            if entries == 0 and filtered:
                del out[header_index]
                header_index = None
                continue
            header_index = None
        elif _SECTION_HEADER_RE.match(line):
            header_index = len(out)
            entries = 0
            filtered = False
        elif header_index is not None:
            entries += 1

        out.append(line)

    if header_index is not None and entries == 0 and filtered:
        del out[header_index]

    return "\n".join(out)
