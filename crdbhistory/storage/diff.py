"""Three-way diff between two settings working sets.

A working set maps setting name to Setting.  It is rebuilt from scratch on
every save; the store is the only source of truth.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from crdbhistory.models.history import Setting, SettingDiff


def build_working_set(settings: Iterable[Setting]) -> dict[str, Setting]:
    """Index *settings* by name.  Later duplicates replace earlier ones."""
    working: dict[str, Setting] = {}
    for setting in settings:
        working[setting.variable] = setting
    return working


def diff_settings(
    previous: Mapping[str, Setting] | None,
    current: Mapping[str, Setting],
) -> list[SettingDiff]:
    """Return the symmetric difference between *previous* and *current*.

    ``previous`` is None when the source has never been collected; in that
    case nothing is reported at all.  An empty mapping is a real (empty)
    predecessor, so every current setting is reported as added.

    The result is sorted by setting name so that it does not depend on the
    order of the input sequence.
    """
    if previous is None:
        return []

    diffs: list[SettingDiff] = []
    for name in sorted(previous.keys() | current.keys()):
        prev = previous.get(name)
        curr = current.get(name)
        if prev is not None and curr is not None:
            if prev.value != curr.value:
                diffs.append(SettingDiff(name, prev.value, curr.value, curr.description))
        elif curr is not None:
            diffs.append(SettingDiff(name, None, curr.value, curr.description))
        elif prev is not None:
            diffs.append(SettingDiff(name, prev.value, None, prev.description))
    return diffs
