"""
Variant model: one logical version fans out across operating system,
architecture and package type.

``group_releases`` turns the flat release list of one application into a
three-level tree (GroupedVersion -> ArchitectureGroup -> releases) and
``resolve_selection`` narrows a partial user choice down to a single release.
Both are pure: no database, no disk. Releases are read through their
attributes only (version_number, operating_system, architecture,
version_type, sort_order, release_date, uploaded_at, id), so ORM rows and
plain objects work alike.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Iterable, List, NamedTuple, Optional, Union

from appshelf.exceptions import InvalidField, InvalidPackageType


SOURCE_CODE_OS = "Source Code"
VERSION_TYPES = ("installer", "portable", "source")
DEFAULT_ARCHITECTURE = "default"
OS_DISPLAY_ORDER = ["Windows", "macOS", "Linux", SOURCE_CODE_OS]

AXIS_OPERATING_SYSTEM = "operating_system"
AXIS_VERSION = "version_number"
AXIS_ARCHITECTURE = "architecture"
AXIS_VERSION_TYPE = "version_type"

# ── NORMALISATION ───────────────────────────────────────────────────

def normalize_version_type(value) -> str:
    if value not in VERSION_TYPES:
        raise InvalidPackageType(
            f"Invalid version type {value!r}. Must be installer, portable, or source"
        )
    return value

def normalize_operating_system(version_type: Optional[str], value: Optional[str]) -> Optional[str]:
    if version_type == "source":
        return SOURCE_CODE_OS
    if value is None:
        return None
    value = value.strip()
    return value or None

def _architecture_tags(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(",")
    else:
        parts = [part for item in value for part in str(item).split(",")]
    tags = []
    for part in parts:
        tag = part.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags

def normalize_architecture(value) -> List[str]:
    """
    Accept None, "x86_64", "x86_64, arm64" or ["x86_64", "arm64"].

    Returns a de-duplicated list in input order; an empty list means the
    release is not tied to an architecture.
    """
    tags = _architecture_tags(value)
    if any(tag.lower() == DEFAULT_ARCHITECTURE for tag in tags):
        raise InvalidField(f"'{DEFAULT_ARCHITECTURE}' is reserved and cannot be used as an architecture")
    return tags

def count_operating_systems(values: Iterable[Optional[str]]) -> int:
    return len({value for value in values if value})

def display_key(release):
    """Sort key: sort_order, then release date (or upload time), then id. Use with reverse=True."""
    when = release.release_date or release.uploaded_at
    if when is None:
        when = datetime.min
    elif not isinstance(when, datetime) and isinstance(when, date):
        when = datetime.combine(when, time.min)
    return (release.sort_order or 0, when, release.id or 0)

def sort_releases(releases) -> list:
    return sorted(releases, key=display_key, reverse=True)

# ── GROUPING ────────────────────────────────────────────────────────

@dataclass
class ArchitectureGroup:
    architecture: Optional[str]
    releases: list = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.architecture or DEFAULT_ARCHITECTURE

@dataclass
class GroupedVersion:
    version_number: str
    operating_system: Optional[str]
    architecture_groups: List[ArchitectureGroup] = field(default_factory=list)

    def architecture_group(self, architecture: Optional[str]) -> ArchitectureGroup:
        for group in self.architecture_groups:
            if group.architecture == architecture:
                return group
        group = ArchitectureGroup(architecture)
        self.architecture_groups.append(group)
        return group

def group_releases(releases) -> List[GroupedVersion]:
    """
    Partition releases by (version label, operating system), then by
    architecture. A release tagged with several architectures appears under
    each of them; an untagged one lands in the ``None`` group.

    Output order follows display order, so any permutation of the same
    releases produces the same tree.
    """
    groups = {}
    for release in sort_releases(releases):
        os_label = normalize_operating_system(release.version_type, release.operating_system)
        key = (release.version_number, os_label)
        grouped = groups.get(key)
        if grouped is None:
            grouped = groups[key] = GroupedVersion(release.version_number, os_label)
        for architecture in _architecture_tags(release.architecture) or [None]:
            grouped.architecture_group(architecture).releases.append(release)
    return list(groups.values())

def find_conflicts(groups: List[GroupedVersion]) -> List[dict]:
    """Leaf groups holding the same package type more than once."""
    conflicts = []
    for grouped in groups:
        for arch_group in grouped.architecture_groups:
            by_type = {}
            for release in arch_group.releases:
                by_type.setdefault(release.version_type, []).append(release.id)
            for version_type, ids in by_type.items():
                if len(ids) > 1:
                    conflicts.append({
                        "version_number": grouped.version_number,
                        "operating_system": grouped.operating_system,
                        "architecture": arch_group.architecture,
                        "version_type": version_type,
                        "release_ids": ids,
                    })
    return conflicts

# ── SELECTION ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Selection:
    operating_system: Optional[str] = None
    version_number: Optional[str] = None
    architecture: Optional[str] = None
    version_type: Optional[str] = None

@dataclass
class Resolved:
    release: object
    architecture: Optional[str]
    status = "resolved"

@dataclass
class NeedsMoreInput:
    axis: str
    options: List[str]
    status = "needs_input"

@dataclass
class NoMatch:
    # None when the application has no release at all
    axis: Optional[str]
    status = "no_match"

SelectionResult = Union[Resolved, NeedsMoreInput, NoMatch]

class _Slot(NamedTuple):
    grouped: GroupedVersion
    arch_group: ArchitectureGroup
    release: object

def _distinct(values) -> list:
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen

def _os_order(options):
    named = [option for option in options if option]
    return sorted(named, key=lambda name: (
        OS_DISPLAY_ORDER.index(name) if name in OS_DISPLAY_ORDER else len(OS_DISPLAY_ORDER),
        name.lower(),
    ))

def _type_order(options):
    return sorted(options, key=lambda t: VERSION_TYPES.index(t) if t in VERSION_TYPES else len(VERSION_TYPES))

def _keep_order(options):
    return options

_AXES = (
    (AXIS_OPERATING_SYSTEM, lambda slot: slot.grouped.operating_system, _os_order),
    (AXIS_VERSION, lambda slot: slot.grouped.version_number, _keep_order),
    (AXIS_ARCHITECTURE, lambda slot: slot.arch_group.key, _keep_order),
    (AXIS_VERSION_TYPE, lambda slot: slot.release.version_type, _type_order),
)

def resolve_selection(groups: List[GroupedVersion], selection: Optional[Selection] = None) -> SelectionResult:
    """
    Narrow ``groups`` with the choices in ``selection``.

    Axes are walked in order: operating system, version, architecture,
    package type. A supplied choice filters the candidates (nothing left means
    the choice is stale: NoMatch, and everything downstream must be reset). A
    missing choice is only asked for when more than one value remains at that
    level, so single-valued levels resolve on their own. When the application
    has at most one named OS the operating system level is skipped: it is
    never asked for and a supplied OS is ignored.
    """
    selection = selection or Selection()
    slots = [
        _Slot(grouped, arch_group, release)
        for grouped in groups
        for arch_group in grouped.architecture_groups
        for release in arch_group.releases
    ]
    if not slots:
        return NoMatch(None)

    multi_os = count_operating_systems(slot.grouped.operating_system for slot in slots) > 1
    for axis, value_of, ordering in _AXES:
        if axis == AXIS_OPERATING_SYSTEM and not multi_os:
            # Un seul OS : l'étape est sautée, un choix d'OS éventuel est ignoré
            continue
        chosen = getattr(selection, axis)
        if chosen:
            slots = [slot for slot in slots if value_of(slot) == chosen]
            if not slots:
                return NoMatch(axis)
            continue
        options = ordering(_distinct(value_of(slot) for slot in slots))
        if len(options) > 1:
            return NeedsMoreInput(axis, options)

    # Only reachable with several slots when a null-OS group and a named-OS
    # group share a version label and type; the higher ranked release wins.
    best = max(slots, key=lambda slot: display_key(slot.release))
    return Resolved(best.release, best.arch_group.architecture)
