"""Field composition model: ordered, constraint-bearing form fields.

Every function here is pure. It takes a Composition and returns a new one,
never mutating its input, so callers can keep the previous snapshot for undo
or unsaved-change detection.

Invariants maintained by ``normalize`` (and therefore by every editing
operation that ends in it):
- The four core roles (first_name, last_name, email, password) appear exactly
  once, in that order, before any other field, each required and locked.
- A pair group token is shared by exactly two fields, and they are adjacent.
- Field ids are unique.

Usage:
    >>> from formpublisher.composition import normalize, pair, reorder, make_field
    >>> from formpublisher.types import FieldKind
    >>> shirt = make_field(FieldKind.SELECT, "Shirt Size")
    >>> c = normalize([shirt])
    >>> [f.role.value if f.role else f.label for f in c.fields]
    ['first_name', 'last_name', 'email', 'password', 'Shirt Size']
    >>> c = pair(c, c.fields[1].id)
    >>> c = reorder(c, shirt.id, 0)
    >>> c.fields[1].pair_group == c.fields[2].pair_group
    True
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from formpublisher.errors import (
    CompositionError,
    DuplicateFieldIdError,
    FieldNotFoundError,
    ImmutableFieldError,
)
from formpublisher.types import Composition, Field, FieldKind, FieldRole


@dataclass(frozen=True)
class CoreFieldConfig:
    role: FieldRole
    label: str
    kind: FieldKind
    placeholder: str


# Canonical order of the mandatory fields.
CORE_FIELD_CONFIGS: Tuple[CoreFieldConfig, ...] = (
    CoreFieldConfig(
        FieldRole.FIRST_NAME, "First Name", FieldKind.TEXT, "Enter first name"
    ),
    CoreFieldConfig(
        FieldRole.LAST_NAME, "Last Name", FieldKind.TEXT, "Enter last name"
    ),
    CoreFieldConfig(FieldRole.EMAIL, "Email", FieldKind.EMAIL, "Enter your email"),
    # Rendered as a password input by the generated script.
    CoreFieldConfig(
        FieldRole.PASSWORD, "Password", FieldKind.TEXT, "Create a password"
    ),
)

CORE_ROLES: Tuple[FieldRole, ...] = tuple(cfg.role for cfg in CORE_FIELD_CONFIGS)

DEFAULT_FIELD_STYLE: Dict[str, Any] = {
    "labelColor": "#1f2937",
    "labelSize": "14",
    "labelWeight": "600",
    "borderColor": "#d1d5db",
    "borderWidth": "1",
    "borderRadius": "6",
    "bgColor": "#ffffff",
    "padding": "10",
    "fontSize": "14",
    "textColor": "#1f2937",
}

DEFAULT_THEME: Dict[str, Any] = {
    "title": "Create your account",
    "subtitle": "Please fill in the form to continue",
    "primaryColor": "#2563eb",
    "layout": "center",
    "splitImageUrl": "",
    "buttonText": "Create account",
    "buttonBg": "#2563eb",
    "buttonColor": "#ffffff",
    "buttonRadius": 10,
    "formBackgroundColor": "#ffffff",
}

FieldsSource = Union[Composition, Iterable[Union[Field, Dict[str, Any]]]]


def new_field_id() -> str:
    return f"fld_{uuid.uuid4().hex[:12]}"


def _new_group_id() -> str:
    return f"grp_{uuid.uuid4().hex[:12]}"


def default_theme() -> Dict[str, Any]:
    return dict(DEFAULT_THEME)


def normalize_theme_layout(theme: Dict[str, Any]) -> Dict[str, Any]:
    """Fall back to the centered layout when a split layout has no image."""
    result = dict(theme)
    image = str(result.get("splitImageUrl") or "").strip()
    if result.get("layout") == "split" and not image:
        result["layout"] = "center"
    return result


def make_field(kind: Union[FieldKind, str], label: str, **attrs: Any) -> Field:
    """Create a new non-core field with a fresh id and the default style."""
    style = dict(DEFAULT_FIELD_STYLE)
    style.update(attrs.pop("style", {}))
    field_id = attrs.pop("id", None) or new_field_id()
    return Field(id=field_id, kind=kind, label=label, style=style, **attrs)


def is_core(field: Field) -> bool:
    return field.role in CORE_ROLES


def _default_core_field(cfg: CoreFieldConfig) -> Field:
    return Field(
        id=new_field_id(),
        kind=cfg.kind,
        label=cfg.label,
        placeholder=cfg.placeholder,
        required=True,
        locked=True,
        role=cfg.role,
        style=dict(DEFAULT_FIELD_STYLE),
    )


def _enforce_core(field: Field, cfg: CoreFieldConfig) -> Field:
    return field.with_changes(
        role=cfg.role,
        kind=cfg.kind,
        required=True,
        locked=True,
        label=field.label if field.label.strip() else cfg.label,
        placeholder=field.placeholder if field.placeholder.strip() else cfg.placeholder,
    )


def _label_role(field: Field) -> Optional[FieldRole]:
    label = field.label.strip().lower()
    for cfg in CORE_FIELD_CONFIGS:
        if label == cfg.label.lower():
            return cfg.role
    return None


def _ensure_unique_ids(fields: Sequence[Field]) -> None:
    seen = set()
    for f in fields:
        if f.id in seen:
            raise DuplicateFieldIdError(f.id)
        seen.add(f.id)


def _repair_pairs(fields: Sequence[Field]) -> Tuple[Field, ...]:
    """Dissolve any pair group that is not exactly two adjacent fields."""
    positions: Dict[str, List[int]] = {}
    for index, f in enumerate(fields):
        if f.pair_group is not None:
            positions.setdefault(f.pair_group, []).append(index)
    valid = {
        group for group, pos in positions.items()
        if len(pos) == 2 and pos[1] == pos[0] + 1
    }
    return tuple(
        f if f.pair_group is None or f.pair_group in valid
        else f.with_changes(pair_group=None)
        for f in fields
    )


def _coerce(source: FieldsSource) -> Composition:
    if isinstance(source, Composition):
        return source
    return Composition(fields=tuple(source))


def normalize(source: FieldsSource) -> Composition:
    """Return the canonical form of a candidate field list.

    Core fields are moved to the front in canonical order. A core field is one
    whose role is a core role or, for a role-less field when no field carries
    that role explicitly, whose label equals the core label (case-insensitive).
    Missing core fields are synthesized; existing ones are forced required and
    locked with the canonical kind, keeping any non-blank placeholder. Later
    duplicates of a core role are demoted to ordinary unlocked fields.
    Non-core fields keep their relative order. Pairs that are no longer two
    adjacent fields are dissolved.

    Args:
        source: A Composition, or an iterable of Field objects / field dicts

    Returns:
        A new Composition satisfying every composition invariant

    Raises:
        DuplicateFieldIdError: If two fields share an id
    """
    composition = _coerce(source)
    fields = composition.fields
    _ensure_unique_ids(fields)

    chosen: Dict[FieldRole, int] = {}
    for index, f in enumerate(fields):
        if f.role in CORE_ROLES and f.role not in chosen:
            chosen[f.role] = index
    for index, f in enumerate(fields):
        if f.role is None:
            role = _label_role(f)
            if role is not None and role not in chosen:
                chosen[role] = index

    core: List[Field] = []
    for cfg in CORE_FIELD_CONFIGS:
        index = chosen.get(cfg.role)
        if index is None:
            core.append(_default_core_field(cfg))
        else:
            core.append(_enforce_core(fields[index], cfg))

    core_indices = set(chosen.values())
    rest: List[Field] = []
    for index, f in enumerate(fields):
        if index in core_indices:
            continue
        if f.role in CORE_ROLES:
            f = f.with_changes(role=None, locked=False)
        rest.append(f)

    return Composition(fields=_repair_pairs(core + rest), theme=dict(composition.theme))


def _index(composition: Composition, field_id: str) -> int:
    index = composition.find(field_id)
    if index is None:
        raise FieldNotFoundError(field_id)
    return index


def partner_index(composition: Composition, field_id: str) -> Optional[int]:
    """Index of the other member of the field's pair, or None."""
    index = _index(composition, field_id)
    group = composition.fields[index].pair_group
    if group is None:
        return None
    for other, f in enumerate(composition.fields):
        if other != index and f.pair_group == group:
            return other
    return None


def pair(composition: Composition, field_id: str) -> Composition:
    """Pair a field with its immediate successor.

    No-op when the field is last or already paired with its successor. Any
    existing pairing of either field is broken: a field belongs to at most one
    pair.

    Raises:
        FieldNotFoundError: If field_id is not in the composition
    """
    index = _index(composition, field_id)
    fields = composition.fields
    if index == len(fields) - 1:
        return composition

    first, second = fields[index], fields[index + 1]
    if first.pair_group is not None and first.pair_group == second.pair_group:
        return composition

    stale = {g for g in (first.pair_group, second.pair_group) if g is not None}
    group = _new_group_id()
    updated: List[Field] = []
    for position, f in enumerate(fields):
        if position in (index, index + 1):
            f = f.with_changes(pair_group=group)
        elif f.pair_group in stale:
            f = f.with_changes(pair_group=None)
        updated.append(f)
    return composition.with_fields(updated)


def unpair(composition: Composition, field_id: str) -> Composition:
    """Clear the pair group on both members of the field's pair, if any."""
    index = _index(composition, field_id)
    group = composition.fields[index].pair_group
    if group is None:
        return composition
    return composition.with_fields(
        f.with_changes(pair_group=None) if f.pair_group == group else f
        for f in composition.fields
    )


def toggle_pair(composition: Composition, field_id: str) -> Composition:
    """Unpair if paired with the successor, otherwise pair with it."""
    index = _index(composition, field_id)
    fields = composition.fields
    if index < len(fields) - 1:
        group = fields[index].pair_group
        if group is not None and fields[index + 1].pair_group == group:
            return unpair(composition, field_id)
    return pair(composition, field_id)


def delete(composition: Composition, field_id: str) -> Composition:
    """Remove a field, dissolving its pair first.

    Raises:
        ImmutableFieldError: If the field is locked or holds a core role
        FieldNotFoundError: If field_id is not in the composition
    """
    index = _index(composition, field_id)
    target = composition.fields[index]
    if target.locked or is_core(target):
        raise ImmutableFieldError(target.id)

    remaining: List[Field] = []
    for position, f in enumerate(composition.fields):
        if position == index:
            continue
        if target.pair_group is not None and f.pair_group == target.pair_group:
            f = f.with_changes(pair_group=None)
        remaining.append(f)
    return composition.with_fields(remaining)


def _moving_unit(composition: Composition, field_id: str) -> List[int]:
    index = _index(composition, field_id)
    other = partner_index(composition, field_id)
    return sorted([index] if other is None else [index, other])


def _core_end(fields: Sequence[Field]) -> int:
    """Index just past the leading run of core fields."""
    end = 0
    while end < len(fields) and is_core(fields[end]):
        end += 1
    return end


def _outside_pair(fields: Sequence[Field], position: int) -> int:
    """Shift an insertion point that would land inside a pair out of it.

    The point moves before the pair, unless the pair's first member is a core
    field: nothing may be placed among the core fields, so it moves after.
    """
    if 0 < position < len(fields):
        before, after = fields[position - 1], fields[position]
        if before.pair_group is not None and before.pair_group == after.pair_group:
            return position + 1 if is_core(before) else position - 1
    return position


def reorder(composition: Composition, from_id: str, to_index: int) -> Composition:
    """Move a field, or its whole pair, to before the field at ``to_index``.

    The moving unit is removed, the target index is shifted left by the number
    of removed fields that sat before it, clamped between the end of the core
    fields and the remaining length, and the unit is spliced back in its
    original internal order. The result is normalized, so core fields stay
    first no matter where they were dropped.

    A unit holding a core field cannot leave the core block; when it is paired
    with a non-core field, that partner stays first after the core fields.

    Raises:
        FieldNotFoundError: If from_id is not in the composition
    """
    unit = _moving_unit(composition, from_id)
    moving = [composition.fields[i] for i in unit]
    remaining = [f for i, f in enumerate(composition.fields) if i not in unit]

    core_end = _core_end(remaining)
    if any(is_core(f) for f in moving):
        position = core_end
    else:
        removed_before = sum(1 for i in unit if i < to_index)
        position = max(core_end, min(to_index - removed_before, len(remaining)))
        position = _outside_pair(remaining, position)

    fields = remaining[:position] + moving + remaining[position:]
    return normalize(composition.with_fields(fields))


def add_field(
    composition: Composition, field: Field, index: Optional[int] = None
) -> Composition:
    """Insert a field (at the end by default) and normalize.

    Raises:
        DuplicateFieldIdError: If the field id is already used
    """
    if composition.find(field.id) is not None:
        raise DuplicateFieldIdError(field.id)
    fields = list(composition.fields)
    position = len(fields) if index is None else max(0, min(index, len(fields)))
    if not is_core(field):
        position = _outside_pair(fields, max(position, _core_end(fields)))
    fields.insert(position, field)
    return normalize(composition.with_fields(fields))


def update_field(
    composition: Composition, field_id: str, **changes: Any
) -> Composition:
    """Change attributes of a field and normalize.

    Locked fields keep their role and kind and cannot be made optional or
    unlocked. Pairing goes through ``pair``/``unpair``.

    Raises:
        ImmutableFieldError: On a forbidden change to a locked field
        CompositionError: On an attempt to change the id or pair group
        FieldNotFoundError: If field_id is not in the composition
    """
    index = _index(composition, field_id)
    target = composition.fields[index]

    if "id" in changes and changes["id"] != target.id:
        raise CompositionError("Field ids cannot be changed", field_id=target.id)
    if "pair_group" in changes:
        raise CompositionError("Use pair/unpair to change pairing", field_id=target.id)
    if target.locked:
        if False in (changes.get("required", True), changes.get("locked", True)):
            raise ImmutableFieldError(
                target.id,
                f"Field '{target.id}' is required and cannot be made optional",
            )
        if "role" in changes and changes["role"] != target.role:
            raise ImmutableFieldError(
                target.id, f"Field '{target.id}' role cannot be changed"
            )
        if "kind" in changes and changes["kind"] != target.kind:
            raise ImmutableFieldError(
                target.id, f"Field '{target.id}' type cannot be changed"
            )

    fields = list(composition.fields)
    fields[index] = target.with_changes(**changes)
    return normalize(composition.with_fields(fields))


def check_invariants(composition: Composition) -> List[str]:
    """Describe every violated composition invariant. Empty means valid."""
    problems: List[str] = []
    fields = composition.fields

    seen = set()
    for f in fields:
        if f.id in seen:
            problems.append(f"duplicate field id '{f.id}'")
        seen.add(f.id)

    leading = [f.role for f in fields[:len(CORE_ROLES)]]
    if leading != list(CORE_ROLES):
        problems.append("core fields are not first in canonical order")
    for role in CORE_ROLES:
        count = sum(1 for f in fields if f.role == role)
        if count != 1:
            problems.append(f"core role '{role.value}' appears {count} times")
    for f in fields:
        if is_core(f) and not (f.required and f.locked):
            problems.append(f"core field '{f.id}' must be required and locked")

    positions: Dict[str, List[int]] = {}
    for index, f in enumerate(fields):
        if f.pair_group is not None:
            positions.setdefault(f.pair_group, []).append(index)
    for group, pos in positions.items():
        if len(pos) != 2:
            problems.append(f"pair group '{group}' has {len(pos)} members")
        elif pos[1] != pos[0] + 1:
            problems.append(f"pair group '{group}' members are not adjacent")
    return problems


def _content_key(
    composition: Composition,
) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    ordinals: Dict[str, int] = {}
    rows: List[Dict[str, Any]] = []
    for f in composition.fields:
        row = f.to_dict()
        row.pop("id")
        if f.pair_group is not None:
            row["pairGroup"] = ordinals.setdefault(f.pair_group, len(ordinals))
        rows.append(row)
    return rows, dict(composition.theme)


def same_content(a: Composition, b: Composition) -> bool:
    """Compare two compositions ignoring field ids and pair tokens."""
    return _content_key(a) == _content_key(b)


__all__ = [
    "CORE_FIELD_CONFIGS",
    "CORE_ROLES",
    "DEFAULT_FIELD_STYLE",
    "DEFAULT_THEME",
    "new_field_id",
    "default_theme",
    "normalize_theme_layout",
    "make_field",
    "is_core",
    "normalize",
    "partner_index",
    "pair",
    "unpair",
    "toggle_pair",
    "delete",
    "reorder",
    "add_field",
    "update_field",
    "check_invariants",
    "same_content",
]
