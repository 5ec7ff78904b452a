"""Changesets: staged, validated changes to an entity.

A changeset is built from an entity and raw input with ``cast`` (or from
already-typed values with ``change``) and then threaded through pipeline
stages. Every stage takes a changeset and returns a new one; nothing is
mutated in place. Stages keep running after the changeset becomes
invalid so that callers receive the complete set of field errors in one
pass.

Example::

    cs = pipe(
        cast(user, params, ["username", "email", "password"]),
        stage(validate_required, ["username", "email"]),
        stage(validate_length, "password", min=8),
        stage(unique_constraint, "username", name="unique_usernames"),
    )
    if cs.valid:
        repo.insert(cs)
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import reduce
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Pattern

from typed_records.casting import CastFailure, cast_value
from typed_records.entity import Entity
from typed_records.errors import StorageError, UnknownFieldError
from typed_records.types import SchemaDescriptor


class ErrorKind(Enum):
    """Where a field error originated."""

    CAST = "cast"
    VALIDATION = "validation"
    CONSTRAINT = "constraint"


class Action(Enum):
    """The commit a changeset was submitted for."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class FieldError:
    """A single error attached to a field of a changeset."""

    field: str
    message: str
    kind: ErrorKind = ErrorKind.VALIDATION
    validation: str | None = None
    meta: tuple[tuple[str, Any], ...] = ()

    @property
    def meta_dict(self) -> dict[str, Any]:
        return dict(self.meta)

    def render(self) -> str:
        """Return the message with ``%{key}`` placeholders filled from meta."""
        meta = self.meta_dict

        def substitute(match: re.Match[str]) -> str:
            key = match.group(1)
            return str(meta[key]) if key in meta else match.group(0)

        return re.sub(r"%\{(\w+)\}", substitute, self.message)


@dataclass(frozen=True)
class Constraint:
    """A store-enforced constraint declared on a changeset.

    Declaring the constraint does not check anything locally; it lets a
    violation reported by the store at commit time be turned into a
    field error instead of a storage failure.
    """

    type: str  # unique, foreign_key, check
    field: str
    name: str
    message: str

    def matches(self, error: StorageError) -> bool:
        """Return whether a store violation refers to this constraint.

        Names are compared exactly. When the store reports the constraint
        type, it has to agree as well.
        """
        if not error.is_constraint_violation or error.constraint_name != self.name:
            return False
        return error.constraint_type is None or error.constraint_type == self.type


def _frozen_mapping(values: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class Changeset:
    """Proposed changes to an entity, with accumulated errors.

    Attributes:
        data: The entity the changes apply to. Never modified.
        params: Raw parameters given to ``cast``.
        changes: Field name to new (typed) value.
        errors: Field errors in the order they were added.
        cast_fields: Field names that were permitted in ``cast``.
        required: Field names passed to ``validate_required``.
        validations: (field, validation name) pairs that were run.
        constraints: Store-enforced constraints declared for commit.
        action: The commit the changeset was last submitted for.
    """

    data: Entity
    changes: Mapping[str, Any] = field(default_factory=_frozen_mapping)
    params: Mapping[str, Any] = field(default_factory=_frozen_mapping)
    errors: tuple[FieldError, ...] = ()
    cast_fields: frozenset[str] = frozenset()
    required: tuple[str, ...] = ()
    validations: tuple[tuple[str, str], ...] = ()
    constraints: tuple[Constraint, ...] = ()
    action: Action | None = None

    def __post_init__(self) -> None:
        for name in self.changes:
            if not self.descriptor.has_field(name):
                raise UnknownFieldError(self.descriptor.name, name)
        object.__setattr__(self, "changes", _frozen_mapping(self.changes))
        object.__setattr__(self, "params", _frozen_mapping(self.params))

    @property
    def valid(self) -> bool:
        """True while no error has been added."""
        return not self.errors

    @property
    def descriptor(self) -> SchemaDescriptor:
        return self.data.descriptor

    def evolve(self, **updates: Any) -> Changeset:
        """Return a copy with some attributes replaced."""
        return dataclasses.replace(self, **updates)

    def errors_on(self, field_name: str) -> list[str]:
        """Return the rendered messages of every error on a field."""
        return [e.render() for e in self.errors if e.field == field_name]

    def then(self, stage_fn: Callable[..., Changeset], *args: Any, **kwargs: Any) -> Changeset:
        """Apply a stage function, passing this changeset as first argument."""
        return stage_fn(self, *args, **kwargs)

    def __repr__(self) -> str:
        return (
            f"Changeset({self.descriptor.name}, valid={self.valid}, "
            f"changes={dict(self.changes)!r}, errors={[(e.field, e.message) for e in self.errors]!r})"
        )


Stage = Callable[[Changeset], Changeset]


def stage(stage_fn: Callable[..., Changeset], *args: Any, **kwargs: Any) -> Stage:
    """Bind the arguments of a stage function, leaving the changeset open."""

    def run(changeset: Changeset) -> Changeset:
        return stage_fn(changeset, *args, **kwargs)

    run.__name__ = getattr(stage_fn, "__name__", "stage")
    return run


def pipe(changeset: Changeset, *stages: Stage) -> Changeset:
    """Fold a changeset through an ordered sequence of stages."""
    return reduce(lambda acc, fn: fn(acc), stages, changeset)


# --- Building ---


def _start(data: Entity | Changeset) -> Changeset:
    if isinstance(data, Changeset):
        return data
    return Changeset(data=data)


def cast(
    data: Entity | Changeset,
    params: Mapping[str, Any],
    permitted: Iterable[str],
    *,
    empty_values: tuple[Any, ...] = ("",),
) -> Changeset:
    """Cast raw parameters into typed changes.

    Only names in ``permitted`` are considered; anything else in
    ``params`` is ignored even when it is a field of the schema. Values
    that cannot be coerced to their field's kind add an "invalid type"
    error and processing continues with the remaining fields. Values
    equal to the entity's current value are not recorded as changes.

    Args:
        data: The entity to change, or a changeset to cast more params
            into.
        params: Raw input keyed by field name.
        permitted: Field names that may be changed from ``params``.
        empty_values: Raw values treated as None.

    Returns:
        A new changeset.

    Raises:
        UnknownFieldError: If a permitted name is not a schema field.
    """
    changeset = _start(data)
    descriptor = changeset.descriptor
    entity = changeset.data
    permitted = list(permitted)

    changes = dict(changeset.changes)
    errors = list(changeset.errors)

    for name in permitted:
        spec = descriptor.field(name)
        if name not in params:
            continue
        raw = params[name]
        if any(raw is v or (type(raw) is type(v) and raw == v) for v in empty_values):
            raw = None
        try:
            value = cast_value(spec.kind, raw)
        except CastFailure:
            error = FieldError(
                name, "invalid type", ErrorKind.CAST, "cast", (("type", spec.kind.value),)
            )
            if error not in errors:
                errors.append(error)
            continue
        if value == entity.values[name]:
            changes.pop(name, None)
        else:
            changes[name] = value

    merged_params = dict(changeset.params)
    merged_params.update({str(k): v for k, v in params.items()})

    return changeset.evolve(
        changes=changes,
        params=merged_params,
        errors=tuple(errors),
        cast_fields=changeset.cast_fields | frozenset(permitted),
    )


def change(data: Entity | Changeset, **changes: Any) -> Changeset:
    """Stage already-typed values without casting."""
    changeset = _start(data)
    staged = dict(changeset.changes)
    for name, value in changes.items():
        changeset.descriptor.field(name)
        if value == changeset.data.values[name]:
            staged.pop(name, None)
        else:
            staged[name] = value
    return changeset.evolve(changes=staged)


def put_change(changeset: Changeset, field_name: str, value: Any) -> Changeset:
    """Stage a value unconditionally.

    Used for server-computed fields such as a password hash. Earlier
    validations are not re-run, so put derived values after the
    validations that look at the raw input.
    """
    changeset.descriptor.field(field_name)
    changes = dict(changeset.changes)
    changes[field_name] = value
    return changeset.evolve(changes=changes)


def delete_change(changeset: Changeset, field_name: str) -> Changeset:
    """Drop a staged change, if any."""
    changeset.descriptor.field(field_name)
    if field_name not in changeset.changes:
        return changeset
    changes = dict(changeset.changes)
    del changes[field_name]
    return changeset.evolve(changes=changes)


def add_error(
    changeset: Changeset,
    field_name: str,
    message: str,
    *,
    kind: ErrorKind = ErrorKind.VALIDATION,
    validation: str | None = None,
    **meta: Any,
) -> Changeset:
    """Append an error. Adding an identical error twice is a no-op."""
    error = FieldError(field_name, message, kind, validation, tuple(sorted(meta.items())))
    if error in changeset.errors:
        return changeset
    return changeset.evolve(errors=changeset.errors + (error,))


def _add_validation(changeset: Changeset, field_name: str, validation: str) -> Changeset:
    entry = (field_name, validation)
    if entry in changeset.validations:
        return changeset
    return changeset.evolve(validations=changeset.validations + (entry,))


# --- Reading ---


def get_change(changeset: Changeset, field_name: str, default: Any = None) -> Any:
    """Return the staged change for a field, or ``default``."""
    return changeset.changes.get(field_name, default)


def get_field(changeset: Changeset, field_name: str, default: Any = None) -> Any:
    """Return the staged change if present, else the entity's value."""
    changeset.descriptor.field(field_name)
    if field_name in changeset.changes:
        return changeset.changes[field_name]
    value = changeset.data.values.get(field_name)
    return default if value is None else value


def fetch_field(changeset: Changeset, field_name: str) -> tuple[str, Any]:
    """Return ("changes", value) or ("data", value) for a field."""
    changeset.descriptor.field(field_name)
    if field_name in changeset.changes:
        return "changes", changeset.changes[field_name]
    return "data", changeset.data.values.get(field_name)


def apply_changes(changeset: Changeset) -> Entity:
    """Return the entity with every staged change applied (errors ignored)."""
    return changeset.data.replace(**changeset.changes)


def traverse_errors(changeset: Changeset) -> dict[str, list[str]]:
    """Group rendered error messages by field, in insertion order."""
    result: dict[str, list[str]] = {}
    for error in changeset.errors:
        result.setdefault(error.field, []).append(error.render())
    return result


# --- Validations ---


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _has_error(changeset: Changeset, field_name: str) -> bool:
    return any(e.field == field_name for e in changeset.errors)


def validate_required(
    changeset: Changeset, fields: Iterable[str], message: str = "is required"
) -> Changeset:
    """Require each field to have a non-blank value.

    A field passes when its staged change, or the entity's value if
    nothing is staged, is neither None nor a whitespace-only string.
    Fields that already carry an error are not reported again.
    """
    fields = list(fields)
    for name in fields:
        changeset.descriptor.field(name)
        changeset = _add_validation(changeset, name, "required")
        if _has_error(changeset, name):
            continue
        if _is_blank(get_field(changeset, name)):
            changeset = add_error(changeset, name, message, validation="required")
    required = changeset.required + tuple(f for f in fields if f not in changeset.required)
    return changeset.evolve(required=required)


def validate_length(
    changeset: Changeset,
    field_name: str,
    *,
    min: int | None = None,
    max: int | None = None,
    is_: int | None = None,
    message: str | None = None,
) -> Changeset:
    """Check the length of a staged string, bytes or list value.

    No-op when the field has no staged change.
    """
    changeset = _add_validation(changeset, field_name, "length")
    value = changeset.changes.get(field_name)
    if value is None:
        return changeset

    length = len(value)
    if is_ is not None and length != is_:
        return add_error(
            changeset, field_name, message or "wrong length",
            validation="length", kind_of="is", count=is_,
        )
    if min is not None and length < min:
        return add_error(
            changeset, field_name, message or "too short",
            validation="length", kind_of="min", count=min,
        )
    if max is not None and length > max:
        return add_error(
            changeset, field_name, message or "too long",
            validation="length", kind_of="max", count=max,
        )
    return changeset


def validate_format(
    changeset: Changeset,
    field_name: str,
    pattern: str | Pattern[str],
    message: str = "has invalid format",
) -> Changeset:
    """Check a staged string against a regular expression (``re.search``)."""
    changeset = _add_validation(changeset, field_name, "format")
    value = changeset.changes.get(field_name)
    if value is None:
        return changeset
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    if not regex.search(value):
        return add_error(changeset, field_name, message, validation="format")
    return changeset


def validate_inclusion(
    changeset: Changeset, field_name: str, values: Iterable[Any], message: str = "is invalid"
) -> Changeset:
    """Require a staged value to be one of ``values``."""
    changeset = _add_validation(changeset, field_name, "inclusion")
    value = changeset.changes.get(field_name)
    if value is None:
        return changeset
    if value not in list(values):
        return add_error(changeset, field_name, message, validation="inclusion")
    return changeset


def validate_exclusion(
    changeset: Changeset, field_name: str, values: Iterable[Any], message: str = "is reserved"
) -> Changeset:
    """Reject a staged value that is one of ``values``."""
    changeset = _add_validation(changeset, field_name, "exclusion")
    value = changeset.changes.get(field_name)
    if value is None:
        return changeset
    if value in list(values):
        return add_error(changeset, field_name, message, validation="exclusion")
    return changeset


_NUMBER_CHECKS: dict[str, tuple[Callable[[Any, Any], bool], str]] = {
    "greater_than": (lambda v, n: v > n, "must be greater than {0}"),
    "greater_than_or_equal_to": (lambda v, n: v >= n, "must be greater than or equal to {0}"),
    "less_than": (lambda v, n: v < n, "must be less than {0}"),
    "less_than_or_equal_to": (lambda v, n: v <= n, "must be less than or equal to {0}"),
    "equal_to": (lambda v, n: v == n, "must be equal to {0}"),
    "not_equal_to": (lambda v, n: v != n, "must be not equal to {0}"),
}


def validate_number(
    changeset: Changeset, field_name: str, message: str | None = None, **checks: Any
) -> Changeset:
    """Check a staged number against bounds.

    Keyword arguments name the checks: ``greater_than``,
    ``greater_than_or_equal_to``, ``less_than``,
    ``less_than_or_equal_to``, ``equal_to`` and ``not_equal_to``. The
    first failing check adds an error.

    Raises:
        ValueError: On an unknown check name.
    """
    for name in checks:
        if name not in _NUMBER_CHECKS:
            raise ValueError(f"Unknown number check '{name}'")
    changeset = _add_validation(changeset, field_name, "number")
    value = changeset.changes.get(field_name)
    if value is None:
        return changeset
    for name, bound in checks.items():
        predicate, template = _NUMBER_CHECKS[name]
        if not predicate(value, bound):
            return add_error(
                changeset, field_name, message or template.format(bound),
                validation="number", kind_of=name, number=bound,
            )
    return changeset


def validate_confirmation(
    changeset: Changeset,
    field_name: str,
    *,
    required: bool = False,
    message: str = "does not match confirmation",
) -> Changeset:
    """Require ``<field>_confirmation`` to equal the staged field value.

    The confirmation is read from the staged values when the schema has a
    ``<field>_confirmation`` field (typically virtual), otherwise from
    the raw params. The error is attached to the confirmation field.
    """
    confirmation_name = f"{field_name}_confirmation"
    changeset = _add_validation(changeset, field_name, "confirmation")
    if field_name not in changeset.changes:
        return changeset

    if changeset.descriptor.has_field(confirmation_name):
        confirmation = get_field(changeset, confirmation_name)
    else:
        confirmation = changeset.params.get(confirmation_name)

    if confirmation is None:
        if required:
            return add_error(changeset, confirmation_name, "is required", validation="confirmation")
        return changeset
    if confirmation != changeset.changes[field_name]:
        return add_error(changeset, confirmation_name, message, validation="confirmation")
    return changeset


def validate_acceptance(
    changeset: Changeset, field_name: str, message: str = "must be accepted"
) -> Changeset:
    """Require a boolean field (e.g. terms of service) to be true."""
    changeset = _add_validation(changeset, field_name, "acceptance")
    if get_field(changeset, field_name) is not True:
        return add_error(changeset, field_name, message, validation="acceptance")
    return changeset


def validate_change(
    changeset: Changeset,
    field_name: str,
    validator: Callable[[str, Any], Iterable[str | tuple[str, str]]],
    validation: str = "custom",
) -> Changeset:
    """Run a custom validator on a staged change.

    The validator receives ``(field_name, value)`` and returns messages,
    or ``(field, message)`` pairs to attach errors to other fields. It is
    not called when the field has no staged change.
    """
    changeset.descriptor.field(field_name)
    changeset = _add_validation(changeset, field_name, validation)
    value = changeset.changes.get(field_name)
    if value is None:
        return changeset
    for result in validator(field_name, value) or ():
        if isinstance(result, tuple):
            target, text = result
        else:
            target, text = field_name, result
        changeset = add_error(changeset, target, text, validation=validation)
    return changeset


# --- Constraints ---


def _add_constraint(changeset: Changeset, constraint: Constraint) -> Changeset:
    changeset.descriptor.field(constraint.field)
    if constraint in changeset.constraints:
        return changeset
    return changeset.evolve(constraints=changeset.constraints + (constraint,))


def unique_constraint(
    changeset: Changeset,
    field_name: str,
    *,
    name: str | None = None,
    message: str = "has already been taken",
) -> Changeset:
    """Declare a unique constraint enforced by the store.

    Nothing is queried here. If the store reports a violation of the
    constraint ``name`` at commit time, it becomes an error on
    ``field_name``. The default name is ``<relation>_<field>_index``.
    """
    constraint_name = name or f"{changeset.descriptor.relation}_{field_name}_index"
    return _add_constraint(changeset, Constraint("unique", field_name, constraint_name, message))


def foreign_key_constraint(
    changeset: Changeset,
    field_name: str,
    *,
    name: str | None = None,
    message: str = "does not exist",
) -> Changeset:
    """Declare a foreign key constraint enforced by the store.

    The default name is ``<relation>_<field>_fkey``.
    """
    constraint_name = name or f"{changeset.descriptor.relation}_{field_name}_fkey"
    return _add_constraint(
        changeset, Constraint("foreign_key", field_name, constraint_name, message)
    )


def check_constraint(
    changeset: Changeset, field_name: str, *, name: str, message: str = "is invalid"
) -> Changeset:
    """Declare a check constraint enforced by the store."""
    return _add_constraint(changeset, Constraint("check", field_name, name, message))


def constraint_for(changeset: Changeset, error: StorageError) -> Constraint | None:
    """Return the declared constraint a store violation refers to, if any.

    Some stores (SQLite for foreign keys) report only the constraint
    type. Such a violation matches when exactly one constraint of that
    type is declared.
    """
    for constraint in changeset.constraints:
        if constraint.matches(error):
            return constraint
    if error.is_constraint_violation and error.constraint_name is None and error.constraint_type:
        same_type = [c for c in changeset.constraints if c.type == error.constraint_type]
        if len(same_type) == 1:
            return same_type[0]
    return None


def add_constraint_error(changeset: Changeset, error: StorageError) -> Changeset | None:
    """Map a store violation onto the changeset.

    Returns:
        The changeset with a constraint error on the declared field, or
        None when no declared constraint matches the violation.
    """
    constraint = constraint_for(changeset, error)
    if constraint is None:
        return None
    return add_error(
        changeset,
        constraint.field,
        constraint.message,
        kind=ErrorKind.CONSTRAINT,
        validation=constraint.type,
        constraint=constraint.name,
    )
