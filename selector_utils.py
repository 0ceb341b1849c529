#!/usr/bin/env python3
"""Label selector validation.

Selectors are passed to the API server verbatim; this module only checks that
an expression is a well-formed label query so bad input is rejected before any
node is touched.
"""

import re
from dataclasses import dataclass
from typing import List, Tuple

from errors import ValidationError

_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_INT_RE = re.compile(r"^-?[0-9]+$")

# Longest operators first so "==" wins over "=".
_OPERATORS = ("==", "!=", "=", ">", "<")
_SET_OPERATORS = ("notin", "in")


@dataclass(frozen=True)
class Requirement:
    """A single parsed selector term."""
    key: str
    operator: str
    values: Tuple[str, ...] = ()


def _validate_key(key: str, selector: str) -> None:
    if not key:
        raise ValidationError(f"invalid selector {selector!r}: empty label key")
    prefix, _, name = key.rpartition("/")
    if "/" in key and not prefix:
        raise ValidationError(f"invalid selector {selector!r}: empty prefix in key {key!r}")
    if prefix and (len(prefix) > 253 or not _DNS_SUBDOMAIN_RE.match(prefix)):
        raise ValidationError(f"invalid selector {selector!r}: invalid key prefix {prefix!r}")
    if len(name) > 63 or not _NAME_RE.match(name):
        raise ValidationError(f"invalid selector {selector!r}: invalid label key {key!r}")


def _validate_value(value: str, selector: str) -> None:
    if value and (len(value) > 63 or not _NAME_RE.match(value)):
        raise ValidationError(f"invalid selector {selector!r}: invalid label value {value!r}")


def _split_terms(selector: str) -> List[str]:
    """Split on commas that are not inside a parenthesised value set."""
    terms, depth, current = [], 0, []
    for char in selector:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ValidationError(f"invalid selector {selector!r}: unbalanced parenthesis")
        if char == "," and depth == 0:
            terms.append("".join(current))
            current = []
        else:
            current.append(char)
    if depth != 0:
        raise ValidationError(f"invalid selector {selector!r}: unbalanced parenthesis")
    terms.append("".join(current))
    return terms


def _parse_set_term(term: str, selector: str):
    match = re.match(r"^\s*(\S+)\s+(in|notin)\s*\((.*)\)\s*$", term)
    if not match:
        return None
    key, operator, raw_values = match.groups()
    values = tuple(v.strip() for v in raw_values.split(","))
    if not raw_values.strip():
        raise ValidationError(
            f"invalid selector {selector!r}: for 'in', 'notin' operators, values set can't be empty"
        )
    _validate_key(key, selector)
    for value in values:
        _validate_value(value, selector)
    return Requirement(key=key, operator=operator, values=values)


def _parse_term(term: str, selector: str) -> Requirement:
    stripped = term.strip()
    if not stripped:
        raise ValidationError(f"invalid selector {selector!r}: empty requirement")

    set_requirement = _parse_set_term(stripped, selector)
    if set_requirement is not None:
        return set_requirement

    if stripped.startswith("!"):
        key = stripped[1:].strip()
        _validate_key(key, selector)
        return Requirement(key=key, operator="!")

    for operator in _OPERATORS:
        if operator in stripped:
            key, _, value = stripped.partition(operator)
            key, value = key.strip(), value.strip()
            _validate_key(key, selector)
            if operator in (">", "<"):
                if not _INT_RE.match(value):
                    raise ValidationError(
                        f"invalid selector {selector!r}: operator {operator!r} requires an integer value"
                    )
            else:
                _validate_value(value, selector)
            return Requirement(key=key, operator=operator, values=(value,))

    if any(f" {op} " in f" {stripped} " for op in _SET_OPERATORS) or " " in stripped:
        raise ValidationError(f"invalid selector {selector!r}: unable to parse requirement {stripped!r}")
    _validate_key(stripped, selector)
    return Requirement(key=stripped, operator="exists")


def parse_selector(selector: str) -> List[Requirement]:
    """Parse a label selector into requirements, raising ValidationError if malformed.

    An empty selector is valid and matches everything.
    """
    if selector is None or not selector.strip():
        return []
    return [_parse_term(term, selector) for term in _split_terms(selector)]


def validate_selector(selector: str, flag_name: str = "selector") -> None:
    """Raise ValidationError naming the flag if the selector is malformed."""
    try:
        parse_selector(selector)
    except ValidationError as e:
        raise ValidationError(f"--{flag_name}=<{flag_name}> must be a valid label selector: {e}") from e
