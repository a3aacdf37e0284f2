from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping


EQUALS = "="
NOT_EQUALS = "!="
IN = "in"
NOT_IN = "notin"
EXISTS = "exists"
DOES_NOT_EXIST = "!"

LABEL_NAME_RE = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?$")
LABEL_PREFIX_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

# Set-based term: `key in (a,b)` or `key notin (a,b)`.
_SET_TERM_RE = re.compile(r"^(?P<key>[^\s()!=,]+)\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")

# matchExpressions operators as they appear on workload objects.
_EXPRESSION_OPERATORS = {
    "In": IN,
    "NotIn": NOT_IN,
    "Exists": EXISTS,
    "DoesNotExist": DOES_NOT_EXIST,
}


def validate_label_key(key: str) -> None:
    prefix, sep, name = key.rpartition("/")
    if sep and (not prefix or len(prefix) > 253 or not LABEL_PREFIX_RE.match(prefix)):
        raise ValueError(f"Invalid label key prefix in {key!r}.")
    if not LABEL_NAME_RE.match(name):
        raise ValueError(
            f"Invalid label key {key!r}. Use letters/numbers and -_. (max 63 chars), starting and ending alphanumeric."
        )


def validate_label_value(value: str) -> None:
    if value and not LABEL_NAME_RE.match(value):
        raise ValueError(
            f"Invalid label value {value!r}. Use letters/numbers and -_. (max 63 chars), starting and ending alphanumeric."
        )


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        op = self.operator
        if op == EXISTS:
            return self.key in labels
        if op == DOES_NOT_EXIST:
            return self.key not in labels
        if op in (EQUALS, IN):
            return self.key in labels and labels[self.key] in self.values
        # != and notin also match when the key is absent.
        return labels.get(self.key) not in self.values

    def __str__(self) -> str:
        op = self.operator
        if op == EXISTS:
            return self.key
        if op == DOES_NOT_EXIST:
            return f"!{self.key}"
        if op in (EQUALS, NOT_EQUALS):
            return f"{self.key}{op}{self.values[0]}"
        return f"{self.key} {op} ({','.join(sorted(self.values))})"


@dataclass(frozen=True)
class LabelSelector:
    """AND of requirements. An empty selector matches everything."""

    requirements: tuple[Requirement, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(r.matches(labels) for r in self.requirements)

    def __bool__(self) -> bool:
        return bool(self.requirements)

    def __str__(self) -> str:
        return ",".join(str(r) for r in self.requirements)


def _parse_term(term: str) -> Requirement:
    m = _SET_TERM_RE.match(term)
    if m:
        key = m.group("key")
        validate_label_key(key)
        values = tuple(v.strip() for v in m.group("values").split(","))
        if values == ("",):
            raise ValueError(f"Operator '{m.group('op')}' for key {key!r} needs at least one value.")
        for v in values:
            validate_label_value(v)
        return Requirement(key, m.group("op"), tuple(sorted(set(values))))

    if term.startswith("!"):
        key = term[1:].strip()
        validate_label_key(key)
        return Requirement(key, DOES_NOT_EXIST)

    for token, op in (("!=", NOT_EQUALS), ("==", EQUALS), ("=", EQUALS)):
        if token in term:
            key, _, value = term.partition(token)
            key, value = key.strip(), value.strip()
            validate_label_key(key)
            validate_label_value(value)
            return Requirement(key, op, (value,))

    validate_label_key(term)
    return Requirement(term, EXISTS)


def _split_terms(text: str) -> list[str]:
    """Split on commas that are not inside a parenthesized value set."""
    terms: list[str] = []
    depth = 0
    start = 0
    for i, ch in enumerate(text):
        if ch == "(":
            depth += 1
            if depth > 1:
                raise ValueError(f"Nested parentheses in label selector {text!r}.")
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in label selector {text!r}.")
        elif ch == "," and depth == 0:
            terms.append(text[start:i])
            start = i + 1
    if depth:
        raise ValueError(f"Unbalanced parentheses in label selector {text!r}.")
    terms.append(text[start:])
    return terms


def parse_selector(text: str) -> LabelSelector:
    """Parse selector text such as ``app=router,component=druid``.

    Terms are joined by commas and all of them must hold. Supported terms:
    ``k=v`` / ``k==v``, ``k!=v``, ``k in (a,b)``, ``k notin (a,b)``, ``k``
    (key exists) and ``!k`` (key absent).
    Raises ValueError on malformed text.
    """
    text = (text or "").strip()
    if not text:
        return LabelSelector()
    requirements: list[Requirement] = []
    for raw in _split_terms(text):
        term = raw.strip()
        if not term:
            raise ValueError(f"Empty term in label selector {text!r}.")
        requirements.append(_parse_term(term))
    return LabelSelector(tuple(requirements))


def selector_from_label_selector(spec: Any) -> LabelSelector:
    """Convert a workload's ``spec.selector`` (matchLabels + matchExpressions)."""
    requirements: list[Requirement] = []
    for key, value in sorted((getattr(spec, "match_labels", None) or {}).items()):
        requirements.append(Requirement(key, EQUALS, (value,)))
    for expr in getattr(spec, "match_expressions", None) or []:
        op = _EXPRESSION_OPERATORS.get(expr.operator)
        if op is None:
            raise ValueError(f"Unsupported selector operator {expr.operator!r} for key {expr.key!r}.")
        values = tuple(expr.values or ())
        if op in (IN, NOT_IN) and not values:
            raise ValueError(f"Operator {expr.operator!r} for key {expr.key!r} needs at least one value.")
        requirements.append(Requirement(expr.key, op, values))
    return LabelSelector(tuple(requirements))
