"""Settings that decide which namespaces, labels and annotations are managed."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from hierarchyns.api import MetaKVP

_DNS1123_LABEL = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS1123_SUBDOMAIN_RE = re.compile(_DNS1123_LABEL + r"(\." + _DNS1123_LABEL + r")*")
_QUALIFIED_NAME_RE = re.compile(r"([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]")
_LABEL_VALUE_RE = re.compile(r"(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?")

_QUALIFIED_NAME_MAX = 63
_SUBDOMAIN_MAX = 253
_LABEL_VALUE_MAX = 63


@dataclass(frozen=True)
class FieldError:
    """An invalid value in a field of a submitted object."""

    field: str
    value: str
    detail: str

    def __str__(self) -> str:
        return f'{self.field}: Invalid value: "{self.value}": {self.detail}'


def validate_qualified_name(key: str) -> list[str]:
    """Return the problems with ``key`` as a qualified name (empty if valid)."""
    parts = key.split("/")
    if len(parts) == 1:
        name = parts[0]
    elif len(parts) == 2:
        prefix, name = parts
        if not prefix:
            return ["prefix part must be non-empty"]
        if len(prefix) > _SUBDOMAIN_MAX:
            return [f"prefix part must be no more than {_SUBDOMAIN_MAX} characters"]
        if not _DNS1123_SUBDOMAIN_RE.fullmatch(prefix):
            return [
                "prefix part must be a lowercase DNS subdomain: alphanumeric "
                "characters, '-' or '.', starting and ending with an alphanumeric"
            ]
    else:
        return [
            "a qualified name must be a name with an optional DNS subdomain "
            "prefix and '/'"
        ]

    problems = []
    if not name:
        problems.append("name part must be non-empty")
    elif len(name) > _QUALIFIED_NAME_MAX:
        problems.append(
            f"name part must be no more than {_QUALIFIED_NAME_MAX} characters"
        )
    if name and not _QUALIFIED_NAME_RE.fullmatch(name):
        problems.append(
            "name part must consist of alphanumeric characters, '-', '_' or '.', "
            "and must start and end with an alphanumeric character"
        )
    return problems


def validate_label_value(value: str) -> list[str]:
    """Return the problems with ``value`` as a label value (empty if valid)."""
    problems = []
    if len(value) > _LABEL_VALUE_MAX:
        problems.append(f"must be no more than {_LABEL_VALUE_MAX} characters")
    if not _LABEL_VALUE_RE.fullmatch(value):
        problems.append(
            "a valid label value must be empty or consist of alphanumeric "
            "characters, '-', '_' or '.', and must start and end with an "
            "alphanumeric character"
        )
    return problems


def _compile_all(patterns: Iterable[str] | None) -> list[re.Pattern[str]]:
    compiled = []
    for pattern in patterns or ():
        try:
            compiled.append(re.compile(pattern))
        except re.error as err:
            raise ValueError(f"illegal regex {pattern!r}: {err}") from err
    return compiled


class Config:
    """Which namespaces are managed, and which labels and annotations may be."""

    def __init__(self) -> None:
        self._included: re.Pattern[str] = re.compile(".*")
        self._excluded: frozenset[str] = frozenset()
        self._managed_labels: list[re.Pattern[str]] = []
        self._managed_annotations: list[re.Pattern[str]] = []

    def set_namespaces(self, regex: str, *args: str) -> None:
        """Set the regex of included namespaces and the excluded namespace names.

        An empty regex includes every namespace.
        """
        self._included = re.compile(regex or ".*")
        self._excluded = frozenset(args)

    def set_managed_meta(
        self, labels: Iterable[str] | None, annotations: Iterable[str] | None
    ) -> None:
        """Set the regexes of managed label and annotation keys.

        Raises ValueError if any regex is illegal; nothing changes in that case.
        """
        managed_labels = _compile_all(labels)
        managed_annotations = _compile_all(annotations)
        self._managed_labels = managed_labels
        self._managed_annotations = managed_annotations

    def why_unmanaged(self, name: str) -> str:
        """Return why the namespace is unmanaged, or an empty string if it is managed."""
        if name in self._excluded:
            return "excluded by the HNC administrator"
        if not self._included.fullmatch(name):
            return (
                "does not match the regex set by the HNC administrator: "
                f"`{self._included.pattern}`"
            )
        return ""

    def is_managed_namespace(self, name: str) -> bool:
        return not self.why_unmanaged(name)

    def is_managed_label(self, key: str) -> bool:
        return any(regex.fullmatch(key) for regex in self._managed_labels)

    def is_managed_annotation(self, key: str) -> bool:
        return any(regex.fullmatch(key) for regex in self._managed_annotations)

    def validate_managed_labels(self, kvps: Iterable[MetaKVP]) -> list[FieldError]:
        """Return every problem with the given managed labels."""
        errors = []
        for i, kvp in enumerate(kvps or ()):
            path = f"spec.labels[{i}]"
            problems = validate_qualified_name(kvp.key)
            if problems:
                errors.append(FieldError(path + ".key", kvp.key, "; ".join(problems)))
            elif not self.is_managed_label(kvp.key):
                errors.append(
                    FieldError(
                        path + ".key",
                        kvp.key,
                        "not a managed label and cannot be configured",
                    )
                )
            problems = validate_label_value(kvp.value)
            if problems:
                errors.append(
                    FieldError(path + ".value", kvp.value, "; ".join(problems))
                )
        return errors

    def validate_managed_annotations(
        self, kvps: Iterable[MetaKVP]
    ) -> list[FieldError]:
        """Return every problem with the given managed annotations."""
        errors = []
        for i, kvp in enumerate(kvps or ()):
            path = f"spec.annotations[{i}].key"
            problems = validate_qualified_name(kvp.key)
            if problems:
                errors.append(FieldError(path, kvp.key, "; ".join(problems)))
            elif not self.is_managed_annotation(kvp.key):
                errors.append(
                    FieldError(
                        path,
                        kvp.key,
                        "not a managed annotation and cannot be configured",
                    )
                )
        return errors