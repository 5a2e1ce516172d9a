"""In-memory model of the namespace hierarchy shared by the reconciler and validator."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field

from hierarchyns.api import (
    ANNOTATION_NONE_SELECTOR,
    CONDITION_ACTIVITIES_HALTED,
    LABEL_TREE_DEPTH_SUFFIX,
    META_GROUP,
    MODE_PROPAGATE,
    REASON_ANCESTOR,
    REASON_IN_CYCLE,
    REASON_PARENT_MISSING,
    Condition,
)

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


@dataclass
class SourceObject:
    """An object in a namespace that may be propagated to its descendants."""

    kind: str
    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


def should_propagate(obj: SourceObject) -> bool:
    """Return False if the object asks not to be propagated anywhere.

    Raises ValueError if the none-selector annotation is not a boolean.
    """
    value = obj.annotations.get(ANNOTATION_NONE_SELECTOR)
    if value is None or value in _FALSE_VALUES:
        return True
    if value in _TRUE_VALUES:
        return False
    raise ValueError(
        f"invalid value {value!r} for annotation {ANNOTATION_NONE_SELECTOR}"
    )


@dataclass(frozen=True)
class TypeSyncer:
    """A kind of object the forest knows about, with its propagation mode."""

    kind: str
    mode: str = MODE_PROPAGATE


class Namespace:
    """One namespace in the forest, existing or merely referenced."""

    def __init__(self, forest: Forest, name: str) -> None:
        self.forest = forest
        self.name = name
        self.is_sub = False
        self.manager = META_GROUP
        self.managed_labels: dict[str, str] = {}
        self.managed_annotations: dict[str, str] = {}
        self.anchors: list[str] = []
        self.allow_cascading_deletion = False
        self._parent: Namespace | None = None
        self._children: dict[str, Namespace] = {}
        self._exists = False
        self._conditions: list[Condition] = []
        self._labels: dict[str, str] = {}
        self._sources: dict[str, dict[str, SourceObject]] = {}

    def __repr__(self) -> str:
        return f"Namespace({self.name!r})"

    @property
    def parent(self) -> Namespace | None:
        return self._parent

    @property
    def labels(self) -> dict[str, str]:
        return dict(self._labels)

    # Existence

    def exists(self) -> bool:
        return self._exists

    def set_exists(self) -> bool:
        """Mark the namespace as existing; return True if it did not before."""
        changed = not self._exists
        self._exists = True
        return changed

    def unset_exists(self) -> bool:
        """Mark the namespace as gone, detaching it from its parent."""
        changed = self._exists
        self.set_parent(None)
        self._exists = False
        self._clean()
        return changed

    def _clean(self) -> None:
        if self._exists or self._children:
            return
        self.forest._discard(self)

    # Structure

    def set_parent(self, parent: Namespace | None) -> None:
        old = self._parent
        if old is parent:
            return
        self._parent = parent
        if old is not None:
            old._children.pop(self.name, None)
            old._clean()
        if parent is not None:
            parent._children[self.name] = self

    def is_external(self) -> bool:
        return self.manager not in ("", META_GROUP)

    def child_names(self) -> list[str]:
        return sorted(self._children)

    def relatives_names(self) -> list[str]:
        names = [self._parent.name] if self._parent is not None else []
        return names + self.child_names()

    def descendant_names(self) -> list[str]:
        """All descendants, depth first; a cycle's members are listed once."""
        found: list[str] = []
        seen: set[str] = set()

        def visit(ns: Namespace) -> None:
            for name in ns.child_names():
                if name in seen:
                    continue
                seen.add(name)
                found.append(name)
                visit(ns._children[name])

        visit(self)
        return found

    def ancestry_names(self) -> list[str]:
        """Names from the root down to this namespace.

        In a cycle the first repeated namespace appears at both ends.
        """
        seen = {self.name}
        ancestry = [self.name]
        anc = self._parent
        while anc is not None:
            ancestry.insert(0, anc.name)
            if anc.name in seen:
                break
            seen.add(anc.name)
            anc = anc._parent
        return ancestry

    def cycle_names(self) -> list[str] | None:
        """The cycle this namespace is in, starting with itself; None if none."""
        ancestry = self.ancestry_names()
        if len(ancestry) == 1 or ancestry[0] != self.name:
            return None
        return list(reversed(ancestry[1:]))

    def can_set_parent(self, other: Namespace | None) -> str:
        """Return why ``other`` cannot be the parent, or an empty string."""
        if other is None:
            return ""
        if other is self:
            return f'"{other.name}" cannot be set as its own parent'
        cycle: list[str] = []
        for name in reversed(other.ancestry_names()):
            cycle.append(name)
            if name == self.name:
                return (
                    f'cycle when making "{other.name}" the parent of "{self.name}": '
                    f"current ancestry is {' <- '.join(cycle)}"
                )
        return ""

    # Conditions

    def is_halted(self) -> bool:
        """True if this namespace itself has an ActivitiesHalted condition."""
        return any(c.type == CONDITION_ACTIVITIES_HALTED for c in self._conditions)

    def get_halted_root(self) -> str:
        """The nearest halted namespace among this one and its ancestors, or ''."""
        seen: set[str] = set()
        ns: Namespace | None = self
        while ns is not None and ns.name not in seen:
            if ns.is_halted():
                return ns.name
            seen.add(ns.name)
            ns = ns._parent
        return ""

    def clear_conditions(self) -> None:
        self._conditions.clear()

    def set_condition(self, type_: str, reason: str, message: str) -> None:
        condition = Condition(type_, reason, message)
        if condition not in self._conditions:
            self._conditions.append(condition)

    def conditions(self) -> list[Condition]:
        """Local conditions, preceded by one for a halted ancestor if there is one."""
        result = []
        root = self.get_halted_root()
        if root and root != self.name:
            result.append(
                Condition(
                    CONDITION_ACTIVITIES_HALTED,
                    REASON_ANCESTOR,
                    f'Propagation paused in "{self.name}" and its descendants due to '
                    f'ActivitiesHalted condition on ancestor "{root}"',
                )
            )
        result.extend(
            Condition(c.type, c.reason, c.message) for c in self._conditions
        )
        return result

    # Metadata

    def set_labels(self, labels: Mapping[str, str] | None) -> bool:
        """Record the namespace's labels; return True if they changed."""
        new = dict(labels or {})
        changed = new != self._labels
        self._labels = new
        return changed

    def tree_labels(self) -> dict[str, int]:
        """The recorded tree-depth labels with their depths."""
        result = {}
        for key, value in self._labels.items():
            if not key.endswith(LABEL_TREE_DEPTH_SUFFIX):
                continue
            try:
                result[key] = int(value)
            except ValueError:
                continue
        return result

    def set_anchors(self, anchors: list[str] | None) -> list[str]:
        """Replace the anchor names; return those removed and those added."""
        new = list(anchors or [])
        added = dict.fromkeys(new)
        changed = []
        for name in self.anchors:
            if name in added:
                del added[name]
            else:
                changed.append(name)
        changed.extend(added)
        self.anchors = new
        return changed

    def update_allow_cascading_deletion(self, allow: bool) -> bool:
        changed = self.allow_cascading_deletion != allow
        self.allow_cascading_deletion = allow
        return changed

    # Source objects

    def set_source_object(self, obj: SourceObject) -> None:
        obj.namespace = self.name
        self._sources.setdefault(obj.kind, {})[obj.name] = obj

    def get_source_object(self, kind: str, name: str) -> SourceObject | None:
        return self._sources.get(kind, {}).get(name)

    def source_names(self, kind: str) -> list[str]:
        return sorted(self._sources.get(kind, {}))

    def ancestor_source_names(self, kind: str, name: str) -> list[tuple[str, str]]:
        """(namespace, name) of source objects from the root down to here.

        An empty ``name`` matches every object of the kind.
        """
        found = []
        for ancestor in self.ancestry_names():
            ns = self.forest.get(ancestor)
            for obj_name in ns.source_names(kind):
                if not name or obj_name == name:
                    found.append((ancestor, obj_name))
        return found


class Forest:
    """All known namespaces. Use ``with forest:`` to hold its lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._namespaces: dict[str, Namespace] = {}
        self._type_syncers: list[TypeSyncer] = []
        self._listeners: list[Callable[[Namespace], None]] = []

    def __enter__(self) -> Forest:
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()

    def __contains__(self, name: object) -> bool:
        return name in self._namespaces

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._namespaces))

    def __len__(self) -> int:
        return len(self._namespaces)

    def get(self, name: str) -> Namespace | None:
        """Return the named namespace, creating it if needed; None for ''."""
        if not name:
            return None
        ns = self._namespaces.get(name)
        if ns is None:
            ns = Namespace(self, name)
            self._namespaces[name] = ns
        return ns

    def _discard(self, ns: Namespace) -> None:
        if self._namespaces.get(ns.name) is ns:
            del self._namespaces[ns.name]

    def add_type_syncer(self, syncer: TypeSyncer) -> None:
        self._type_syncers.append(syncer)

    def type_syncers(self) -> list[TypeSyncer]:
        return list(self._type_syncers)

    def add_listener(self, listener: Callable[[Namespace], None]) -> None:
        self._listeners.append(listener)

    def on_change_namespace(self, ns: Namespace) -> None:
        for listener in list(self._listeners):
            listener(ns)


def build_forest(description: str) -> Forest:
    """Build a forest from a compact description.

    The character at position i describes namespace chr(ord('a') + i): '-'
    makes it a root, a letter names its parent. Parents that are not described
    are left non-existent. ParentMissing and InCycle conditions are set.
    """
    forest = Forest()
    for offset, parent_char in enumerate(description):
        if parent_char != "-" and not ("a" <= parent_char <= "z"):
            raise ValueError(f"invalid parent {parent_char!r} in forest description")
        ns = forest.get(chr(ord("a") + offset))
        ns.set_exists()
        if parent_char != "-":
            ns.set_parent(forest.get(parent_char))

    for name in list(forest):
        ns = forest.get(name)
        if not ns.exists():
            continue
        parent = ns.parent
        if parent is not None and not parent.exists():
            ns.set_condition(
                CONDITION_ACTIVITIES_HALTED,
                REASON_PARENT_MISSING,
                f'Parent "{parent.name}" does not exist',
            )
        cycle = ns.cycle_names()
        if cycle is not None:
            ns.set_condition(
                CONDITION_ACTIVITIES_HALTED,
                REASON_IN_CYCLE,
                f"Namespace is a member of the cycle: {' <- '.join(cycle)}",
            )
    return forest