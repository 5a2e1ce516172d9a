"""Keeps the in-memory forest and the stored hierarchy objects in step."""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from collections import deque
from collections.abc import Iterator
from datetime import datetime, timezone

from hierarchyns.api import (
    ANNOTATION_MANAGED_BY,
    ANNOTATION_SUBNAMESPACE_OF,
    CONDITION_ACTIVITIES_HALTED,
    CONDITION_BAD_CONFIGURATION,
    FINALIZER_HAS_SUBNAMESPACE,
    LABEL_INCLUDED_NAMESPACE,
    LABEL_TREE_DEPTH_SUFFIX,
    META_GROUP,
    REASON_ANCHOR_MISSING,
    REASON_DELETING_CRD,
    REASON_ILLEGAL_MANAGED_ANNOTATION,
    REASON_ILLEGAL_MANAGED_LABEL,
    REASON_ILLEGAL_PARENT,
    REASON_IN_CYCLE,
    REASON_PARENT_MISSING,
    SINGLETON,
    HierarchyConfiguration,
    NamespaceObject,
    SubnamespaceAnchor,
)
from hierarchyns.config import Config
from hierarchyns.forest import Forest, Namespace

_logger = logging.getLogger(__name__)

# Shared by every reconciler so that each reconciliation gets a distinct id in the logs.
_reconcile_ids = itertools.count(1)

# Upper bound on reconciliations in one call of reconcile_until_stable.
_MAX_RECONCILES = 10000


class NotFoundError(LookupError):
    """The requested object does not exist on the server."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryClient:
    """A server holding namespaces, hierarchy configurations and anchors in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._namespaces: dict[str, NamespaceObject] = {}
        self._hierarchies: dict[str, HierarchyConfiguration] = {}
        self._anchors: dict[tuple[str, str], SubnamespaceAnchor] = {}
        self.deleting_crd = False

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._namespaces))

    def get_namespace(self, name: str) -> NamespaceObject:
        with self._lock:
            try:
                return self._namespaces[name].copy()
            except KeyError:
                raise NotFoundError(f'namespace "{name}" not found') from None

    def create_namespace(self, ns: NamespaceObject) -> None:
        name = ns.metadata.name
        if not name:
            raise ValueError("a namespace must have a name")
        with self._lock:
            if name in self._namespaces:
                raise ValueError(f'namespace "{name}" already exists')
            if ns.metadata.creation_timestamp is None:
                ns.metadata.creation_timestamp = _now()
            self._namespaces[name] = ns.copy()

    def update_namespace(self, ns: NamespaceObject) -> None:
        name = ns.metadata.name
        with self._lock:
            if name not in self._namespaces:
                raise NotFoundError(f'namespace "{name}" not found')
            self._namespaces[name] = ns.copy()

    def get_hierarchy(self, namespace: str) -> HierarchyConfiguration:
        with self._lock:
            try:
                return self._hierarchies[namespace].copy()
            except KeyError:
                raise NotFoundError(
                    f'hierarchyconfiguration "{SINGLETON}" not found in "{namespace}"'
                ) from None

    def create_hierarchy(self, hc: HierarchyConfiguration) -> None:
        namespace = hc.metadata.namespace
        with self._lock:
            if namespace in self._hierarchies:
                raise ValueError(
                    f'hierarchyconfiguration already exists in "{namespace}"'
                )
            if hc.metadata.creation_timestamp is None:
                hc.metadata.creation_timestamp = _now()
            self._hierarchies[namespace] = hc.copy()

    def update_hierarchy(self, hc: HierarchyConfiguration) -> None:
        namespace = hc.metadata.namespace
        with self._lock:
            if namespace not in self._hierarchies:
                raise NotFoundError(
                    f'hierarchyconfiguration "{SINGLETON}" not found in "{namespace}"'
                )
            self._hierarchies[namespace] = hc.copy()

    def list_anchors(self, namespace: str) -> list[SubnamespaceAnchor]:
        with self._lock:
            return [
                copy.deepcopy(anchor)
                for (ns, _), anchor in sorted(self._anchors.items())
                if ns == namespace
            ]

    def get_anchor(self, namespace: str, name: str) -> SubnamespaceAnchor:
        with self._lock:
            try:
                return copy.deepcopy(self._anchors[(namespace, name)])
            except KeyError:
                raise NotFoundError(
                    f'subnamespaceanchor "{name}" not found in "{namespace}"'
                ) from None

    def create_anchor(self, anchor: SubnamespaceAnchor) -> None:
        key = (anchor.metadata.namespace, anchor.metadata.name)
        if not all(key):
            raise ValueError("an anchor must have a name and a namespace")
        with self._lock:
            if key in self._anchors:
                raise ValueError(f'anchor "{key[1]}" already exists in "{key[0]}"')
            if anchor.metadata.creation_timestamp is None:
                anchor.metadata.creation_timestamp = _now()
            self._anchors[key] = copy.deepcopy(anchor)

    def is_deleting_crd(self) -> bool:
        """True if the hierarchy configuration type is being removed."""
        return self.deleting_crd


class _ReconcileLog(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[rid={self.extra['rid']} ns={self.extra['ns']}] {msg}", kwargs


class Reconciler:
    """Derives the forest from hierarchy configurations and writes back the results.

    Namespaces whose state may have changed as a side effect are queued; fetch
    them with ``take_affected`` or let ``reconcile_until_stable`` drain them.
    """

    def __init__(
        self,
        client: InMemoryClient,
        forest: Forest,
        config: Config | None = None,
        read_only: bool = False,
    ) -> None:
        self.client = client
        self.forest = forest
        self.config = config if config is not None else Config()
        self.read_only = read_only
        self._affected: deque[str] = deque()
        self._affected_lock = threading.Lock()

    # Entry points

    def reconcile(self, namespace: str) -> None:
        """Reconcile one namespace and its hierarchy configuration."""
        log = _ReconcileLog(_logger, {"rid": next(_reconcile_ids), "ns": namespace})
        if not self.config.is_managed_namespace(namespace):
            self._handle_unmanaged(log, namespace)
            return
        self._reconcile(log, namespace)

    def take_affected(self) -> list[str]:
        """Return and forget the namespaces queued for reconciliation."""
        with self._affected_lock:
            names = list(self._affected)
            self._affected.clear()
        return names

    def reconcile_until_stable(self, *args: str) -> int:
        """Reconcile the given namespaces (all stored ones if none) and everything
        they affect, until nothing more is queued. Return how many were run.

        Raises RuntimeError if the reconciliations do not settle.
        """
        pending: dict[str, None] = dict.fromkeys(args or list(self.client))
        count = 0
        while pending:
            name = next(iter(pending))
            del pending[name]
            count += 1
            if count > _MAX_RECONCILES:
                raise RuntimeError("reconciliation did not settle")
            self.reconcile(name)
            for affected in self.take_affected():
                pending.setdefault(affected, None)
        return count

    # Unmanaged namespaces

    def _handle_unmanaged(self, log: logging.LoggerAdapter, name: str) -> None:
        try:
            ns_inst = self.client.get_namespace(name)
        except NotFoundError:
            return

        self._remove_included_namespace_label(log, ns_inst)
        self._write_namespace(log, ns_inst)

        # Keep the singleton, but let users delete it if they wish.
        inst, _ = self._get_singleton(name)
        if inst.metadata.finalizers or inst.status.children:
            log.info("Removing finalizers and children on unmanaged singleton")
            inst.metadata.finalizers = []
            inst.status.children = []
            self.client.update_hierarchy(inst)

    # Managed namespaces

    def _reconcile(self, log: logging.LoggerAdapter, name: str) -> None:
        try:
            ns_inst = self.client.get_namespace(name)
        except NotFoundError:
            self._on_missing_namespace(log, name)
            return

        self._add_included_namespace_label(log, ns_inst)

        inst, deleting_crd = self._get_singleton(name)
        if deleting_crd and inst.metadata.creation_timestamp is None:
            log.info("HierarchyConfiguration CRD is being deleted; will not sync")
            return

        anchor_names = [a.metadata.name for a in self.client.list_anchors(name)]

        try:
            parent_anchor = self.client.get_anchor(
                ns_inst.metadata.annotations.get(ANNOTATION_SUBNAMESPACE_OF, ""), name
            )
        except NotFoundError:
            parent_anchor = None

        self._update_finalizers(log, inst, ns_inst, anchor_names)
        self._sync_with_forest(
            log, ns_inst, inst, deleting_crd, anchor_names, parent_anchor
        )
        self._write_instances(log, inst, ns_inst)

    def _on_missing_namespace(self, log: logging.LoggerAdapter, name: str) -> None:
        with self.forest:
            ns = self.forest.get(name)
            if ns.exists():
                self._enqueue_affected(
                    log, "relative of deleted namespace", *ns.relatives_names()
                )
                ns.unset_exists()
                log.info("Namespace has been deleted")

    def _remove_included_namespace_label(
        self, log: logging.LoggerAdapter, ns_inst: NamespaceObject
    ) -> None:
        if LABEL_INCLUDED_NAMESPACE in ns_inst.metadata.labels:
            log.info("Illegal included-namespace label found; removing")
            del ns_inst.metadata.labels[LABEL_INCLUDED_NAMESPACE]

    def _add_included_namespace_label(
        self, log: logging.LoggerAdapter, ns_inst: NamespaceObject
    ) -> None:
        if ns_inst.metadata.labels.get(LABEL_INCLUDED_NAMESPACE) == "true":
            return
        log.info("Adding included-namespace label")
        ns_inst.set_label(LABEL_INCLUDED_NAMESPACE, "true")

    def _update_finalizers(
        self,
        log: logging.LoggerAdapter,
        inst: HierarchyConfiguration,
        ns_inst: NamespaceObject,
        anchor_names: list[str],
    ) -> None:
        """Keep the singleton from being deleted while the namespace has anchors."""
        if not anchor_names:
            if inst.metadata.finalizers:
                log.debug("Removing finalizers since there are no longer any anchors")
            inst.metadata.finalizers = []
        elif (
            inst.metadata.deletion_timestamp is not None
            and ns_inst.metadata.deletion_timestamp is None
        ):
            log.info(
                "Removing finalizers to allow a single deletion of the singleton "
                "(not involved in a cascading deletion)."
            )
            inst.metadata.finalizers = []
        else:
            if not inst.metadata.finalizers:
                log.info("Adding finalizers since there's at least one anchor")
            inst.metadata.finalizers = [FINALIZER_HAS_SUBNAMESPACE]

    def _sync_with_forest(
        self,
        log: logging.LoggerAdapter,
        ns_inst: NamespaceObject,
        inst: HierarchyConfiguration,
        deleting_crd: bool,
        anchor_names: list[str],
        parent_anchor: SubnamespaceAnchor | None,
    ) -> None:
        with self.forest:
            orig_ns = ns_inst.copy()
            orig_hc = inst.copy()
            ns = self.forest.get(ns_inst.metadata.name)

            was_halted = ns.is_halted()
            ns.clear_conditions()
            if deleting_crd:
                ns.set_condition(
                    CONDITION_ACTIVITIES_HALTED,
                    REASON_DELETING_CRD,
                    "The HierarchyConfiguration CRD is being deleted; all "
                    "propagation is disabled.",
                )

            self._sync_external_namespace(log, ns_inst, ns)
            self._sync_subnamespace_parent(log, inst, ns_inst, ns, parent_anchor)
            self._sync_parent(log, inst, ns)
            self._mark_existing(log, ns)

            self._sync_labels(log, inst, ns_inst, ns)
            self._sync_annotations(log, inst, ns_inst, ns)

            self._sync_anchors(log, ns, anchor_names)
            if ns.update_allow_cascading_deletion(inst.spec.allow_cascading_deletion):
                log.info(
                    "Updated allowCascadingDeletion to %s",
                    inst.spec.allow_cascading_deletion,
                )

            inst.status.children = ns.child_names()
            self._sync_conditions(log, inst, ns, was_halted)

            changed = False
            if orig_hc != inst:
                changed = True
                initial = not inst.metadata.name
                if initial:
                    inst.metadata.name = SINGLETON
                    inst.metadata.namespace = ns_inst.metadata.name
                log.info("HierarchyConfiguration has changed (initial=%s)", initial)
            if orig_ns != ns_inst:
                changed = True
                log.info("Namespace has changed")
            if changed:
                self.forest.on_change_namespace(ns)

    def _sync_external_namespace(
        self, log: logging.LoggerAdapter, ns_inst: NamespaceObject, ns: Namespace
    ) -> None:
        manager = ns_inst.metadata.annotations.get(ANNOTATION_MANAGED_BY, "")
        if manager in ("", META_GROUP):
            if ns.is_external():
                self._enqueue_affected(
                    log,
                    "subtree root converts from external to internal",
                    *ns.descendant_names(),
                )
            ns.manager = META_GROUP
            return

        if not ns.is_external():
            self._enqueue_affected(
                log,
                "subtree root converts from internal to external",
                *ns.descendant_names(),
            )
        ns.manager = manager

    def _sync_subnamespace_parent(
        self,
        log: logging.LoggerAdapter,
        inst: HierarchyConfiguration,
        ns_inst: NamespaceObject,
        ns: Namespace,
        parent_anchor: SubnamespaceAnchor | None,
    ) -> None:
        """The subnamespace-of annotation decides the parent of a subnamespace."""
        if ns.is_external():
            ns.is_sub = False
            return

        parent_name = ns_inst.metadata.annotations.get(ANNOTATION_SUBNAMESPACE_OF, "")
        # A subnamespace being deleted is treated as orphaned so it can be emptied.
        if parent_name and ns_inst.metadata.deletion_timestamp is not None:
            log.debug(
                "Subnamespace is being deleted; ignoring SubnamespaceOf annotation"
            )
            parent_name = ""

        if not parent_name:
            ns.is_sub = False
            return
        ns.is_sub = True

        if inst.spec.parent != parent_name:
            if not inst.spec.parent:
                log.info(
                    "Inserting newly created subnamespace into the hierarchy "
                    "(parent=%s)",
                    parent_name,
                )
            else:
                log.info(
                    "The parent doesn't match the subnamespace annotation; "
                    "overwriting parent %s with %s",
                    inst.spec.parent,
                    parent_name,
                )
            inst.spec.parent = parent_name

        if parent_anchor is None:
            ns.set_condition(
                CONDITION_BAD_CONFIGURATION,
                REASON_ANCHOR_MISSING,
                "The anchor is missing in the parent namespace",
            )
        else:
            inst.spec.labels = copy.deepcopy(parent_anchor.spec.labels)
            inst.spec.annotations = copy.deepcopy(parent_anchor.spec.annotations)

    def _mark_existing(self, log: logging.LoggerAdapter, ns: Namespace) -> None:
        if not ns.set_exists():
            return
        log.info("New namespace found")
        self._enqueue_affected(
            log, "relative of newly found namespace", *ns.relatives_names()
        )
        if ns.is_sub and ns.parent is not None:
            self._enqueue_affected(
                log, "parent of the newly found subnamespace", ns.parent.name
            )
        self.forest.on_change_namespace(ns)

    def _sync_parent(
        self, log: logging.LoggerAdapter, inst: HierarchyConfiguration, ns: Namespace
    ) -> None:
        try:
            self._sync_parent_structure(log, inst, ns)
        finally:
            self._set_cycle_condition(log, ns)

    def _sync_parent_structure(
        self, log: logging.LoggerAdapter, inst: HierarchyConfiguration, ns: Namespace
    ) -> None:
        if ns.is_external():
            if ns.parent is not None:
                self._enqueue_affected(log, "removed as parent", ns.parent.name)
            ns.set_parent(None)
            return

        parent_name = inst.spec.parent
        cur_parent = self.forest.get(parent_name)
        if not self.config.is_managed_namespace(parent_name):
            log.info(
                "Setting ConditionActivitiesHalted: unmanaged namespace %s set as parent",
                parent_name,
            )
            ns.set_condition(
                CONDITION_ACTIVITIES_HALTED,
                REASON_ILLEGAL_PARENT,
                f'Parent "{parent_name}" is an unmanaged namespace',
            )
        elif cur_parent is not None and not cur_parent.exists():
            log.info(
                "Setting ConditionActivitiesHalted: parent %s doesn't exist "
                "(or hasn't been synced yet)",
                parent_name,
            )
            ns.set_condition(
                CONDITION_ACTIVITIES_HALTED,
                REASON_PARENT_MISSING,
                f'Parent "{parent_name}" does not exist',
            )

        old_parent = ns.parent
        if cur_parent is old_parent:
            return

        self._enqueue_affected(log, "member of a cycle", *(ns.cycle_names() or []))

        log.info(
            "Changed parent from %r to %r",
            old_parent.name if old_parent else "",
            parent_name,
        )
        ns.set_parent(cur_parent)

        if old_parent is not None:
            self._enqueue_affected(log, "removed as parent", old_parent.name)
        if cur_parent is not None:
            self._enqueue_affected(log, "set as parent", cur_parent.name)
        self._enqueue_affected(
            log, "subtree root has changed", *ns.descendant_names()
        )

    def _set_cycle_condition(self, log: logging.LoggerAdapter, ns: Namespace) -> None:
        cycle = ns.cycle_names()
        if cycle is None:
            return
        message = f"Namespace is a member of the cycle: {' <- '.join(cycle)}"
        log.info(message)
        ns.set_condition(CONDITION_ACTIVITIES_HALTED, REASON_IN_CYCLE, message)

    def _sync_anchors(
        self, log: logging.LoggerAdapter, ns: Namespace, anchor_names: list[str]
    ) -> None:
        self._enqueue_affected(
            log,
            "SubnamespaceAnchorMissing condition may have changed due to anchor "
            "being created/deleted",
            *ns.set_anchors(anchor_names),
        )

    def _sync_labels(
        self,
        log: logging.LoggerAdapter,
        inst: HierarchyConfiguration,
        ns_inst: NamespaceObject,
        ns: Namespace,
    ) -> None:
        managed: dict[str, str] = {}
        for kvp in inst.spec.labels:
            if not self.config.is_managed_label(kvp.key):
                log.info("Illegal managed label %s", kvp.key)
                ns.set_condition(
                    CONDITION_BAD_CONFIGURATION,
                    REASON_ILLEGAL_MANAGED_LABEL,
                    "Not a legal managed label (set via --managed-namespace-label): "
                    + kvp.key,
                )
                continue
            managed[kvp.key] = kvp.value

        labels = ns_inst.metadata.labels
        for key, value in list(labels.items()):
            if self.config.is_managed_label(key):
                if ns.is_external():
                    managed[key] = value
                else:
                    labels.pop(key, None)
            if not ns.is_external() and key.endswith(LABEL_TREE_DEPTH_SUFFIX):
                labels.pop(key, None)

        if ns.managed_labels != managed:
            ns.managed_labels = managed
            log.info("Updated managed labels to %s", managed)
            self._enqueue_affected(
                log, "managed labels have changed", *ns.descendant_names()
            )

        if ns.is_external():
            ns_inst.set_label(ns_inst.metadata.name + LABEL_TREE_DEPTH_SUFFIX, "0")
            ns.set_labels(ns_inst.metadata.labels)

        cur: Namespace | None = ns
        depth = 0
        seen: set[str] = set()
        while cur is not None and cur.name not in seen:
            seen.add(cur.name)
            ns_inst.set_label(cur.name + LABEL_TREE_DEPTH_SUFFIX, str(depth))
            for key, value in cur.managed_labels.items():
                ns_inst.set_label(key, value)

            # An external namespace can only be a root.
            if cur.is_external():
                for key, ext_depth in cur.tree_labels().items():
                    ns_inst.set_label(key, str(depth + ext_depth))
                break

            if cur.is_halted():
                break
            cur = cur.parent
            depth += 1

        if ns.set_labels(ns_inst.metadata.labels):
            self.forest.on_change_namespace(ns)

    def _sync_annotations(
        self,
        log: logging.LoggerAdapter,
        inst: HierarchyConfiguration,
        ns_inst: NamespaceObject,
        ns: Namespace,
    ) -> None:
        managed: dict[str, str] = {}
        for kvp in inst.spec.annotations:
            if not self.config.is_managed_annotation(kvp.key):
                log.info("Illegal managed annotation %s", kvp.key)
                ns.set_condition(
                    CONDITION_BAD_CONFIGURATION,
                    REASON_ILLEGAL_MANAGED_ANNOTATION,
                    "Not a legal managed annotation (set via "
                    "--managed-namespace-annotation): " + kvp.key,
                )
                continue
            managed[kvp.key] = kvp.value

        annotations = ns_inst.metadata.annotations
        for key, value in list(annotations.items()):
            if self.config.is_managed_annotation(key):
                if ns.is_external():
                    managed[key] = value
                else:
                    annotations.pop(key, None)

        if ns.managed_annotations != managed:
            ns.managed_annotations = managed
            self._enqueue_affected(
                log, "managed annotations have changed", *ns.descendant_names()
            )

        if ns.is_external():
            return

        cur: Namespace | None = ns
        seen: set[str] = set()
        while cur is not None and cur.name not in seen:
            seen.add(cur.name)
            for key, value in cur.managed_annotations.items():
                ns_inst.set_annotation(key, value)
            if cur.is_halted():
                break
            cur = cur.parent

    def _sync_conditions(
        self,
        log: logging.LoggerAdapter,
        inst: HierarchyConfiguration,
        ns: Namespace,
        was_halted: bool,
    ) -> None:
        if ns.is_halted() != was_halted:
            if was_halted:
                log.info("ActivitiesHalted condition removed")
                change = "removed"
            else:
                log.info("Setting ActivitiesHalted on namespace: %s", ns.conditions())
                change = "added"
            self._enqueue_affected(
                log,
                "descendant of a namespace with ActivitiesHalted " + change,
                *ns.descendant_names(),
            )
        inst.status.conditions = ns.conditions()

    def _enqueue_affected(
        self, log: logging.LoggerAdapter, reason: str, *affected: str
    ) -> None:
        names = [name for name in affected if name]
        if not names:
            return
        log.info("Enqueuing %s: %s", names, reason)
        with self._affected_lock:
            self._affected.extend(names)

    # Writing

    def _write_instances(
        self,
        log: logging.LoggerAdapter,
        hc: HierarchyConfiguration,
        ns_inst: NamespaceObject,
    ) -> None:
        deleting_ns = ns_inst.metadata.deletion_timestamp is not None
        self._write_hierarchy(log, hc, deleting_ns)
        self._write_namespace(log, ns_inst)

    def _write_hierarchy(
        self, log: logging.LoggerAdapter, inst: HierarchyConfiguration, deleting_ns: bool
    ) -> None:
        # A blank name means the singleton isn't stored and nothing needs saying.
        if self.read_only or not inst.metadata.name:
            return
        exists = inst.metadata.creation_timestamp is not None
        if not exists and deleting_ns:
            log.info("Will not create hierarchyconfiguration since namespace is being deleted")
            return
        if exists:
            log.debug("Updating singleton (%d conditions)", len(inst.status.conditions))
            self.client.update_hierarchy(inst)
        else:
            log.info(
                "Creating hierarchyconfiguration (%d conditions)",
                len(inst.status.conditions),
            )
            self.client.create_hierarchy(inst)

    def _write_namespace(
        self, log: logging.LoggerAdapter, ns_inst: NamespaceObject
    ) -> None:
        if self.read_only:
            return
        log.debug("Updating namespace")
        self.client.update_namespace(ns_inst)

    def _get_singleton(self, name: str) -> tuple[HierarchyConfiguration, bool]:
        """The stored singleton, or a blank unnamed one; and whether the CRD is going."""
        try:
            inst = self.client.get_hierarchy(name)
        except NotFoundError:
            inst = HierarchyConfiguration()

        deleting_crd = False
        if (
            inst.metadata.creation_timestamp is None
            or inst.metadata.deletion_timestamp is not None
        ):
            deleting_crd = self.client.is_deleting_crd()
        return inst, deleting_crd