"""Object types and well-known names for hierarchical namespaces."""

from __future__ import annotations

import copy as _copy
from dataclasses import dataclass, field
from datetime import datetime

META_GROUP = "hnc.x-k8s.io"
SINGLETON = "hierarchy"
HIERARCHY_CONFIGURATIONS = "hierarchyconfigurations"

LABEL_INCLUDED_NAMESPACE = META_GROUP + "/included-namespace"
LABEL_TREE_DEPTH_SUFFIX = ".tree." + META_GROUP + "/depth"
ANNOTATION_MANAGED_BY = META_GROUP + "/managed-by"
ANNOTATION_SUBNAMESPACE_OF = META_GROUP + "/subnamespace-of"
ANNOTATION_NONE_SELECTOR = "propagate." + META_GROUP + "/none"
FINALIZER_HAS_SUBNAMESPACE = META_GROUP + "/hasSubnamespace"

CONDITION_ACTIVITIES_HALTED = "ActivitiesHalted"
CONDITION_BAD_CONFIGURATION = "BadConfiguration"

REASON_ANCESTOR = "AncestorHaltActivities"
REASON_DELETING_CRD = "DeletingCRD"
REASON_IN_CYCLE = "InCycle"
REASON_PARENT_MISSING = "ParentMissing"
REASON_ILLEGAL_PARENT = "IllegalParent"
REASON_ANCHOR_MISSING = "SubnamespaceAnchorMissing"
REASON_ILLEGAL_MANAGED_LABEL = "IllegalManagedLabel"
REASON_ILLEGAL_MANAGED_ANNOTATION = "IllegalManagedAnnotation"

MODE_PROPAGATE = "Propagate"
MODE_IGNORE = "Ignore"
MODE_REMOVE = "Remove"


@dataclass
class MetaKVP:
    """A key/value pair for a managed label or annotation."""

    key: str
    value: str = ""


@dataclass
class Condition:
    """A condition reported on a namespace's hierarchy configuration."""

    type: str
    reason: str
    message: str = ""


@dataclass
class ObjectMeta:
    """Metadata common to every stored object."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None


@dataclass
class HierarchyConfigurationSpec:
    parent: str = ""
    allow_cascading_deletion: bool = False
    labels: list[MetaKVP] = field(default_factory=list)
    annotations: list[MetaKVP] = field(default_factory=list)


@dataclass
class HierarchyConfigurationStatus:
    children: list[str] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class HierarchyConfiguration:
    """The per-namespace singleton that records its place in the hierarchy."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: HierarchyConfigurationSpec = field(default_factory=HierarchyConfigurationSpec)
    status: HierarchyConfigurationStatus = field(
        default_factory=HierarchyConfigurationStatus
    )

    def copy(self) -> HierarchyConfiguration:
        """Return an independent deep copy."""
        return _copy.deepcopy(self)


@dataclass
class NamespaceObject:
    """A cluster namespace as stored on the server."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)

    def copy(self) -> NamespaceObject:
        """Return an independent deep copy."""
        return _copy.deepcopy(self)

    def set_label(self, key: str, value: str) -> None:
        self.metadata.labels[key] = value

    def set_annotation(self, key: str, value: str) -> None:
        self.metadata.annotations[key] = value


@dataclass
class SubnamespaceAnchorSpec:
    labels: list[MetaKVP] = field(default_factory=list)
    annotations: list[MetaKVP] = field(default_factory=list)


@dataclass
class SubnamespaceAnchor:
    """An anchor in a parent namespace that owns a subnamespace of the same name."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SubnamespaceAnchorSpec = field(default_factory=SubnamespaceAnchorSpec)


@dataclass
class UserInfo:
    """The identity of the user making a request."""

    username: str = ""
    uid: str = ""
    groups: list[str] = field(default_factory=list)
    extra: dict[str, list[str]] = field(default_factory=dict)