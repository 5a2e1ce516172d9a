# hierarchyns

An in-memory model of hierarchical namespaces: namespaces arranged in a
forest of parents and children, the logic that keeps each namespace's
`HierarchyConfiguration` in step with that forest, and the admission checks
that decide whether a change to the hierarchy is allowed.

## Modules

- **`hierarchyns.api`**: the object types (`HierarchyConfiguration`,
  `NamespaceObject`, `SubnamespaceAnchor`, `MetaKVP`, `Condition`,
  `UserInfo`, ...) and well-known names such as `SINGLETON`,
  `LABEL_TREE_DEPTH_SUFFIX` and the condition reasons.
- **`hierarchyns.config`**: `Config` decides which namespaces are managed
  (`set_namespaces`, `why_unmanaged`, `is_managed_namespace`) and which
  label and annotation keys may be managed (`set_managed_meta`,
  `is_managed_label`, `is_managed_annotation`). `validate_managed_labels`
  and `validate_managed_annotations` return a list of `FieldError`s;
  `validate_qualified_name` and `validate_label_value` check single keys and
  values.
- **`hierarchyns.forest`**: `Forest` holds `Namespace` objects with their
  parent, children, anchors, conditions, managed labels and annotations,
  tree labels and source objects. It detects cycles (`cycle_names`,
  `can_set_parent`) and reports halted ancestors (`get_halted_root`).
  Use `with forest:` to hold its lock. `build_forest` builds a small forest
  from a compact description: character *i* describes namespace
  `chr(ord('a') + i)`, `-` makes it a root and a letter names its parent.
- **`hierarchyns.validator`**: `Validator.handle(Request)` returns a
  `Response` with `allowed`, an HTTP-style `code` (401, 403, 409, 422, 500,
  503) and a `message`. Authorization and existence checks are delegated to
  an optional `ServerClient` (an abstract class with `exists` and
  `is_admin`); without one they are skipped. `Validator.server_checks`
  lists the checks a parent change needs. Requests from users in the group
  `system:serviceaccounts:<POD_NAMESPACE>` (default `hnc-system`) are always
  allowed.
- **`hierarchyns.reconciler`**: `Reconciler` syncs the namespaces,
  hierarchy configurations and anchors held by an `InMemoryClient` with the
  forest: tree-depth labels, managed labels and annotations, the
  included-namespace label, finalizers, children and conditions such as
  `ParentMissing`, `IllegalParent`, `InCycle` and
  `SubnamespaceAnchorMissing`. Namespaces affected by a change are queued;
  `take_affected` returns them and `reconcile_until_stable` keeps
  reconciling until the queue is empty. With `read_only=True` nothing is
  written back.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from hierarchyns.api import SINGLETON, HierarchyConfiguration, NamespaceObject
from hierarchyns.config import Config
from hierarchyns.forest import Forest
from hierarchyns.reconciler import InMemoryClient, Reconciler

client = InMemoryClient()
for name in ("foo", "bar"):
    ns = NamespaceObject()
    ns.metadata.name = name
    client.create_namespace(ns)

hc = HierarchyConfiguration()
hc.metadata.name = SINGLETON
hc.metadata.namespace = "bar"
hc.spec.parent = "foo"
client.create_hierarchy(hc)

reconciler = Reconciler(client=client, forest=Forest(), config=Config())
reconciler.reconcile_until_stable("foo", "bar")

print(client.get_hierarchy("foo").status.children)   # ['bar']
print(client.get_namespace("bar").metadata.labels["foo.tree.hnc.x-k8s.io/depth"])  # '1'
```

Validating a change against the current forest:

```python
from hierarchyns.api import HierarchyConfiguration
from hierarchyns.forest import build_forest
from hierarchyns.validator import Request, Validator

forest = build_forest("-a-")          # a <- b; c
validator = Validator(forest=forest)
hc = HierarchyConfiguration()
hc.metadata.namespace = "a"
hc.spec.parent = "b"
response = validator.handle(Request(hc=hc))
print(response.allowed, response.code)   # False 409 (illegal parent: cycle)
```

## What it does not do

- It does not talk to a cluster. `InMemoryClient` is the only storage, and
  no `ServerClient` implementation is included; supply your own for real
  authorization and existence checks.
- It runs no admission webhook server and no watch loop; callers invoke
  `Validator.handle` and `Reconciler.reconcile` themselves.
- It installs no commands; it is a library.