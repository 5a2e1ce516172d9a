import pytest

from hierarchyns.api import (
    ANNOTATION_NONE_SELECTOR,
    CONDITION_ACTIVITIES_HALTED,
    LABEL_TREE_DEPTH_SUFFIX,
    MODE_PROPAGATE,
    REASON_ANCESTOR,
    REASON_IN_CYCLE,
    REASON_PARENT_MISSING,
)
from hierarchyns.forest import (
    Forest,
    SourceObject,
    TypeSyncer,
    build_forest,
    should_propagate,
)


def test_get_returns_same_namespace_and_none_for_empty():
    forest = Forest()
    assert forest.get("a") is forest.get("a")
    assert forest.get("") is None
    assert "a" in forest


def test_set_parent_links_child():
    forest = Forest()
    child = forest.get("b")
    child.set_parent(forest.get("a"))
    assert child.parent is forest.get("a")
    assert forest.get("a").child_names() == ["b"]


def test_reparent_moves_child():
    forest = build_forest("-a-")
    b = forest.get("b")
    b.set_parent(forest.get("c"))
    assert forest.get("a").child_names() == []
    assert forest.get("c").child_names() == ["b"]


def test_descendant_names():
    forest = build_forest("-aab")
    assert set(forest.get("a").descendant_names()) == {"b", "c", "d"}
    assert forest.get("b").descendant_names() == ["d"]


def test_ancestry_names():
    forest = build_forest("-ab")
    assert forest.get("c").ancestry_names() == ["a", "b", "c"]
    assert forest.get("a").ancestry_names() == ["a"]


def test_cycle_names():
    assert build_forest("a").get("a").cycle_names() == ["a"]
    cyclic = build_forest("ba")
    assert cyclic.get("a").cycle_names() == ["a", "b"]
    assert build_forest("baa").get("c").cycle_names() is None


def test_build_forest_sets_cycle_condition():
    forest = build_forest("cab")
    for name in "abc":
        ns = forest.get(name)
        assert ns.is_halted()
        assert [c.reason for c in ns.conditions()] == [REASON_IN_CYCLE]
        assert ns.conditions()[0].message.startswith(
            "Namespace is a member of the cycle: "
        )


def test_build_forest_marks_missing_parent():
    forest = build_forest("-z")
    b = forest.get("b")
    assert not forest.get("z").exists()
    assert b.exists()
    assert [c.reason for c in b.conditions()] == [REASON_PARENT_MISSING]
    assert b.get_halted_root() == "b"


def test_halted_ancestor_condition():
    forest = build_forest("z-a")
    c = forest.get("c")
    assert not c.is_halted()
    assert c.get_halted_root() == "a"
    conditions = c.conditions()
    assert conditions[0].type == CONDITION_ACTIVITIES_HALTED
    assert conditions[0].reason == REASON_ANCESTOR
    assert forest.get("b").get_halted_root() == ""


def test_build_forest_rejects_bad_description():
    with pytest.raises(ValueError):
        build_forest("-A")


def test_can_set_parent():
    forest = build_forest("-ab")
    a = forest.get("a")
    assert a.can_set_parent(None) == ""
    assert "own parent" in a.can_set_parent(a)
    assert "cycle" in a.can_set_parent(forest.get("c"))
    other = build_forest("-a-")
    assert other.get("a").can_set_parent(other.get("c")) == ""


def test_is_external():
    ns = Forest().get("a")
    assert not ns.is_external()
    ns.manager = "others"
    assert ns.is_external()


def test_set_and_unset_exists():
    forest = Forest()
    ns = forest.get("a")
    assert ns.set_exists() is True
    assert ns.set_exists() is False
    assert ns.unset_exists() is True
    assert "a" not in forest
    assert forest.get("a") is not ns


def test_placeholder_parent_is_removed_when_orphaned():
    forest = build_forest("-z")
    assert "z" in forest
    forest.get("b").set_parent(None)
    assert "z" not in forest


def test_relatives_names():
    forest = build_forest("-aab")
    assert forest.get("b").relatives_names() == ["a", "d"]
    assert forest.get("a").relatives_names() == ["b", "c"]


def test_clear_and_set_conditions():
    ns = Forest().get("a")
    ns.set_condition(CONDITION_ACTIVITIES_HALTED, REASON_IN_CYCLE, "msg")
    ns.set_condition(CONDITION_ACTIVITIES_HALTED, REASON_IN_CYCLE, "msg")
    assert len(ns.conditions()) == 1
    ns.clear_conditions()
    assert ns.conditions() == []
    assert not ns.is_halted()


def test_labels_and_tree_labels():
    ns = Forest().get("a")
    labels = {
        "x" + LABEL_TREE_DEPTH_SUFFIX: "2",
        "bad" + LABEL_TREE_DEPTH_SUFFIX: "nope",
        "other": "v",
    }
    assert ns.set_labels(labels) is True
    assert ns.set_labels(dict(labels)) is False
    assert ns.labels == labels
    assert ns.tree_labels() == {"x" + LABEL_TREE_DEPTH_SUFFIX: 2}


def test_set_anchors_reports_differences():
    ns = Forest().get("a")
    assert ns.set_anchors(["x", "y"]) == ["x", "y"]
    assert sorted(ns.set_anchors(["y", "z"])) == ["x", "z"]
    assert ns.set_anchors(["y", "z"]) == []
    assert ns.anchors == ["y", "z"]


def test_update_allow_cascading_deletion():
    ns = Forest().get("a")
    assert ns.update_allow_cascading_deletion(True) is True
    assert ns.update_allow_cascading_deletion(True) is False
    assert ns.allow_cascading_deletion is True


def test_source_objects():
    forest = build_forest("-a")
    source_obj = SourceObject("Secret", "s1")
    forest.get("a").set_source_object(source_obj)
    forest.get("b").set_source_object(SourceObject("Secret", "s2"))
    forest.get("b").set_source_object(SourceObject("Secret", "s1"))
    assert source_obj.namespace == "a"
    assert forest.get("a").get_source_object("Secret", "s1") is source_obj
    assert forest.get("a").get_source_object("Secret", "missing") is None
    assert forest.get("b").source_names("Secret") == ["s1", "s2"]
    assert forest.get("b").source_names("ConfigMap") == []
    assert forest.get("b").ancestor_source_names("Secret", "") == [
        ("a", "s1"),
        ("b", "s1"),
        ("b", "s2"),
    ]
    assert forest.get("b").ancestor_source_names("Secret", "s2") == [("b", "s2")]


def test_should_propagate():
    assert should_propagate(SourceObject("Secret", "s")) is True
    none = SourceObject("Secret", "s", annotations={ANNOTATION_NONE_SELECTOR: "true"})
    assert should_propagate(none) is False
    off = SourceObject("Secret", "s", annotations={ANNOTATION_NONE_SELECTOR: "false"})
    assert should_propagate(off) is True
    bad = SourceObject("Secret", "s", annotations={ANNOTATION_NONE_SELECTOR: "maybe"})
    with pytest.raises(ValueError):
        should_propagate(bad)


def test_type_syncers():
    forest = Forest()
    syncer = TypeSyncer("Secret", MODE_PROPAGATE)
    forest.add_type_syncer(syncer)
    assert forest.type_syncers() == [syncer]


def test_listeners_are_called():
    forest = Forest()
    seen = []
    forest.add_listener(seen.append)
    ns = forest.get("a")
    forest.on_change_namespace(ns)
    assert seen == [ns]


def test_forest_context_manager_and_iteration():
    forest = build_forest("-a")
    with forest as locked:
        assert locked is forest
        assert list(locked) == ["a", "b"]
        assert len(locked) == 2