import copy

from dynapply.core.applier import ObjectApplier, natural_key
from dynapply.core.last_applied import DEFAULT_ANNOTATION_KEY, get_last_applied, set_last_applied


def _svc(name, ports, **extra):
    obj = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": "default"},
        "spec": {"ports": ports},
    }
    obj.update(extra)
    return obj


def test_apply_one_creates_with_snapshot():
    desired = _svc("web", [{"port": 80}])
    status, obj = ObjectApplier().apply_one(None, desired)
    assert status == "CREATED"
    assert obj["spec"] == desired["spec"]
    assert get_last_applied(obj) == desired
    assert "annotations" not in desired["metadata"]


def test_apply_one_update_then_unchanged():
    applier = ObjectApplier()
    desired = _svc("web", [{"port": 80, "name": "http"}])
    _, created = applier.apply_one(None, desired)

    # another actor adds a port and a cluster IP
    observed = copy.deepcopy(created)
    observed["spec"]["ports"].append({"port": 9090, "name": "metrics"})
    observed["spec"]["clusterIP"] = "10.0.0.7"

    status, same = applier.apply_one(observed, desired)
    assert status == "UNCHANGED"
    assert same == observed

    desired2 = _svc("web", [{"port": 80, "name": "http-v2"}])
    status, updated = applier.apply_one(observed, desired2)
    assert status == "UPDATED"
    assert updated["spec"]["ports"] == [{"port": 80, "name": "http-v2"}, {"port": 9090, "name": "metrics"}]
    assert updated["spec"]["clusterIP"] == "10.0.0.7"
    assert get_last_applied(updated) == desired2


def test_apply_one_strips_echoed_snapshot_from_desired():
    observed = _svc("web", [])
    set_last_applied(observed, {"spec": {"ports": []}})
    desired = copy.deepcopy(observed)
    desired["spec"]["type"] = "NodePort"

    status, obj = ObjectApplier().apply_one(observed, desired)
    assert status == "UPDATED"
    snapshot = get_last_applied(obj)
    assert DEFAULT_ANNOTATION_KEY not in snapshot["metadata"]["annotations"]
    # the input keeps its annotation
    assert DEFAULT_ANNOTATION_KEY in desired["metadata"]["annotations"]


def test_batch_apply_counts_and_isolation():
    applier = ObjectApplier(annotation_key="example.com/last")
    _, existing = applier.apply_one(None, _svc("a", [{"port": 80}]))
    broken = _svc("b", [{"port": 80}])
    set_last_applied(broken, {"spec": {"ports": [{"port": 80}]}}, key="example.com/last")
    broken["spec"] = {"ports": {"port": 80}}  # someone turned the list into a map

    desired = [
        _svc("a", [{"port": 80}]),          # unchanged
        _svc("b", [{"port": 81}]),          # shape error against observed
        _svc("c", [{"port": 82}]),          # created
        "garbage",                          # not an object
    ]
    results, counts = applier.apply([existing, broken], desired)

    assert counts == {"UNCHANGED": 1, "ERROR": 2, "CREATED": 1}
    assert [r.status for r in results] == ["UNCHANGED", "ERROR", "CREATED", "ERROR"]
    assert results[1].ref == "v1:Service:default:b"
    assert "[spec]" in results[1].error
    assert results[1].obj is None
    assert results[2].obj["metadata"]["annotations"]["example.com/last"]


def test_natural_key():
    assert natural_key(_svc("a", [])) == ("v1", "Service", "default", "a")
    assert natural_key({"kind": "X"}) == (None, "X", None, None)


def test_batch_apply_ignores_non_object_observed_items():
    applier = ObjectApplier()
    _, existing = applier.apply_one(None, _svc("a", [{"port": 80}]))
    odd_meta = {"apiVersion": "v1", "kind": "Service", "metadata": "weird"}

    results, counts = applier.apply(["garbage", 42, [1, 2], odd_meta, existing], [_svc("a", [{"port": 80}])])

    assert counts == {"UNCHANGED": 1}
    assert results[0].obj == existing
