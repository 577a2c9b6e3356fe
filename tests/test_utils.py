import json
import logging

import pytest

from vmlb.resources import NotFoundError
from vmlb.utils import (
    KEY_VLAN_LABEL,
    get_subdirectories,
    get_vid,
    new_selector,
    parse_from_file,
    set_log_level,
)


class FakeNADCache:
    def __init__(self, nads):
        self._nads = nads

    def get(self, namespace, name):
        try:
            return self._nads[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"{namespace}/{name}") from None


@pytest.fixture
def restore_root_level():
    root = logging.getLogger()
    saved = root.level
    yield
    root.setLevel(saved)


def test_set_log_level_known_and_unknown(restore_root_level):
    assert set_log_level("warn") == logging.WARNING
    assert logging.getLogger().level == logging.WARNING
    assert set_log_level("ERROR") == logging.ERROR
    assert set_log_level("nonsense") == logging.DEBUG
    assert logging.getLogger().level == logging.DEBUG


def test_selector_matches_any_listed_value():
    selector = new_selector({"harvesterhci.io/vmName": ["vm1", "vm2"], "app": ["web"]})
    assert selector.matches({"harvesterhci.io/vmName": "vm2", "app": "web"})
    assert not selector.matches({"harvesterhci.io/vmName": "vm3", "app": "web"})
    assert not selector.matches({"app": "web"})


def test_empty_selector_matches_everything():
    selector = new_selector({})
    assert selector.matches({})
    assert selector.matches({"any": "thing"})


def test_selector_string_is_sorted():
    selector = new_selector({"b": ["y", "x"], "a": ["z"]})
    assert str(selector) == "a in (z),b in (x,y)"


@pytest.mark.parametrize("selector", [{"bad key!": ["v"]}, {"a/b/c": ["v"]}, {"app": []}, {"app": ["-bad"]}])
def test_invalid_selector_raises(selector):
    with pytest.raises(ValueError):
        new_selector(selector)


def test_get_subdirectories(tmp_path):
    (tmp_path / "case2").mkdir()
    (tmp_path / "case1").mkdir()
    (tmp_path / "case1" / "nested").mkdir()
    (tmp_path / "file.yaml").write_text("x: 1\n")
    assert get_subdirectories(tmp_path) == ["case1", "case2"]


def test_get_subdirectories_of_file_and_missing(tmp_path):
    target = tmp_path / "file.yaml"
    target.write_text("x: 1\n")
    assert get_subdirectories(target) == []
    with pytest.raises(FileNotFoundError):
        get_subdirectories(tmp_path / "missing")


def test_get_vid_empty_network():
    assert get_vid("", FakeNADCache({})) == 0


def test_get_vid_from_label():
    cache = FakeNADCache({("default", "net"): {"metadata": {"labels": {KEY_VLAN_LABEL: "100"}}}})
    assert get_vid("default/net", cache) == 100


def test_get_vid_from_config():
    cache = FakeNADCache({("default", "net"): {"spec": {"config": json.dumps({"vlan": 42})}}})
    assert get_vid("default/net", cache) == 42


def test_get_vid_config_without_vlan():
    cache = FakeNADCache({("default", "net"): {"spec": {"config": json.dumps({"type": "bridge"})}}})
    assert get_vid("default/net", cache) == 0


def test_get_vid_errors():
    cache = FakeNADCache(
        {
            ("default", "badlabel"): {"metadata": {"labels": {KEY_VLAN_LABEL: "abc"}}},
            ("default", "badconfig"): {"spec": {"config": "not json"}},
        }
    )
    with pytest.raises(ValueError, match="invalid network"):
        get_vid("default", cache)
    with pytest.raises(ValueError, match="invalid vlan abc"):
        get_vid("default/badlabel", cache)
    with pytest.raises(ValueError):
        get_vid("default/badconfig", cache)
    with pytest.raises(NotFoundError):
        get_vid("default/missing", cache)


def test_parse_from_file_multiple_documents(tmp_path):
    path = tmp_path / "cache.yaml"
    path.write_text(
        "---\n"
        "apiVersion: v1\n"
        "kind: Namespace\n"
        "metadata:\n"
        "  name: default\n"
        "---\n"
        "apiVersion: loadbalancer.harvesterhci.io/v1beta1\n"
        "kind: IPPool\n"
        "metadata:\n"
        "  name: pool1\n"
    )
    objects = parse_from_file(path)
    assert [obj["kind"] for obj in objects] == ["Namespace", "IPPool"]
    assert objects[1]["metadata"]["name"] == "pool1"


def test_parse_from_file_requires_kind(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("apiVersion: v1\nmetadata:\n  name: x\n")
    with pytest.raises(ValueError):
        parse_from_file(path)