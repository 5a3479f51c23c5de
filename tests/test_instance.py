import pytest

from ignite_fleet.instance import (
    fleet_defaults,
    format_tags,
    load_instance_spec,
    normalize_tags,
)


def test_normalize_tags_sorts_and_deduplicates():
    assert normalize_tags(["web", "coreos", " web "]) == ["coreos", "web"]
    assert normalize_tags("web;coreos;") == ["coreos", "web"]
    assert normalize_tags(None) == []


def test_format_tags_is_order_independent():
    assert format_tags({"b", "a"}) == format_tags(["a", "b"]) == "a;b"


def test_defaults_are_merged(group_config):
    del group_config["cores"]
    spec = load_instance_spec(group_config)
    assert spec.cores == fleet_defaults()["cores"]
    assert spec.node == "pve"
    assert spec.snippet_storage == "local"


def test_spec_is_normalized(group_spec):
    assert group_spec.tags == ["coreos", "web"]
    assert group_spec.sockets == 1
    assert [n.to_dict() for n in group_spec.networks] == [
        {"model": "virtio", "bridge": "vmbr0", "tag": 109, "mtu": None}
    ]
    assert group_spec.disks[0].size_gb == 8
    assert group_spec.overlays == ["overlay.bu"]


@pytest.mark.parametrize("key", ["base_id", "base_name", "clone", "template"])
def test_missing_required_key(group_config, key):
    del group_config[key]
    with pytest.raises(ValueError, match=key):
        load_instance_spec(group_config)


@pytest.mark.parametrize(
    "update",
    [
        {"base_id": -1},
        {"count": 0},
        {"base_name": ""},
        {"sockets": 2},
        {"networks": [{"tag": 5}]},
        {"disks": [{"type": "scsi", "size": 4}]},
        {"disks": [{"type": "scsi", "storage": "local-lvm", "size": "512M"}]},
        {"disks": [{"type": "scsi", "storage": "local-lvm", "size": "1T"}]},
        {"disks": [{"type": "scsi", "storage": "local-lvm", "size": 0}]},
    ],
)
def test_invalid_values(group_config, update):
    group_config.update(update)
    with pytest.raises(ValueError):
        load_instance_spec(group_config)
