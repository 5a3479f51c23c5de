"""
## Instance Group Specification

- f: fleet_defaults
- f: load_instance_spec
- f: normalize_tags
- f: format_tags
- c: InstanceSpec
- c: NetworkSpec
- c: DiskSpec

"""

import os

import yaml

from .template import merge_dict_struct

this_dir = os.path.dirname(os.path.normpath(__file__))


def fleet_defaults():
    "defaults for an instance group from fleet_defaults.yml"
    with open(os.path.join(this_dir, "fleet_defaults.yml"), "r") as f:
        return yaml.safe_load(f)


def normalize_tags(tags):
    """Returns tags as a sorted list of unique, stripped strings.

    Accepts a list or a `;` separated string, the form the platform reports.
    """
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(";")
    return sorted({str(tag).strip() for tag in tags if str(tag).strip()})


def format_tags(tags):
    return ";".join(normalize_tags(tags))


class NetworkSpec:
    """One network interface: bridge, optional vlan tag and mtu."""

    def __init__(self, bridge, tag=None, mtu=None, model="virtio"):
        self.bridge = bridge
        self.tag = tag
        self.mtu = mtu
        self.model = model

    def to_dict(self):
        return {"model": self.model, "bridge": self.bridge, "tag": self.tag, "mtu": self.mtu}


class DiskSpec:
    """One disk declared for the instance, in addition to disks of the clone source.

    `size` is in GiB, either as int or as string with optional `G` suffix.
    """

    def __init__(self, type, storage, size, slot=None, volume=None, file=None, format=None):
        self.type = type
        self.storage = storage
        self.size = size
        self.slot = slot
        self.volume = volume
        self.file = file
        self.format = format

    @property
    def size_gb(self):
        return int(str(self.size).upper().rstrip("B").rstrip("G"))

    def to_dict(self):
        return {
            "type": self.type,
            "storage": self.storage,
            "size": self.size,
            "slot": self.slot,
            "volume": self.volume,
            "file": self.file,
            "format": self.format,
        }


class InstanceSpec:
    """Desired state of a group of immutable instances.

    Attributes:
        base_id (int): id of the first instance.
        base_name (str): name of the group.
        count (int): number of instances.
        node (str): target node.
        clone (int): id of the template the instances are cloned from.
        cores, sockets, memory, cpu: resource shape, sockets is always 1.
        networks (list[NetworkSpec]): ordered network interfaces.
        disks (list[DiskSpec]): ordered additional disks.
        tags (list[str]): tags, normalized to a sorted list.
        description (str): free text, never compared after creation.
        template (str): primary butane template, relative to basedir.
        overlays (list[str]): overlay templates, merged in list order.
        parameters (dict): user parameters for the templates.
        basedir (str): template search path.
        snippet_storage (str): storage backend holding the boot config artifact.
        readiness (dict): `timeout` and `retry_delay` in seconds.
    """

    def __init__(
        self,
        base_id,
        base_name,
        count,
        node,
        clone,
        template,
        cores=2,
        sockets=1,
        memory=2048,
        cpu="host",
        networks=None,
        disks=None,
        tags=None,
        description="",
        overlays=None,
        parameters=None,
        basedir=".",
        snippet_storage="local",
        readiness=None,
    ):
        self.base_id = base_id
        self.base_name = base_name
        self.count = count
        self.node = node
        self.clone = clone
        self.template = template
        self.cores = cores
        self.sockets = sockets
        self.memory = memory
        self.cpu = cpu
        self.networks = networks or []
        self.disks = disks or []
        self.tags = normalize_tags(tags)
        self.description = description
        self.overlays = overlays or []
        self.parameters = parameters or {}
        self.basedir = basedir
        self.snippet_storage = snippet_storage
        self.readiness = readiness or {"timeout": 300, "retry_delay": 5}

    def __repr__(self):
        return "InstanceSpec(base_id={}, base_name={!r}, count={})".format(
            self.base_id, self.base_name, self.count
        )


def load_instance_spec(config, defaults=None):
    """Validates a plain dictionary and converts it to an InstanceSpec.

    The dictionary is merged over `fleet_defaults.yml` (or `defaults`) first.

    Args:
        config (dict):
            The group configuration, eg. from yaml or a pulumi config object.
        defaults (dict, optional):
            Defaults to merge under config. Defaults to `fleet_defaults()`.

    Returns:
        InstanceSpec:
            The validated specification.

    Raises:
        ValueError:
            If a required key is missing or a value is out of range.
    """
    merged = merge_dict_struct(fleet_defaults() if defaults is None else defaults, config)

    for key in ["base_id", "base_name", "clone", "template"]:
        if merged.get(key) is None:
            raise ValueError("missing required key: {}".format(key))

    base_id = int(merged["base_id"])
    count = int(merged.get("count", 1))
    if base_id < 0:
        raise ValueError("base_id must be >= 0, got {}".format(base_id))
    if count < 1:
        raise ValueError("count must be >= 1, got {}".format(count))
    if not str(merged["base_name"]):
        raise ValueError("base_name must not be empty")
    if int(merged.get("sockets", 1)) != 1:
        raise ValueError("sockets is fixed at 1")

    model = merged.get("network_model", "virtio")
    networks = []
    for entry in merged.get("networks", []):
        if "bridge" not in entry:
            raise ValueError("network entry without bridge: {}".format(entry))
        networks.append(
            NetworkSpec(
                entry["bridge"],
                tag=entry.get("tag"),
                mtu=entry.get("mtu"),
                model=entry.get("model", model),
            )
        )

    disks = []
    for entry in merged.get("disks", []):
        for key in ["type", "storage", "size"]:
            if key not in entry:
                raise ValueError("disk entry without {}: {}".format(key, entry))
        disk = DiskSpec(
            entry["type"],
            entry["storage"],
            entry["size"],
            slot=entry.get("slot"),
            volume=entry.get("volume"),
            file=entry.get("file"),
            format=entry.get("format"),
        )
        try:
            size_gb = disk.size_gb
        except ValueError:
            size_gb = 0
        if size_gb < 1:
            raise ValueError(
                "disk size must be a positive number of GiB, got: {}".format(entry["size"])
            )
        disks.append(disk)

    return InstanceSpec(
        base_id=base_id,
        base_name=str(merged["base_name"]),
        count=count,
        node=merged["node"],
        clone=merged["clone"],
        template=merged["template"],
        cores=int(merged.get("cores", 2)),
        sockets=1,
        memory=int(merged.get("memory", 2048)),
        cpu=merged.get("cpu", "host"),
        networks=networks,
        disks=disks,
        tags=merged.get("tags"),
        description=merged.get("description", ""),
        overlays=list(merged.get("overlays", [])),
        parameters=merged.get("parameters", {}),
        basedir=merged.get("basedir", "."),
        snippet_storage=merged.get("snippet_storage", "local"),
        readiness=merged.get("readiness"),
    )
