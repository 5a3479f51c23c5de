"""
## Compute Provider - Instance Attributes, Boot Arguments, qm over SSH

### Attributes
- f: instance_attributes
- f: attribute_drift
- p: TRACKED_ATTRIBUTES, IGNORED_ATTRIBUTES

### Boot Arguments
- f: qemu_opt_escape
- f: ignition_boot_args
- f: boot_args_fingerprint

### qm
- f: qm_create_commands
- f: qm_destroy_command
- f: qm_ready_command
- f: parse_qm_config

### Providers
- c: ComputeProvider
- c: QmComputeProvider
- e: ProviderError

"""

import re
import shlex

import paramiko

from .instance import normalize_tags

# compared against observed state and reported as tolerated drift
TRACKED_ATTRIBUTES = ["name", "cores", "sockets", "memory", "cpu", "networks", "tags"]
# may change outside of this tool without being reported
IGNORED_ATTRIBUTES = ["description", "disks"]

IGNITION_FW_CFG_NAME = "opt/com.coreos/config"
FINGERPRINT_FW_CFG_NAME = "opt/ignite-fleet/fingerprint"

DISK_TYPES = ["scsi", "virtio", "sata", "ide"]


class ProviderError(Exception):
    """A compute platform operation failed.

    Attributes:
        command (str): the failed command, if any.
        stderr (str): error output of the platform.
    """

    def __init__(self, message, command=None, stderr=""):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


def qemu_opt_escape(value):
    "double every `,` so qemu does not read it as an option separator"
    return str(value).replace(",", ",,")


def ignition_boot_args(artifact_path, fingerprint):
    """Qemu arguments delivering the artifact and recording its fingerprint.

    The ignition config is passed as a fw_cfg file, the fingerprint as a
    fw_cfg string, so the replacement key is stored on the instance itself.
    """
    return "-fw_cfg name={},file={} -fw_cfg name={},string={}".format(
        IGNITION_FW_CFG_NAME,
        qemu_opt_escape(artifact_path),
        FINGERPRINT_FW_CFG_NAME,
        qemu_opt_escape(fingerprint),
    )


def boot_args_fingerprint(args):
    "the fingerprint recorded in boot args, None if there is none"
    if not args:
        return None
    match = re.search(
        r"name={},string=((?:,,|[^,\s])+)".format(re.escape(FINGERPRINT_FW_CFG_NAME)), args
    )
    if not match:
        return None
    return match.group(1).replace(",,", ",")


def network_value(net):
    "qm netX value of a network dict"
    parts = [net.get("model") or "virtio", "bridge={}".format(net["bridge"])]
    if net.get("tag") is not None:
        parts.append("tag={}".format(net["tag"]))
    if net.get("mtu") is not None:
        parts.append("mtu={}".format(net["mtu"]))
    return ",".join(parts)


def parse_network(value):
    """Parses a qm netX value into a network dict.

    The leading `model[=macaddr]` is split, unknown options are dropped.
    """
    items = value.split(",")
    net = {"model": items[0].split("=")[0], "bridge": None, "tag": None, "mtu": None}
    for item in items[1:]:
        if "=" not in item:
            continue
        key, val = item.split("=", 1)
        if key == "bridge":
            net["bridge"] = val
        elif key in ["tag", "mtu"]:
            net[key] = int(val)
    return net


def _network_key(net):
    return (net.get("bridge"), net.get("tag"), net.get("mtu"))


def disk_entries(disks):
    """qm disk keys and values of disk descriptors.

    Disks without slot get the next slot of their type starting at 1, slot 0
    is left to the boot disk of the clone source.
    """
    entries = []
    next_slot = {}
    for disk in disks:
        if disk.slot is not None:
            slot = disk.slot
        else:
            slot = next_slot.get(disk.type, 1)
        next_slot[disk.type] = max(next_slot.get(disk.type, 1), int(slot) + 1)

        if disk.volume:
            value = disk.volume
        elif disk.file:
            value = "{}:{}".format(disk.storage, disk.file)
        else:
            value = "{}:{}".format(disk.storage, disk.size_gb)
        if disk.format:
            value += ",format={}".format(disk.format)
        entries.append({"key": "{}{}".format(disk.type, slot), "value": value})
    return entries


def instance_attributes(spec, vmid, name, artifact_path, fingerprint):
    """Desired attributes of one instance of spec, in canonical form.

    Args:
        spec (InstanceSpec):
            The group specification.
        vmid (int):
            The instance id.
        name (str):
            The instance name.
        artifact_path (str):
            Filesystem path of the published boot config on the node.
        fingerprint (str):
            Fingerprint of the boot config, the replacement key.

    Returns:
        dict:
            The attribute dict understood by `ComputeProvider.create_instance`.
    """
    return {
        "vmid": vmid,
        "name": name,
        "node": spec.node,
        "clone": spec.clone,
        "full_clone": False,
        "cores": spec.cores,
        "sockets": 1,
        "memory": spec.memory,
        "cpu": spec.cpu,
        "networks": [net.to_dict() for net in spec.networks],
        "disks": disk_entries(spec.disks),
        "tags": normalize_tags(spec.tags),
        "description": spec.description,
        "args": ignition_boot_args(artifact_path, fingerprint),
        "agent": 1,
        "replace_trigger": fingerprint,
    }


def attribute_drift(desired, observed):
    """Names of tracked attributes where observed differs from desired.

    Tags compare as sorted sequences, networks by bridge, tag and mtu.
    Attributes in IGNORED_ATTRIBUTES are never compared.
    """
    drift = []
    for key in TRACKED_ATTRIBUTES:
        want = desired.get(key)
        have = observed.get(key)
        if key == "tags":
            want, have = normalize_tags(want), normalize_tags(have)
        elif key == "networks":
            want = [_network_key(n) for n in want or []]
            have = [_network_key(n) for n in have or []]
        if want != have:
            drift.append(key)
    return drift


def qm_create_commands(attrs, args_from_stdin=False):
    """qm command lines that clone, configure and start an instance.

    With `args_from_stdin` the boot args are read from stdin of the `qm set`
    command instead of being part of the command line.
    """
    vmid = attrs["vmid"]
    commands = [
        "qm clone {} {} --name {} --full {}".format(
            attrs["clone"], vmid, shlex.quote(attrs["name"]), 1 if attrs["full_clone"] else 0
        )
    ]

    options = [
        "--cores {}".format(attrs["cores"]),
        "--sockets {}".format(attrs["sockets"]),
        "--memory {}".format(attrs["memory"]),
        "--cpu {}".format(shlex.quote(attrs["cpu"])),
        "--agent enabled={}".format(attrs["agent"]),
    ]
    for nr, net in enumerate(attrs["networks"]):
        options.append("--net{} {}".format(nr, shlex.quote(network_value(net))))
    for disk in attrs["disks"]:
        options.append("--{} {}".format(disk["key"], shlex.quote(disk["value"])))
    if attrs["tags"]:
        options.append("--tags {}".format(shlex.quote(";".join(attrs["tags"]))))
    if attrs["description"]:
        options.append("--description {}".format(shlex.quote(attrs["description"])))
    options.append(
        "--args {}".format('"$(cat)"' if args_from_stdin else shlex.quote(attrs["args"]))
    )

    commands.append("qm set {} {}".format(vmid, " ".join(options)))
    commands.append("qm start {}".format(vmid))
    return commands


def qm_destroy_command(vmid):
    return "qm stop {vmid} --timeout 60 ; qm destroy {vmid} --purge 1".format(vmid=vmid)


def qm_ready_command(vmid):
    "exits 0 if the guest agent of vmid answers"
    return "qm agent {} ping".format(vmid)


def parse_qm_config(text):
    """Parses the output of `qm config` into canonical attributes.

    Only the attributes this tool manages are returned, plus the
    replacement key recorded in the boot args.
    """
    raw = {}
    for line in text.splitlines():
        if ": " not in line or line.startswith("#"):
            continue
        key, value = line.split(": ", 1)
        raw[key.strip()] = value.strip()

    networks = []
    for key in sorted(k for k in raw if re.fullmatch(r"net\d+", k)):
        networks.append(parse_network(raw[key]))
    disks = [
        {"key": key, "value": raw[key]}
        for key in sorted(raw)
        if re.fullmatch(r"({})\d+".format("|".join(DISK_TYPES)), key)
    ]

    def as_int(key, default=None):
        return int(raw[key]) if key in raw else default

    return {
        "name": raw.get("name"),
        "cores": as_int("cores", 1),
        "sockets": as_int("sockets", 1),
        "memory": as_int("memory"),
        "cpu": raw.get("cpu"),
        "networks": networks,
        "disks": disks,
        "tags": normalize_tags(raw.get("tags")),
        "description": raw.get("description", ""),
        "args": raw.get("args", ""),
        "replace_trigger": boot_args_fingerprint(raw.get("args", "")),
    }


class ComputeProvider:
    """Contract of a compute platform.

    Implementations raise `ProviderError` for any failed platform operation
    and never retry on their own.
    """

    def get_instance(self, node, vmid):
        "canonical attributes of vmid, None if it does not exist"
        raise NotImplementedError

    def create_instance(self, node, attrs):
        raise NotImplementedError

    def destroy_instance(self, node, vmid):
        raise NotImplementedError

    def is_ready(self, node, vmid):
        "True if the in-guest agent of vmid reports ready"
        raise NotImplementedError


class QmComputeProvider(ComputeProvider):
    """Compute provider executing the Proxmox `qm` cli on cluster nodes.

    Args:
        runner:
            Object with `run(node, cmdline) -> (exit_status, stdout, stderr)`,
            eg. `SSHRunner`.
    """

    def __init__(self, runner):
        self.runner = runner

    def _run(self, node, cmdline):
        try:
            return self.runner.run(node, cmdline)
        except (OSError, paramiko.SSHException) as e:
            raise ProviderError("{}: {}".format(node, e), command=cmdline) from e

    def _check(self, node, cmdline):
        exit_status, stdout, stderr = self._run(node, cmdline)
        if exit_status != 0:
            raise ProviderError(
                "{}: '{}' failed with exit status {}: {}".format(
                    node, cmdline, exit_status, stderr.strip()
                ),
                command=cmdline,
                stderr=stderr,
            )
        return stdout

    def get_instance(self, node, vmid):
        cmdline = "qm config {}".format(vmid)
        exit_status, stdout, stderr = self._run(node, cmdline)
        if exit_status != 0:
            if "does not exist" in stderr:
                return None
            raise ProviderError(
                "{}: '{}' failed: {}".format(node, cmdline, stderr.strip()),
                command=cmdline,
                stderr=stderr,
            )
        return parse_qm_config(stdout)

    def create_instance(self, node, attrs):
        for cmdline in qm_create_commands(attrs):
            self._check(node, cmdline)

    def destroy_instance(self, node, vmid):
        self._check(node, qm_destroy_command(vmid))

    def is_ready(self, node, vmid):
        exit_status, stdout, stderr = self._run(node, qm_ready_command(vmid))
        return exit_status == 0
