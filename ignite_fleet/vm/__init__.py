"""
## Pulumi - Immutable Ignition booted Instances on Proxmox

### Components

- IgnitedInstanceGroup

### Functions

- load_fleet_config

"""

import os

import pulumi
import pulumi_command as command
from pulumi_command.local import Logging as LocalLogging
from pulumi_command.remote import Logging as RemoteLogging

from ..compute import qm_create_commands, qm_destroy_command, qm_ready_command
from ..instance import fleet_defaults, load_instance_spec
from ..reconcile import desired_instances
from ..snippets import ArtifactPublisher, LocalSnippetStore
from ..template import butane_transpile, join_paths, merge_dict_struct

project_dir = os.getcwd()


def load_fleet_config(name="fleet"):
    """Reads the group config object `name` from the stack config, merged over the defaults.

    Returns:
        tuple[InstanceSpec, dict]:
            The validated spec and the merged config dict, for ssh and storage settings.
    """
    config = pulumi.Config("")
    merged = merge_dict_struct(fleet_defaults(), config.get_object(name) or {})
    return load_instance_spec(merged, defaults={}), merged


class IgnitedInstanceGroup(pulumi.ComponentResource):
    """A group of immutable virtual machines booted from published ignition snippets.

    Per ordinal three resources are declared:
    - the snippet holding the rendered config, with its own lifecycle
    - the vm, cloned and started by `qm`, replaced whenever the config fingerprint changes
    - a bounded wait for the guest agent of the vm
    """

    def __init__(
        self,
        resource_name,
        spec,
        private_key=None,
        hosts=None,
        user="root",
        port=22,
        storage_paths=None,
        simulate=None,
        transpiler=butane_transpile,
        opts=None,
    ):
        """Initializes an IgnitedInstanceGroup component.

        Args:
            resource_name (str):
                The name of the resource.
            spec (InstanceSpec):
                The group specification.
            private_key (pulumi.Input[str], optional):
                The private key for SSH authentication on the nodes.
            hosts (dict, optional):
                Mapping of node name to address. Defaults to connecting to the node name.
            user (str, optional):
                The SSH user on the nodes. Defaults to "root".
            port (int, optional):
                The SSH port. Defaults to 22.
            storage_paths (dict, optional):
                Mapping of storage name to filesystem root. Defaults to `fleet_defaults.yml`.
            simulate (bool, optional):
                Write snippets and qm scripts to `build/tmp/<stack>` instead of executing them.
                If None, it is determined by the stack name. Defaults to None.
            transpiler (callable, optional):
                Butane to ignition transpiler. Defaults to `butane_transpile`.
            opts (pulumi.ResourceOptions, optional):
                The options for the resource. Defaults to None.

        Returns:
            fingerprints (dict):
                Ordinal to config fingerprint of every rendered instance.
            failed (dict):
                Ordinal to render error of every instance that was skipped.
            snippets, vms, ready (dict):
                Ordinal to the declared resources.
        """
        super().__init__(
            "pkg:vm:IgnitedInstanceGroup", "{}_instance_group".format(resource_name), None, opts
        )

        stack_name = pulumi.get_stack()
        simulate = stack_name.endswith("sim") if simulate is None else simulate
        tmpdir = os.path.join(project_dir, "build", "tmp", stack_name)
        hosts = hosts or {}
        storage_paths = storage_paths or fleet_defaults()["storage_paths"]
        publisher = ArtifactPublisher(LocalSnippetStore(tmpdir), storage_paths)

        self.fingerprints = {}
        self.failed = {}
        self.snippets = {}
        self.vms = {}
        self.ready = {}

        connection = None
        if not simulate:
            connection = command.remote.ConnectionArgs(
                host=hosts.get(spec.node, spec.node),
                port=port,
                user=user,
                private_key=private_key,
            )

        for desired in desired_instances(spec, publisher, transpiler=transpiler):
            if desired.error:
                # skip only this ordinal, the others are declared as usual
                pulumi.log.error(
                    "{} ({}) failed at {}: {}".format(
                        desired.name, desired.vmid, desired.error_stage, desired.error
                    ),
                    resource=self,
                )
                self.failed[desired.ordinal] = str(desired.error)
                continue

            prefix = "{}_{}".format(resource_name, desired.vmid)
            self.fingerprints[desired.ordinal] = desired.fingerprint

            if simulate:
                self._declare_simulated(prefix, tmpdir, spec, desired)
            else:
                self._declare_remote(prefix, connection, spec, desired)

        self.result = self.vms
        # output maps need string keys
        self.register_outputs(
            {
                "fingerprints": {str(k): v for k, v in self.fingerprints.items()},
                "failed": {str(k): v for k, v in self.failed.items()},
            }
        )

    def _declare_remote(self, prefix, connection, spec, desired):
        ordinal = desired.ordinal
        cat_cmd = 'x="{}" && mkdir -p $(dirname "$x") && cat - > "$x"'.format(desired.artifact.path)

        # a changed config updates the file in place, the path is removed only
        # when the snippet resource itself is destroyed
        self.snippets[ordinal] = command.remote.Command(
            "{}_snippet".format(prefix),
            connection=connection,
            create=cat_cmd,
            update=cat_cmd,
            delete="rm {} || true".format(desired.artifact.path),
            stdin=desired.config.rendered,
            logging=RemoteLogging.NONE,
            opts=pulumi.ResourceOptions(parent=self),
        )

        # boot args come from stdin, which is not frozen by ignore_changes,
        # so a replacement always boots with the current fingerprint
        self.vms[ordinal] = command.remote.Command(
            "{}_vm".format(prefix),
            connection=connection,
            create=" && ".join(qm_create_commands(desired.attributes, args_from_stdin=True)),
            delete=qm_destroy_command(desired.vmid),
            stdin=desired.attributes["args"],
            triggers=[desired.fingerprint, desired.artifact.path],
            opts=pulumi.ResourceOptions(
                parent=self,
                depends_on=[self.snippets[ordinal]],
                delete_before_replace=True,
                # attribute edits never patch a running instance, only a new fingerprint replaces it
                ignore_changes=["create", "delete"],
            ),
        )

        timeout = int(spec.readiness.get("timeout", 300))
        retry_delay = int(spec.readiness.get("retry_delay", 5))
        self.ready[ordinal] = command.remote.Command(
            "{}_ready".format(prefix),
            connection=connection,
            create="timeout {} sh -c 'until {}; do sleep {}; done'".format(
                timeout, qm_ready_command(desired.vmid), retry_delay
            ),
            triggers=[desired.fingerprint],
            logging=RemoteLogging.STDERR,
            opts=pulumi.ResourceOptions(
                parent=self,
                depends_on=[self.vms[ordinal]],
                custom_timeouts=pulumi.CustomTimeouts(create="{}s".format(timeout + 60)),
            ),
        )

    def _declare_simulated(self, prefix, tmpdir, spec, desired):
        ordinal = desired.ordinal
        os.makedirs(tmpdir, exist_ok=True)
        snippet_file = join_paths(os.path.join(tmpdir, spec.node), desired.artifact.path)
        vm_file = os.path.join(tmpdir, "{}_vm.sh".format(prefix))
        cat_cmd = 'x="{}" && mkdir -p $(dirname "$x") && cat - > "$x"'.format(snippet_file)

        self.snippets[ordinal] = command.local.Command(
            "{}_snippet".format(prefix),
            create=cat_cmd,
            update=cat_cmd,
            delete="rm {} || true".format(snippet_file),
            stdin=desired.config.rendered,
            logging=LocalLogging.NONE,
            opts=pulumi.ResourceOptions(parent=self),
        )
        self.vms[ordinal] = command.local.Command(
            "{}_vm".format(prefix),
            create="cat - > {}".format(vm_file),
            delete="rm {} || true".format(vm_file),
            stdin="\n".join(qm_create_commands(desired.attributes)) + "\n",
            triggers=[desired.fingerprint],
            opts=pulumi.ResourceOptions(
                parent=self,
                depends_on=[self.snippets[ordinal]],
                delete_before_replace=True,
            ),
        )
