import json

import pulumi


class FleetMocks(pulumi.runtime.Mocks):
    "records every declared resource, outputs mirror the inputs"

    def __init__(self):
        self.resources = {}

    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        self.resources[args.name] = (args.typ, args.inputs)
        return [args.name + "_id", args.inputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        return {}


mocks = FleetMocks()
pulumi.runtime.set_mocks(mocks, preview=False)

from ignite_fleet import vm  # noqa: E402
from ignite_fleet.instance import load_instance_spec  # noqa: E402


@pulumi.runtime.test
def test_group_declares_snippet_vm_and_readiness(group_spec, transpiler):
    group = vm.IgnitedInstanceGroup(
        "web", group_spec, private_key="dummy", simulate=False, transpiler=transpiler
    )
    assert sorted(group.vms) == [0, 1, 2]
    assert sorted(group.fingerprints) == [0, 1, 2]
    assert group.failed == {}

    def check(args):
        snippet_stdin, vm_triggers, vm_create, vm_stdin, vm_delete, ready_create = args
        assert json.loads(snippet_stdin)["storage"]
        assert vm_triggers == [group.fingerprints[1], "/var/lib/vz/snippets/11.ign"]
        assert vm_create.startswith("qm clone 9000 11 --name x-2 --full 0 && qm set 11 ")
        assert "--tags 'coreos;web'" in vm_create
        # boot args are passed on stdin, a replacement always carries the current ones
        assert '--args "$(cat)"' in vm_create
        assert "file=/var/lib/vz/snippets/11.ign" in vm_stdin
        assert group.fingerprints[1] in vm_stdin
        assert vm_delete == "qm stop 11 --timeout 60 ; qm destroy 11 --purge 1"
        assert "qm agent 11 ping" in ready_create

        # a changed config rewrites the snippet in place instead of replacing it
        snippet_inputs = mocks.resources["web_11_snippet"][1]
        assert "triggers" not in snippet_inputs
        assert snippet_inputs["update"] == snippet_inputs["create"]

    return pulumi.Output.all(
        group.snippets[1].stdin,
        group.vms[1].triggers,
        group.vms[1].create,
        group.vms[1].stdin,
        group.vms[1].delete,
        group.ready[1].create,
    ).apply(check)


@pulumi.runtime.test
def test_group_skips_ordinal_that_fails_to_render(group_config, transpiler):
    group_config.update({"template": "second_fails.bu", "overlays": []})
    group = vm.IgnitedInstanceGroup(
        "flaky",
        load_instance_spec(group_config),
        private_key="dummy",
        simulate=False,
        transpiler=transpiler,
    )
    assert sorted(group.vms) == [0, 2]
    assert list(group.failed) == [1]
    assert "NOT_A_PARAMETER" in group.failed[1]
    assert "flaky_11_vm" not in mocks.resources


@pulumi.runtime.test
def test_simulated_group_writes_local_files(group_spec, transpiler, tmp_path, monkeypatch):
    monkeypatch.setattr(vm, "project_dir", str(tmp_path))
    group = vm.IgnitedInstanceGroup("sim", group_spec, simulate=True, transpiler=transpiler)

    def check(create):
        assert "/var/lib/vz/snippets/10.ign" in create
        assert create.startswith('x="{}'.format(tmp_path))
        snippet_inputs = mocks.resources["sim_10_snippet"][1]
        assert "triggers" not in snippet_inputs
        assert snippet_inputs["update"] == create

    return group.snippets[0].create.apply(check)


@pulumi.runtime.test
def test_load_fleet_config(group_config):
    pulumi.runtime.set_config("project:fleet", json.dumps(group_config))
    spec, merged = vm.load_fleet_config()
    assert (spec.base_id, spec.base_name, spec.count) == (10, "x", 3)
    assert merged["storage_paths"] == {"local": "/var/lib/vz"}
    assert merged["ssh"]["user"] == "root"
