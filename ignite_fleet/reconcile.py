"""
## Instance Reconciler

For every ordinal of an InstanceSpec: allocate the identity, render the boot
config, fingerprint it, publish it as snippet, then create the instance if it
is absent, leave it alone if its recorded fingerprint is unchanged, or destroy
and recreate it if the fingerprint changed. Instances are never patched.

Ordinals are independent of each other, a failure of one ordinal is reported
with its stage and never affects the others.

- c: InstanceReconciler
- c: DesiredInstance
- c: OrdinalResult
- f: desired_instances
- f: plan_instance
- f: format_report
- f: ssh_reconciler

"""

import concurrent.futures

import pulumi

from .compute import ProviderError, QmComputeProvider, attribute_drift, instance_attributes
from .identity import instance_identities
from .snippets import ArtifactPublisher, PublishError, SSHSnippetStore
from .template import RenderError, butane_transpile, instance_parameters, render_instance_config
from .tools import (
    ReadinessTimeoutError,
    SSHRunner,
    config_fingerprint,
    log_warn,
    wait_until_ready,
)

STAGES = ["render", "publish", "create", "readiness"]
ACTIONS = ["create", "replace", "noop"]


class DesiredInstance:
    """Desired state of one ordinal, a pure function of the InstanceSpec.

    If rendering failed, `error` holds the RenderError and `config`,
    `fingerprint` and `attributes` are None. A storage without configured
    snippet path is reported as PublishError.
    """

    def __init__(self, ordinal, vmid, name, config=None, fingerprint=None, artifact=None,
                 attributes=None, error=None):
        self.ordinal = ordinal
        self.vmid = vmid
        self.name = name
        self.config = config
        self.fingerprint = fingerprint
        self.artifact = artifact
        self.attributes = attributes
        self.error = error

    @property
    def error_stage(self):
        if self.error is None:
            return None
        return "publish" if isinstance(self.error, PublishError) else "render"


class OrdinalResult:
    """Outcome of one ordinal of a reconciliation pass.

    Attributes:
        ordinal (int), vmid (int), name (str): identity of the instance.
        action (str): one of create, replace, noop, None if not planned.
        fingerprint (str): fingerprint of the rendered config.
        status (str): planned, ok, failed or degraded.
        stage (str): failed stage, one of render, publish, create, readiness.
        error (Exception): the error of the failed stage.
        drift (list[str]): tracked attributes that differ and are tolerated.
        artifact_changed (bool): True if the snippet content was written.
    """

    def __init__(self, ordinal, vmid, name, fingerprint=None):
        self.ordinal = ordinal
        self.vmid = vmid
        self.name = name
        self.fingerprint = fingerprint
        self.action = None
        self.status = "planned"
        self.stage = None
        self.error = None
        self.drift = []
        self.artifact_changed = False

    @property
    def ok(self):
        return self.status in ["planned", "ok"]

    def fail(self, stage, error, status="failed"):
        self.status = status
        self.stage = stage
        self.error = error
        pulumi.log.error(
            "{} ({}) {} at {}: {}".format(self.name, self.vmid, status, stage, error)
        )
        return self

    def to_dict(self):
        return {
            "ordinal": self.ordinal,
            "vmid": self.vmid,
            "name": self.name,
            "action": self.action,
            "fingerprint": self.fingerprint,
            "status": self.status,
            "stage": self.stage,
            "error": str(self.error) if self.error else None,
            "drift": list(self.drift),
            "artifact_changed": self.artifact_changed,
        }

    def __repr__(self):
        return "OrdinalResult(ordinal={}, vmid={}, action={}, status={}, stage={})".format(
            self.ordinal, self.vmid, self.action, self.status, self.stage
        )


def desired_instances(spec, publisher, transpiler=butane_transpile):
    """Renders and fingerprints every ordinal of spec.

    A RenderError is captured on its DesiredInstance, the other ordinals
    are rendered regardless.

    Returns:
        list[DesiredInstance]:
            One entry per ordinal, in ordinal order.
    """
    desired = []
    for ordinal, vmid, name in instance_identities(spec.base_id, spec.base_name, spec.count):
        parameters = instance_parameters(spec.parameters, vmid, name, spec.count, ordinal)
        try:
            config = render_instance_config(
                spec.template, spec.overlays, parameters, spec.basedir, transpiler=transpiler
            )
        except RenderError as e:
            desired.append(DesiredInstance(ordinal, vmid, name, error=e))
            continue

        fingerprint = config_fingerprint(config.rendered)
        try:
            artifact = publisher.locate(spec.node, spec.snippet_storage, vmid)
        except ValueError as e:
            desired.append(DesiredInstance(ordinal, vmid, name, error=PublishError(str(e))))
            continue
        attributes = instance_attributes(spec, vmid, name, artifact.path, fingerprint)
        desired.append(
            DesiredInstance(ordinal, vmid, name, config, fingerprint, artifact, attributes)
        )
    return desired


def plan_instance(desired, observed):
    """Decides the action for one ordinal.

    Args:
        desired (DesiredInstance):
            The rendered desired state.
        observed (dict | None):
            Canonical attributes reported by the provider, None if absent.

    Returns:
        tuple[str, list[str]]:
            The action (create, replace or noop) and the tolerated drift.

    Raises:
        ProviderError:
            If the id is taken by an instance without recorded fingerprint,
            which is never destroyed.
    """
    if observed is None:
        return "create", []
    if not observed.get("replace_trigger"):
        raise ProviderError(
            "id {} occupied by unmanaged instance {}".format(desired.vmid, observed.get("name"))
        )
    if observed.get("replace_trigger") != desired.fingerprint:
        return "replace", []
    return "noop", attribute_drift(desired.attributes, observed)


def format_report(results):
    "plain text summary, one line per ordinal"
    lines = []
    for result in results:
        line = "{:>3} {:>6} {:<24} {:<8} {}".format(
            result.ordinal, result.vmid, result.name, result.action or "-", result.status
        )
        if result.stage:
            line += " at {}: {}".format(result.stage, result.error)
        if result.drift:
            line += " (tolerated drift: {})".format(", ".join(result.drift))
        lines.append(line)
    return "\n".join(lines)


class InstanceReconciler:
    """Reconciles instance groups against a compute provider.

    Args:
        provider (ComputeProvider):
            The compute platform.
        publisher (ArtifactPublisher):
            Publishes the rendered boot configs.
        transpiler (callable, optional):
            `transpiler(butane_yaml, basedir) -> str`. Defaults to `butane_transpile`.
        max_workers (int, optional):
            Ordinals reconciled in parallel. Defaults to 4.
        wait (callable, optional):
            Readiness wait, see `wait_until_ready`.
    """

    def __init__(self, provider, publisher, transpiler=butane_transpile, max_workers=4,
                 wait=wait_until_ready):
        self.provider = provider
        self.publisher = publisher
        self.transpiler = transpiler
        self.max_workers = max_workers
        self.wait = wait

    def desired(self, spec):
        return desired_instances(spec, self.publisher, transpiler=self.transpiler)

    def plan(self, spec):
        """The operation list of spec, without changing anything.

        Returns:
            list[OrdinalResult]:
                One result per ordinal with its planned action.
        """
        results = []
        for desired in self.desired(spec):
            result = OrdinalResult(desired.ordinal, desired.vmid, desired.name, desired.fingerprint)
            if desired.error:
                results.append(result.fail(desired.error_stage, desired.error))
                continue
            try:
                observed = self.provider.get_instance(spec.node, desired.vmid)
                result.action, result.drift = plan_instance(desired, observed)
            except ProviderError as e:
                results.append(result.fail("create", e))
                continue
            results.append(result)
        return results

    def reconcile(self, spec):
        """Runs one reconciliation pass over every ordinal of spec.

        Returns:
            list[OrdinalResult]:
                One result per ordinal, in ordinal order.
        """
        desired = self.desired(spec)
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            results = list(executor.map(lambda d: self.reconcile_ordinal(spec, d), desired))
        failed = [r for r in results if not r.ok]
        pulumi.log.info(
            "{}: {} of {} instances reconciled".format(
                spec.base_name, len(results) - len(failed), len(results)
            )
        )
        if failed:
            log_warn(format_report(results))
        return results

    def reconcile_ordinal(self, spec, desired):
        result = OrdinalResult(desired.ordinal, desired.vmid, desired.name, desired.fingerprint)
        if desired.error:
            return result.fail(desired.error_stage, desired.error)

        # the snippet must exist before the instance boots from it
        try:
            artifact = self.publisher.publish(
                spec.node, spec.snippet_storage, desired.vmid, desired.config.rendered
            )
        except PublishError as e:
            return result.fail("publish", e)
        result.artifact_changed = artifact.changed

        try:
            observed = self.provider.get_instance(spec.node, desired.vmid)
            result.action, result.drift = plan_instance(desired, observed)
        except ProviderError as e:
            return result.fail("create", e)

        pulumi.log.info("{} ({}): {}".format(desired.name, desired.vmid, result.action))

        if result.action == "noop":
            if artifact.changed:
                pulumi.log.warn(
                    "{} ({}): snippet content differed and was rewritten".format(
                        desired.name, desired.vmid
                    )
                )
            if result.drift:
                pulumi.log.warn(
                    "{} ({}): tolerated drift in {}".format(
                        desired.name, desired.vmid, ", ".join(result.drift)
                    )
                )
            result.status = "ok"
            return result

        try:
            if result.action == "replace":
                self.provider.destroy_instance(spec.node, desired.vmid)
            self.provider.create_instance(spec.node, desired.attributes)
        except ProviderError as e:
            return result.fail("create", e)

        try:
            self.wait(
                "{} ({})".format(desired.name, desired.vmid),
                lambda: self.provider.is_ready(spec.node, desired.vmid),
                timeout=spec.readiness.get("timeout", 300),
                retry_delay=spec.readiness.get("retry_delay", 5),
            )
        except ReadinessTimeoutError as e:
            return result.fail("readiness", e, status="degraded")

        result.status = "ok"
        return result


def ssh_reconciler(config, private_key, hosts=None, transpiler=butane_transpile):
    """Reconciler executing `qm` and writing snippets on the cluster nodes over SSH.

    Args:
        config (dict):
            The merged fleet config, its `ssh`, `storage_paths` and `max_workers` are used.
        private_key (str):
            The openssh private key for the nodes.
        hosts (dict, optional):
            Mapping of node name to address. Defaults to connecting to the node name.
    """
    ssh = config.get("ssh") or {}
    runner = SSHRunner(
        hosts,
        ssh.get("user", "root"),
        private_key,
        port=ssh.get("port", 22),
        connect_timeout=ssh.get("connect_timeout", 15),
    )
    return InstanceReconciler(
        QmComputeProvider(runner),
        ArtifactPublisher(SSHSnippetStore(runner), config["storage_paths"]),
        transpiler=transpiler,
        max_workers=int(config.get("max_workers", 4)),
    )
