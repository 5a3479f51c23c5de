"""
## ignite-fleet - immutable, ignition booted instances

- identity: per ordinal instance id and name
- instance: instance group specification and defaults
- template: jinja and butane rendering of boot configs
- tools: config fingerprint, ssh execution, readiness wait
- snippets: node scoped boot config artifacts
- compute: instance attributes, boot arguments, qm compute provider
- reconcile: create, replace or leave alone every instance of a group
- vm: pulumi components

"""
