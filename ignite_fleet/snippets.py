"""
## Boot Config Artifacts - Node Scoped Snippets

The rendered boot configuration of an instance is stored as a snippet file
on the node the instance runs on, at a path derived from the instance id.
Snippets live independently of the instance, destroying an instance never
removes its snippet.

- f: snippet_filename
- f: snippet_path
- f: snippet_volume
- c: Artifact
- c: ArtifactPublisher
- c: LocalSnippetStore
- c: SSHSnippetStore
- e: PublishError

"""

import os

import paramiko
import pulumi

from .template import join_paths


class PublishError(Exception):
    """Writing a boot config artifact failed."""


def snippet_filename(vmid):
    return "{}.ign".format(vmid)


def snippet_path(storage_paths, storage, vmid):
    """Filesystem path of the snippet of vmid on storage.

    Args:
        storage_paths (dict):
            Mapping of storage name to its filesystem root, eg. `{"local": "/var/lib/vz"}`.
        storage (str):
            The storage backend name.
        vmid (int):
            The instance id.

    Raises:
        ValueError:
            If the storage has no configured filesystem root.
    """
    if storage not in storage_paths:
        raise ValueError("no filesystem path configured for storage: {}".format(storage))
    return join_paths(storage_paths[storage], "snippets", snippet_filename(vmid))


def snippet_volume(storage, vmid):
    "platform volume id of the snippet of vmid"
    return "{}:snippets/{}".format(storage, snippet_filename(vmid))


class Artifact:
    """A published boot config artifact.

    Attributes:
        node (str): node the artifact is stored on.
        path (str): filesystem path on the node.
        volume (str): volume id of the artifact.
        changed (bool): True if the stored content was created or replaced.
    """

    def __init__(self, node, path, volume, changed):
        self.node = node
        self.path = path
        self.volume = volume
        self.changed = changed

    def __repr__(self):
        return "Artifact(node={!r}, path={!r}, changed={})".format(
            self.node, self.path, self.changed
        )


class LocalSnippetStore:
    """Snippet store on the local filesystem, one subdirectory per node.

    Used for simulation and for nodes sharing a mounted snippet directory.
    """

    def __init__(self, root_dir):
        self.root_dir = root_dir

    def _path(self, node, path):
        return join_paths(os.path.join(self.root_dir, node), path)

    def read(self, node, path):
        try:
            with open(self._path(node, path), "r", newline="") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def write(self, node, path, data):
        target = self._path(node, path)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        # newline="" keeps the payload byte identical
        with open(target, "w", newline="") as f:
            f.write(data)

    def remove(self, node, path):
        try:
            os.remove(self._path(node, path))
        except FileNotFoundError:
            pass


class SSHSnippetStore:
    """Snippet store on remote nodes, accessed by sftp through an `SSHRunner`."""

    def __init__(self, runner):
        self.runner = runner

    def read(self, node, path):
        return self.runner.read_file(node, path)

    def write(self, node, path, data):
        self.runner.write_file(node, path, data)

    def remove(self, node, path):
        self.runner.remove_file(node, path)


class ArtifactPublisher:
    """Publishes rendered boot configurations as node scoped snippets.

    Args:
        store:
            A snippet store with `read`, `write` and `remove`.
        storage_paths (dict):
            Mapping of storage name to its filesystem root.
    """

    def __init__(self, store, storage_paths):
        self.store = store
        self.storage_paths = storage_paths

    def locate(self, node, storage, vmid):
        "the Artifact of vmid, without touching the store"
        return Artifact(
            node, snippet_path(self.storage_paths, storage, vmid), snippet_volume(storage, vmid), False
        )

    def publish(self, node, storage, vmid, rendered):
        """Creates or overwrites the snippet of vmid with rendered, verbatim.

        Returns:
            Artifact:
                The published artifact, `changed` is False if the stored
                content was already identical.

        Raises:
            PublishError:
                If the snippet could not be read or written.
        """
        try:
            artifact = self.locate(node, storage, vmid)
            current = self.store.read(node, artifact.path)
            if current != rendered:
                self.store.write(node, artifact.path, rendered)
                artifact.changed = True
        except (OSError, ValueError, paramiko.SSHException) as e:
            raise PublishError(
                "publish of {} on {} failed: {}".format(snippet_filename(vmid), node, e)
            ) from e
        if artifact.changed:
            pulumi.log.info("published {} on {}".format(artifact.path, node))
        return artifact

    def remove(self, node, storage, vmid):
        """Removes the snippet of vmid. Never called as part of instance destruction."""
        artifact = self.locate(node, storage, vmid)
        try:
            self.store.remove(node, artifact.path)
        except (OSError, paramiko.SSHException) as e:
            raise PublishError(
                "remove of {} on {} failed: {}".format(artifact.path, node, e)
            ) from e
        return artifact
