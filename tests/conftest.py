import copy
import functools
import json
import logging
import os
import re
import socketserver
import tempfile
import threading
import time
from pathlib import Path

import paramiko
import pytest
import yaml

from ignite_fleet.compute import ComputeProvider, ProviderError
from ignite_fleet.instance import load_instance_spec
from ignite_fleet.snippets import ArtifactPublisher, LocalSnippetStore
from ignite_fleet.tools import wait_until_ready

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

STORAGE_PATHS = {"local": "/var/lib/vz", "shared": "/mnt/pve/shared"}

BASE_TEMPLATE = """\
variant: fcos
version: 1.6.0
storage:
  files:
    - path: /etc/hostname
      mode: 0644
      contents:
        inline: {{ INSTANCE_NAME }}
    - path: /etc/motd
      contents:
        local: files/motd
    - path: /etc/ignite/instance.env
      contents:
        inline: |
          INSTANCE_ID={{ INSTANCE_ID }}
          INSTANCE_ORDINAL={{ INSTANCE_ORDINAL }}
          INSTANCE_COUNT={{ INSTANCE_COUNT }}
          ROLE={{ ROLE }}
"""

OVERLAY_TEMPLATE = """\
variant: fcos
version: 1.6.0
storage:
  files:
    - path: /etc/motd
      contents:
        inline: overlay motd for {{ HOSTNAME }}
systemd:
  units:
    - name: hello.service
      enabled: true
      contents: |
        [Service]
        ExecStart=/usr/bin/echo {{ INSTANCE_NAME }}
"""

UNDEFINED_TEMPLATE = """\
variant: fcos
version: 1.6.0
storage:
  files:
    - path: /etc/hostname
      contents:
        inline: {{ NOT_A_PARAMETER }}
"""

SECOND_ORDINAL_FAILS_TEMPLATE = """\
variant: fcos
version: 1.6.0
storage:
  files:
    - path: /etc/hostname
      contents:
        inline: {{ INSTANCE_NAME }}{% if INSTANCE_ORDINAL == 1 %}{{ NOT_A_PARAMETER }}{% endif %}
"""


@pytest.fixture(scope="session")
def project_root():
    """Returns the root directory of the ignite-fleet project."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="function")
def template_dir(tmp_path):
    """A template search path with a base template, an overlay and failing templates."""
    basedir = tmp_path / "templates"
    (basedir / "files").mkdir(parents=True)
    (basedir / "files" / "motd").write_text("local motd\n")
    (basedir / "base.bu").write_text(BASE_TEMPLATE)
    (basedir / "overlay.bu").write_text(OVERLAY_TEMPLATE)
    (basedir / "undefined.bu").write_text(UNDEFINED_TEMPLATE)
    (basedir / "second_fails.bu").write_text(SECOND_ORDINAL_FAILS_TEMPLATE)
    return basedir


def passthrough_transpile(butane_yaml, basedir):
    "stands in for the butane binary, deterministic json of the merged yaml"
    return json.dumps(yaml.safe_load(butane_yaml), sort_keys=True, indent=2)


@pytest.fixture(scope="session")
def transpiler():
    return passthrough_transpile


@pytest.fixture(scope="function")
def group_config(template_dir):
    """Configuration of a three instance group, as read from a stack config."""
    return {
        "base_id": 10,
        "base_name": "x",
        "count": 3,
        "node": "pve",
        "clone": 9000,
        "template": "base.bu",
        "overlays": ["overlay.bu"],
        "basedir": str(template_dir),
        "cores": 2,
        "memory": 2048,
        "networks": [{"bridge": "vmbr0", "tag": 109}],
        "disks": [{"type": "scsi", "storage": "local-lvm", "size": "8G"}],
        "tags": ["web", "coreos"],
        "description": "test group",
        "parameters": {"ROLE": "web"},
        "readiness": {"timeout": 30, "retry_delay": 5},
    }


@pytest.fixture(scope="function")
def group_spec(group_config):
    return load_instance_spec(group_config)


@pytest.fixture(scope="function")
def snippet_store(tmp_path):
    return LocalSnippetStore(str(tmp_path / "nodes"))


@pytest.fixture(scope="session")
def storage_paths():
    return dict(STORAGE_PATHS)


@pytest.fixture(scope="function")
def publisher(snippet_store, storage_paths):
    return ArtifactPublisher(snippet_store, storage_paths)


class FakeClock:
    "time source advancing only when slept on"

    def __init__(self):
        self.now = 0.0

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


@pytest.fixture(scope="function")
def fast_wait():
    clock = FakeClock()
    return functools.partial(wait_until_ready, sleep=clock.sleep, clock=clock.time)


class FakeComputeProvider(ComputeProvider):
    """In memory compute platform.

    Records every call, fails operations listed in `failures` with a
    ProviderError, and captures the snippet content an instance would boot
    from at creation time.
    """

    def __init__(self, store=None):
        self.store = store
        self.instances = {}
        self.calls = []
        self.failures = {}
        self.boot_configs = {}
        self.not_ready = set()
        self.lock = threading.Lock()

    def _record(self, operation, vmid):
        with self.lock:
            self.calls.append((operation, vmid))
        if (operation, vmid) in self.failures:
            raise ProviderError(self.failures[(operation, vmid)])

    def operations(self, *kinds):
        return [call for call in self.calls if call[0] in kinds]

    def get_instance(self, node, vmid):
        self._record("get", vmid)
        with self.lock:
            observed = self.instances.get(vmid)
            return copy.deepcopy(observed) if observed else None

    def create_instance(self, node, attrs):
        vmid = attrs["vmid"]
        self._record("create", vmid)
        with self.lock:
            if vmid in self.instances:
                raise ProviderError("instance {} already exists".format(vmid))
            self.instances[vmid] = copy.deepcopy(attrs)
        if self.store is not None:
            match = re.search(r"file=((?:,,|[^,\s])+)", attrs["args"])
            self.boot_configs[vmid] = self.store.read(node, match.group(1).replace(",,", ","))

    def destroy_instance(self, node, vmid):
        self._record("destroy", vmid)
        with self.lock:
            if vmid not in self.instances:
                raise ProviderError("instance {} does not exist".format(vmid))
            del self.instances[vmid]

    def is_ready(self, node, vmid):
        self._record("ready", vmid)
        return vmid not in self.not_ready


@pytest.fixture(scope="function")
def provider(snippet_store):
    return FakeComputeProvider(snippet_store)


class SSHServerHandler(paramiko.ServerInterface):
    def __init__(self, server):
        self.server = server
        self.event = threading.Event()
        self.exit_status = None
        self.stderr = b""

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_auth_publickey(self, username, key):
        return paramiko.AUTH_SUCCESSFUL

    def get_allowed_auths(self, username):
        return "publickey"

    def check_channel_exec_request(self, channel, command):
        command_str = command.decode("utf-8")
        logging.info(f"SSHServer: Received exec request: {command_str}")

        match = re.fullmatch(r"qm agent (\d+) ping", command_str)
        if match:
            # mimic qm agent ping, exit status 0 only if the guest agent answers
            vmid = int(match.group(1))
            with self.server.agents_lock:
                agent_up = vmid in self.server.agents
            if agent_up:
                logging.info(f"SSHServer: Agent of {vmid} answers. Returning exit status 0.")
                self.exit_status = 0
            else:
                logging.info(f"SSHServer: Agent of {vmid} not running. Returning exit status 2.")
                self.stderr = b"QEMU guest agent is not running\n"
                self.exit_status = 2
        else:
            logging.info(
                f"SSHServer: Unknown exec request ({command_str}). Returning exit status 5."
            )
            self.exit_status = 5

        # the reply is sent by the connection handler once the request is acknowledged
        self.event.set()
        return True


class ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class ParamikoSSHServer:
    """SSH server on a cluster node, answering guest agent pings of its instances."""

    def __init__(self, host, port, host_key_path):
        self.host = host
        self.port = port
        self.host_key_path = host_key_path
        self.startup_delay = 0
        self.server = None
        self.server_thread = None
        self.agents = set()
        self.agents_lock = threading.Lock()
        self.server_started = threading.Event()
        self.is_available = threading.Event()

    def _server_lifecycle(self):
        class Handler(socketserver.BaseRequestHandler):
            def handle(this_handler):
                if not self.is_available.is_set():
                    logging.info("SSHServer: Connection refused as server is unavailable.")
                    this_handler.request.close()
                    return

                transport = paramiko.Transport(this_handler.request)
                transport.add_server_key(paramiko.RSAKey(filename=self.host_key_path))
                server_interface = SSHServerHandler(self)
                transport.start_server(server=server_interface)
                channel = transport.accept(20)
                if channel is None:
                    logging.warning("SSHServer: No channel accepted.")
                    return
                if server_interface.event.wait(10):
                    if server_interface.stderr:
                        channel.send_stderr(server_interface.stderr)
                    channel.send_exit_status(server_interface.exit_status)
                    channel.shutdown_write()
                    # the client reads the reply and closes the connection first
                    deadline = time.monotonic() + 5
                    while transport.is_active() and time.monotonic() < deadline:
                        time.sleep(0.05)
                channel.close()
                transport.close()

        self.server = ThreadedTCPServer((self.host, self.port), Handler)
        self.port = self.server.server_address[1]
        self.server_started.set()
        logging.info(f"SSH server listening on {self.host}:{self.port}")
        self.server.serve_forever()

    def start(self):
        self.server_thread = threading.Thread(target=self._server_lifecycle)
        self.server_thread.daemon = True
        self.server_thread.start()
        if not self.server_started.wait(timeout=10):
            raise RuntimeError("SSH server failed to start in time.")

        if self.startup_delay <= 0:
            self.is_available.set()
            return

        def delayed_availability():
            time.sleep(self.startup_delay)
            logging.info("Server is now available.")
            self.is_available.set()

        threading.Thread(target=delayed_availability, daemon=True).start()

    def stop(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
        if self.server_thread:
            self.server_thread.join(timeout=2)
        logging.info("SSH server stopped.")

    def start_agent(self, vmid):
        with self.agents_lock:
            logging.info(f"SSHServer: Guest agent of {vmid} started")
            self.agents.add(vmid)


@pytest.fixture(scope="function")
def robust_ssh_server():
    tempdir = tempfile.TemporaryDirectory()
    private_key_path = os.path.join(tempdir.name, "id_rsa_test")
    paramiko.RSAKey.generate(2048).write_private_key_file(private_key_path)

    server = ParamikoSSHServer("127.0.0.1", 0, private_key_path)
    yield server
    server.stop()
    tempdir.cleanup()
