#!/usr/bin/env python
"""
## Tools - Fingerprint, SSH Execute, Readiness Wait, Logging

- f: config_fingerprint
- f: log_warn
- f: load_private_key
- f: wait_until_ready
- c: SSHRunner
- e: ReadinessTimeoutError

"""

import hashlib
import io
import time

import pulumi


class ReadinessTimeoutError(TimeoutError):
    """An instance did not report ready within the bounded wait."""


def log_warn(x):
    """Logs a multi-line string to the Pulumi console with line numbers.

    Can be used with `pulumi.Output.apply` to inspect the resolved value of an output.
    """
    pulumi.log.warn(
        "\n".join(["{}:{}".format(nr + 1, line) for nr, line in enumerate(str(x).splitlines())])
    )


def config_fingerprint(rendered: str) -> str:
    """Content fingerprint of a rendered boot configuration.

    The value only depends on the bytes of `rendered`, it is used to detect a
    changed configuration, not for security.

    Returns:
        str:
            `sha256-<hexdigest>`, the format ignition uses for verification hashes.
    """
    return "sha256-{}".format(hashlib.sha256(rendered.encode("utf-8")).hexdigest())


def load_private_key(private_key_pem):
    """Parses an openssh private key, trying Ed25519 first, then RSA.

    Raises:
        ValueError:
            If the key is neither a valid Ed25519 nor RSA key.
    """
    import paramiko

    try:
        return paramiko.Ed25519Key.from_private_key(io.StringIO(private_key_pem))
    except Exception as ed_e:
        try:
            return paramiko.RSAKey.from_private_key(io.StringIO(private_key_pem))
        except Exception as rsa_e:
            raise ValueError(
                f"Failed to parse private key. Tried Ed25519 (failed: {ed_e}) and RSA (failed: {rsa_e})"
            )


class SSHRunner:
    """Executes commands and transfers files on cluster nodes over SSH.

    Args:
        hosts (dict):
            Mapping of node name to hostname or address. Nodes not in the mapping
            are connected to by their name.
        user (str):
            The username to connect with.
        private_key (str):
            The openssh private key for authentication.
        port (int, optional):
            The SSH port. Defaults to 22.
        connect_timeout (int, optional):
            The connect timeout in seconds. Defaults to 15.
    """

    def __init__(self, hosts, user, private_key, port=22, connect_timeout=15):
        self.hosts = hosts or {}
        self.user = user
        self.pkey = load_private_key(private_key)
        self.port = int(port)
        self.connect_timeout = connect_timeout

    def connect(self, node):
        import paramiko

        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(
            self.hosts.get(node, node),
            port=self.port,
            username=self.user,
            pkey=self.pkey,
            timeout=self.connect_timeout,
        )
        return ssh

    def run(self, node, cmdline, stdin=None):
        """Executes cmdline on node.

        Returns:
            tuple[int, str, str]:
                Exit status, stdout and stderr of the command.
        """
        ssh = self.connect(node)
        try:
            cmd_in, cmd_out, cmd_err = ssh.exec_command(cmdline)
            if stdin is not None:
                cmd_in.write(stdin)
                cmd_in.channel.shutdown_write()
            exit_status = cmd_out.channel.recv_exit_status()
            return (
                exit_status,
                cmd_out.read().decode("utf-8"),
                cmd_err.read().decode("utf-8"),
            )
        finally:
            ssh.close()

    def read_file(self, node, path):
        "content of path on node, None if it does not exist"
        ssh = self.connect(node)
        try:
            sftp = ssh.open_sftp()
            try:
                with sftp.open(path, "r") as f:
                    return f.read().decode("utf-8")
            except FileNotFoundError:
                return None
            finally:
                sftp.close()
        finally:
            ssh.close()

    def write_file(self, node, path, data):
        ssh = self.connect(node)
        try:
            sftp = ssh.open_sftp()
            try:
                with sftp.open(path, "w") as f:
                    f.write(data.encode("utf-8"))
            finally:
                sftp.close()
        finally:
            ssh.close()

    def remove_file(self, node, path):
        ssh = self.connect(node)
        try:
            sftp = ssh.open_sftp()
            try:
                sftp.remove(path)
            except FileNotFoundError:
                pass
            finally:
                sftp.close()
        finally:
            ssh.close()


def wait_until_ready(name, is_ready, timeout=300, retry_delay=5, sleep=time.sleep, clock=time.time):
    """Polls is_ready until it returns True or timeout seconds have passed.

    Exceptions of is_ready count as not ready, the last one is part of the
    timeout error.

    Args:
        name (str):
            Name of the waited for instance, for logging.
        is_ready (callable):
            Returns True if the instance is ready.
        timeout (int, optional):
            Maximum wait in seconds. Defaults to 300.
        retry_delay (int, optional):
            Seconds between checks. Defaults to 5.

    Raises:
        ReadinessTimeoutError:
            If the instance was not ready within timeout.
    """
    last_exception_message = ""
    start_time = clock()
    while clock() - start_time < timeout:
        try:
            if is_ready():
                pulumi.log.info(f"{name} is ready after {clock() - start_time:.2f}s")
                return
        except Exception as e:
            last_exception_message = str(e)
            pulumi.log.info(f"{name} waiting ({clock() - start_time:.2f}s): {e}")
        sleep(retry_delay)

    if last_exception_message:
        raise ReadinessTimeoutError(
            f"Timeout waiting for {name} to report ready. Last error: {last_exception_message}"
        )
    raise ReadinessTimeoutError(f"Timeout waiting for {name} to report ready.")
