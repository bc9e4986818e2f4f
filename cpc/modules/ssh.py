"""
Remote command execution over SSH (paramiko).
"""
import logging
import os
import socket
from typing import Optional, Tuple

import paramiko

from cpc.errors import FatalError, TransientError

logger = logging.getLogger("cpc.ssh")


class RemoteShell:
    """Opens a short-lived SSH session per command."""

    def __init__(
        self,
        username: str,
        key_path: Optional[str] = None,
        port: int = 22,
        connect_timeout: int = 10,
        command_timeout: int = 60,
    ):
        self.username = username
        self.key_path = os.path.expanduser(key_path) if key_path else None
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    def _client(self, host: str) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # Freshly provisioned VMs reuse addresses; host keys are not pinned
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=self.port,
                username=self.username,
                key_filename=self.key_path,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=self.key_path is None,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise FatalError(
                f"SSH authentication to {self.username}@{host} failed",
                hint="Check ANSIBLE_REMOTE_USER and CPC_SSH_KEY_PATH",
            ) from e
        except (paramiko.SSHException, socket.error, socket.timeout) as e:
            client.close()
            raise TransientError(f"SSH connection to {host} failed: {e}") from e
        return client

    def run(self, host: str, command: str, timeout: Optional[int] = None) -> Tuple[int, str, str]:
        """Run ``command`` on ``host``; return (exit status, stdout, stderr)."""
        logger.debug(f"💻 [{host}] {command}")
        client = self._client(host)
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout or self.command_timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout) as e:
            raise TransientError(f"SSH command on {host} failed: {e}", command=command) from e
        finally:
            client.close()
        return status, out, err

    def is_reachable(self, host: str) -> bool:
        try:
            status, _, _ = self.run(host, "true", timeout=self.connect_timeout)
        except TransientError as e:
            logger.debug(f"{host} unreachable: {e}")
            return False
        return status == 0

    def file_exists(self, host: str, path: str) -> bool:
        status, _, _ = self.run(host, f"sudo test -f {path}")
        return status == 0

    def read_file(self, host: str, path: str) -> str:
        status, out, err = self.run(host, f"sudo cat {path}")
        if status != 0:
            raise FatalError(f"Could not read {path} on {host}: {err.strip()}", command=f"cat {path}", output=err)
        return out
