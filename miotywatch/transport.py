"""
Command transport: paramiko sessions to the EdgeCard and local host commands.

Every call is a single awaitable with its own timeout. Failures are raised
as RemoteFault subclasses; callers do their own activity logging.

Remote calls open one SSHClient each, authenticate with the configured key
only, and accept whatever host key the card presents. The blocking paramiko
work runs on the default executor so a slow card stalls only its own cycle.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import socket
import tempfile
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

import paramiko

from .config import Settings

log = logging.getLogger(__name__)

SSH_PORT = 22

# old dropbear builds only verify ssh-rsa (SHA-1) signatures
LEGACY_RSA_DISABLED = {"pubkeys": ["rsa-sha2-512", "rsa-sha2-256"]}

T = TypeVar("T")
Connect = Callable[[Settings, str], paramiko.SSHClient]


# ---- Faults -------------------------------------------------------------------


class RemoteFault(Exception):
    """Base class for every transport-level failure."""


class TransportError(RemoteFault):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CommandFailed(RemoteFault):
    def __init__(self, exit_code: int, stderr_text: str = "") -> None:
        super().__init__(f"exit code {exit_code}: {stderr_text}".rstrip(": "))
        self.exit_code = exit_code
        self.stderr_text = stderr_text


class TransferFailed(RemoteFault):
    def __init__(self, exit_code: int, stderr_text: str = "") -> None:
        super().__init__(f"transfer failed with exit code {exit_code}: {stderr_text}".rstrip(": "))
        self.exit_code = exit_code
        self.stderr_text = stderr_text


class RemoteTimeout(RemoteFault):
    def __init__(self, label: str, timeout_s: float) -> None:
        super().__init__(f"{label} timed out after {timeout_s:g}s")
        self.timeout_s = timeout_s


# ---- Process helper -------------------------------------------------------------


async def run_process(
    argv: Sequence[str],
    timeout_s: float,
    input_bytes: Optional[bytes] = None,
) -> Tuple[int, str, str]:
    """Run argv to completion and return (exit_code, stdout, stderr).

    Raises RemoteTimeout after killing the process, and lets OSError from the
    spawn itself (missing binary) propagate.
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if input_bytes is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(input_bytes), timeout=timeout_s)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise RemoteTimeout(argv[0], timeout_s) from None
    return (
        proc.returncode if proc.returncode is not None else -1,
        out.decode("utf-8", errors="replace"),
        err.decode("utf-8", errors="replace"),
    )


# ---- SSH sessions -------------------------------------------------------------


def check_identity(path: str) -> Tuple[bool, str]:
    """Validate the private key up front so a missing key is reported once, clearly."""
    if not os.path.exists(path):
        return False, (
            f"SSH private key not found at {path}. Generate one with "
            f"`ssh-keygen -t rsa -b 2048 -f {path} -N \"\"` and install the public key on the EdgeCard."
        )
    try:
        key = paramiko.RSAKey.from_private_key_file(path)
    except paramiko.PasswordRequiredException:
        return False, f"SSH private key {path} is passphrase protected; batch mode needs an unencrypted key."
    except (OSError, paramiko.SSHException) as exc:
        return False, f"SSH private key {path} is unusable: {type(exc).__name__}: {exc}"
    return True, key.fingerprint


def open_client(settings: Settings, address: str) -> paramiko.SSHClient:
    """Connect as settings.ssh_user with settings.ssh_key and nothing else."""
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            hostname=address,
            port=SSH_PORT,
            username=settings.ssh_user,
            key_filename=settings.ssh_key,
            timeout=settings.ssh_connect_timeout_s,
            banner_timeout=settings.ssh_connect_timeout_s,
            auth_timeout=settings.ssh_connect_timeout_s,
            allow_agent=False,
            look_for_keys=False,
            disabled_algorithms=LEGACY_RSA_DISABLED if settings.ssh_legacy_rsa else None,
        )
    except (paramiko.SSHException, OSError) as exc:
        client.close()
        raise TransportError(f"ssh to {address} failed: {type(exc).__name__}: {exc}") from exc
    return client


def _exec(client: paramiko.SSHClient, command: str, timeout_s: float) -> Tuple[int, bytes, bytes]:
    try:
        _stdin, stdout, stderr = client.exec_command(command, timeout=timeout_s)
        out = stdout.read()
        err = stderr.read()
        code = stdout.channel.recv_exit_status()
    except socket.timeout as exc:
        raise RemoteTimeout("ssh", timeout_s) from exc
    except (paramiko.SSHException, EOFError, OSError) as exc:
        raise TransportError(f"session lost: {type(exc).__name__}: {exc}") from exc
    if code == -1:
        raise TransportError("session closed before the command exited")
    return code, out, err


async def call_remote(
    connect: Connect,
    settings: Settings,
    address: str,
    work: Callable[[paramiko.SSHClient], T],
    timeout_s: float,
    label: str,
) -> T:
    """Run work(client) on a fresh session in a worker thread, bounded by timeout_s.

    On timeout the client is closed, which unblocks the worker.
    """
    clients: List[paramiko.SSHClient] = []

    def _job() -> T:
        client = connect(settings, address)
        clients.append(client)
        try:
            return work(client)
        finally:
            client.close()

    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(None, _job), timeout=timeout_s)
    except asyncio.TimeoutError:
        for client in clients:
            client.close()
        raise RemoteTimeout(label, timeout_s) from None


# ---- Remote command executor ------------------------------------------------------


class SshExecutor:
    def __init__(self, settings: Settings, connect: Connect = open_client) -> None:
        self._settings = settings
        self._connect = connect

    async def execute(self, address: str, command: str) -> str:
        timeout_s = self._settings.ssh_command_timeout_s
        code, out, err = await call_remote(
            self._connect,
            self._settings,
            address,
            lambda client: _exec(client, command, timeout_s),
            timeout_s,
            "ssh",
        )
        if code != 0:
            raise CommandFailed(code, err.decode("utf-8", errors="replace").strip())
        return out.decode("utf-8", errors="replace").strip()


# ---- Remote file fetcher ----------------------------------------------------------


class SftpFetcher:
    """Copies one remote file into a private temp dir and returns its bytes.

    Uses SFTP, or `cat` over the session when the card has no sftp-server.
    The temp dir is created and removed here on every path, so callers never
    see a partial file.
    """

    def __init__(
        self,
        settings: Settings,
        tmp_root: Optional[str] = None,
        connect: Connect = open_client,
    ) -> None:
        self._settings = settings
        self._tmp_root = tmp_root
        self._connect = connect

    def _download(self, client: paramiko.SSHClient, remote_path: str, local_path: str) -> None:
        timeout_s = self._settings.fetch_timeout_s
        try:
            sftp = client.open_sftp()
        except paramiko.SSHException as exc:
            log.debug("No sftp subsystem (%s); reading %s with cat", exc, remote_path)
            self._cat(client, remote_path, local_path, timeout_s)
            return
        try:
            sftp.get_channel().settimeout(timeout_s)
            sftp.get(remote_path, local_path)
        except socket.timeout as exc:
            raise RemoteTimeout("sftp", timeout_s) from exc
        except (paramiko.SSHException, EOFError) as exc:
            raise TransportError(f"session lost: {type(exc).__name__}: {exc}") from exc
        except OSError as exc:
            raise TransferFailed(exc.errno or 1, f"{remote_path}: {exc.strerror or exc}") from exc
        finally:
            sftp.close()

    def _cat(self, client: paramiko.SSHClient, remote_path: str, local_path: str, timeout_s: float) -> None:
        code, out, err = _exec(client, f"cat {shlex.quote(remote_path)}", timeout_s)
        if code != 0:
            raise TransferFailed(code, err.decode("utf-8", errors="replace").strip())
        with open(local_path, "wb") as handle:
            handle.write(out)

    async def fetch(self, address: str, remote_path: str) -> bytes:
        workdir = tempfile.mkdtemp(prefix="miotywatch-", dir=self._tmp_root)
        try:
            local_path = os.path.join(workdir, os.path.basename(remote_path) or "payload")
            await call_remote(
                self._connect,
                self._settings,
                address,
                lambda client: self._download(client, remote_path, local_path),
                self._settings.fetch_timeout_s,
                "sftp",
            )
            with open(local_path, "rb") as handle:
                return handle.read()
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


# ---- Local commands ---------------------------------------------------------------


class LocalRunner:
    """Runs host-side commands (nmcli, ip, install), optionally behind sudo."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def run(
        self,
        argv: Sequence[str],
        *,
        privileged: bool = False,
        input_text: Optional[str] = None,
    ) -> str:
        full = [*self._settings.sudo_argv, *argv] if privileged else list(argv)
        try:
            code, out, err = await run_process(
                full,
                self._settings.local_timeout_s,
                input_text.encode("utf-8") if input_text is not None else None,
            )
        except OSError as exc:
            raise CommandFailed(127, f"{full[0]}: {exc}") from exc
        if code != 0:
            raise CommandFailed(code, (err or out).strip())
        return out
