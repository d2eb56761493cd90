import dataclasses
import errno
import os
import socket
import threading

import paramiko
import pytest

from miotywatch import transport
from miotywatch.transport import (
    LEGACY_RSA_DISABLED,
    CommandFailed,
    LocalRunner,
    RemoteTimeout,
    SftpFetcher,
    SshExecutor,
    TransferFailed,
    TransportError,
    check_identity,
    open_client,
    run_process,
)

from conftest import run

XML_PATH = "/home/root/mioty_bs/mioty_bs_config.xml"


def fake_process(result, seen=None):
    async def _run(argv, timeout_s, input_bytes=None):
        if seen is not None:
            seen.append((list(argv), timeout_s, input_bytes))
        if isinstance(result, BaseException):
            raise result
        return result(argv) if callable(result) else result

    return _run


# =========================== fakes ===========================================


class FakeChannel:
    def __init__(self, exit_code=0):
        self.exit_code = exit_code
        self.timeout = None

    def recv_exit_status(self):
        return self.exit_code

    def settimeout(self, timeout):
        self.timeout = timeout


class FakeStream:
    def __init__(self, data, channel):
        self.data = data
        self.channel = channel

    def read(self):
        return self.data


class FakeSftp:
    def __init__(self, files=None, error=None):
        self.files = files or {}
        self.error = error
        self.channel = FakeChannel()
        self.closed = False

    def get_channel(self):
        return self.channel

    def get(self, remote_path, local_path):
        if self.error is not None:
            raise self.error
        with open(local_path, "wb") as handle:
            handle.write(self.files[remote_path])

    def close(self):
        self.closed = True


class FakeClient:
    """Stands in for a connected paramiko.SSHClient.

    `commands` maps a command to (exit_code, stdout, stderr) or an exception.
    """

    def __init__(self, commands=None, sftp=None, block=False):
        self.commands = commands or {}
        self.sftp = sftp
        self.block = block
        self.released = threading.Event()
        self.exec_calls = []
        self.closed = False

    def exec_command(self, command, timeout=None):
        self.exec_calls.append((command, timeout))
        if self.block:
            self.released.wait(5)
            raise EOFError()
        result = self.commands[command]
        if isinstance(result, BaseException):
            raise result
        code, out, err = result
        channel = FakeChannel(code)
        return None, FakeStream(out, channel), FakeStream(err, channel)

    def open_sftp(self):
        if self.sftp is None:
            raise paramiko.SSHException("Channel closed.")
        if isinstance(self.sftp, BaseException):
            raise self.sftp
        return self.sftp

    def close(self):
        self.closed = True
        self.released.set()


def connector(client):
    seen = []

    def connect(settings, address):
        seen.append(address)
        if isinstance(client, BaseException):
            raise client
        return client

    connect.seen = seen
    return connect


class RecordingSSHClient:
    instances = []

    def __init__(self, error=None):
        self.error = error
        self.policy = None
        self.kwargs = None
        self.closed = False
        RecordingSSHClient.instances.append(self)

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed = True


@pytest.fixture
def ssh_client_class(monkeypatch):
    RecordingSSHClient.instances = []
    monkeypatch.setattr(transport.paramiko, "SSHClient", RecordingSSHClient)
    return RecordingSSHClient


# =========================== connect =========================================


def test_connect_offers_only_the_configured_key(settings, ssh_client_class):
    client = open_client(settings, "172.30.1.2")

    assert isinstance(client.policy, paramiko.AutoAddPolicy)
    assert client.kwargs["hostname"] == "172.30.1.2"
    assert client.kwargs["port"] == 22
    assert client.kwargs["username"] == "root"
    assert client.kwargs["key_filename"] == settings.ssh_key
    assert client.kwargs["allow_agent"] is False
    assert client.kwargs["look_for_keys"] is False
    assert client.kwargs["timeout"] == 5
    assert client.kwargs["disabled_algorithms"] is None


def test_connect_ignores_operator_ssh_config(settings, ssh_client_class, tmp_path, monkeypatch):
    home = tmp_path / "home"
    (home / ".ssh").mkdir(parents=True)
    (home / ".ssh" / "config").write_text("Host *\n    IdentityFile /keys/other\n")
    monkeypatch.setenv("HOME", str(home))

    client = open_client(settings, "10.0.0.2")
    assert client.kwargs["key_filename"] == settings.ssh_key


def test_connect_legacy_rsa_signatures(settings, ssh_client_class):
    client = open_client(dataclasses.replace(settings, ssh_legacy_rsa=True), "10.0.0.1")
    assert client.kwargs["disabled_algorithms"] == LEGACY_RSA_DISABLED


@pytest.mark.parametrize(
    "error",
    [
        paramiko.AuthenticationException("Authentication failed."),
        paramiko.ssh_exception.NoValidConnectionsError(
            {("10.0.0.1", 22): ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")}
        ),
        socket.timeout("timed out"),
    ],
)
def test_connect_failure_is_transport_error(settings, monkeypatch, error):
    created = []

    def factory():
        client = RecordingSSHClient(error)
        created.append(client)
        return client

    monkeypatch.setattr(transport.paramiko, "SSHClient", factory)
    with pytest.raises(TransportError, match="ssh to 10.0.0.1 failed"):
        open_client(settings, "10.0.0.1")
    assert created[0].closed is True


def test_check_identity_reports_missing_key(tmp_path):
    ok, detail = check_identity(str(tmp_path / "missing"))
    assert ok is False
    assert "ssh-keygen" in detail


# =========================== ssh =============================================


def test_execute_returns_stripped_stdout(settings):
    client = FakeClient({"systemctl is-active mioty_bs": (0, b"  active\n", b"")})
    connect = connector(client)
    out = run(SshExecutor(settings, connect).execute("10.0.0.1", "systemctl is-active mioty_bs"))

    assert out == "active"
    assert connect.seen == ["10.0.0.1"]
    assert client.exec_calls == [("systemctl is-active mioty_bs", 300.0)]
    assert client.closed is True


def test_execute_nonzero_is_command_failed(settings):
    client = FakeClient({"systemctl is-active mioty_bs": (3, b"inactive\n", b"")})
    with pytest.raises(CommandFailed) as excinfo:
        run(SshExecutor(settings, connector(client)).execute("10.0.0.1", "systemctl is-active mioty_bs"))
    assert excinfo.value.exit_code == 3
    assert client.closed is True


def test_execute_unreachable_is_transport_error(settings):
    connect = connector(TransportError("ssh to 10.0.0.1 failed: NoValidConnectionsError"))
    with pytest.raises(TransportError):
        run(SshExecutor(settings, connect).execute("10.0.0.1", "true"))


def test_execute_session_drop_is_transport_error(settings):
    client = FakeClient({"true": paramiko.SSHException("SSH session not active")})
    with pytest.raises(TransportError, match="session lost"):
        run(SshExecutor(settings, connector(client)).execute("10.0.0.1", "true"))


def test_execute_without_exit_status_is_transport_error(settings):
    client = FakeClient({"true": (-1, b"", b"")})
    with pytest.raises(TransportError):
        run(SshExecutor(settings, connector(client)).execute("10.0.0.1", "true"))


def test_execute_channel_timeout(settings):
    client = FakeClient({"true": socket.timeout()})
    with pytest.raises(RemoteTimeout):
        run(SshExecutor(settings, connector(client)).execute("10.0.0.1", "true"))


def test_execute_stalled_session_is_closed_on_timeout(settings):
    quick = dataclasses.replace(settings, ssh_command_timeout_s=0.2)
    client = FakeClient(block=True)
    with pytest.raises(RemoteTimeout, match="0.2s"):
        run(SshExecutor(quick, connector(client)).execute("10.0.0.1", "sleep 600"))
    assert client.closed is True


# =========================== fetch ===========================================


def test_fetch_returns_bytes_and_cleans_up(settings, tmp_path):
    tmp_root = tmp_path / "work"
    tmp_root.mkdir()
    sftp = FakeSftp({XML_PATH: b"<c/>"})
    client = FakeClient(sftp=sftp)

    data = run(SftpFetcher(settings, tmp_root=str(tmp_root), connect=connector(client)).fetch("10.0.0.1", XML_PATH))

    assert data == b"<c/>"
    assert os.listdir(tmp_root) == []
    assert sftp.channel.timeout == 600.0
    assert sftp.closed is True
    assert client.closed is True


def test_fetch_permission_denied_is_transfer_failed(settings, tmp_path):
    sftp = FakeSftp(error=PermissionError(errno.EACCES, "Permission denied"))
    fetcher = SftpFetcher(settings, tmp_root=str(tmp_path), connect=connector(FakeClient(sftp=sftp)))

    with pytest.raises(TransferFailed, match="Permission denied") as excinfo:
        run(fetcher.fetch("10.0.0.1", XML_PATH))
    assert not isinstance(excinfo.value, TransportError)
    assert excinfo.value.exit_code == errno.EACCES
    assert os.listdir(tmp_path) == []


def test_fetch_missing_file_is_transfer_failed(settings, tmp_path):
    sftp = FakeSftp(error=FileNotFoundError(errno.ENOENT, "No such file"))
    fetcher = SftpFetcher(settings, tmp_root=str(tmp_path), connect=connector(FakeClient(sftp=sftp)))
    with pytest.raises(TransferFailed):
        run(fetcher.fetch("10.0.0.1", XML_PATH))
    assert os.listdir(tmp_path) == []


def test_fetch_falls_back_to_cat_without_sftp_server(settings, tmp_path):
    client = FakeClient({f"cat {XML_PATH}": (0, b"<c/>", b"")})
    fetcher = SftpFetcher(settings, tmp_root=str(tmp_path), connect=connector(client))

    assert run(fetcher.fetch("10.0.0.1", XML_PATH)) == b"<c/>"
    assert client.exec_calls == [(f"cat {XML_PATH}", 600.0)]
    assert os.listdir(tmp_path) == []


def test_cat_fallback_permission_denied_is_transfer_failed(settings, tmp_path):
    client = FakeClient({f"cat {XML_PATH}": (1, b"", f"cat: can't open '{XML_PATH}': Permission denied".encode())})
    fetcher = SftpFetcher(settings, tmp_root=str(tmp_path), connect=connector(client))
    with pytest.raises(TransferFailed, match="Permission denied"):
        run(fetcher.fetch("10.0.0.1", XML_PATH))
    assert os.listdir(tmp_path) == []


def test_fetch_unreachable_is_transport_error(settings, tmp_path):
    connect = connector(TransportError("ssh to 10.0.0.1 failed: timeout: timed out"))
    with pytest.raises(TransportError):
        run(SftpFetcher(settings, tmp_root=str(tmp_path), connect=connect).fetch("10.0.0.1", "/x.xml"))
    assert os.listdir(tmp_path) == []


def test_fetch_timeout_cleans_up(settings, tmp_path):
    sftp = FakeSftp(error=socket.timeout())
    fetcher = SftpFetcher(settings, tmp_root=str(tmp_path), connect=connector(FakeClient(sftp=sftp)))
    with pytest.raises(RemoteTimeout):
        run(fetcher.fetch("10.0.0.1", "/x.xml"))
    assert os.listdir(tmp_path) == []


# =========================== local ===========================================


def test_local_runner_prefixes_sudo_and_feeds_stdin(settings, monkeypatch):
    seen = []
    monkeypatch.setattr(transport, "run_process", fake_process((0, "ok\n", ""), seen))
    out = run(LocalRunner(settings).run(["tee", "/etc/x"], privileged=True, input_text="hello"))
    assert out == "ok\n"
    argv, _timeout, input_bytes = seen[0]
    assert argv == ["sudo", "-n", "tee", "/etc/x"]
    assert input_bytes == b"hello"


def test_local_runner_nonzero_is_command_failed(settings, monkeypatch):
    monkeypatch.setattr(transport, "run_process", fake_process((10, "", "Error: unknown connection")))
    with pytest.raises(CommandFailed, match="unknown connection"):
        run(LocalRunner(settings).run(["nmcli", "connection", "up", "mioty"]))


# =========================== process =========================================


def test_run_process_collects_exit_code_and_output():
    code, out, err = run(run_process(["sh", "-c", "echo hi; echo oops >&2; exit 3"], 10))
    assert (code, out, err) == (3, "hi\n", "oops\n")


def test_run_process_kills_on_timeout():
    with pytest.raises(RemoteTimeout):
        run(run_process(["sleep", "5"], 0.2))
