"""Transport to deployment targets: SSH + rsync, or the local host.

A transport is bound to one target. It pushes bundles, runs commands and
gives the generation store its small set of file primitives. Remote exit
codes are returned untouched; only failures to reach the target raise.
"""
import hashlib
import os
import shlex
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from gendeploy.core.logger import get_logger
from gendeploy.core.retry import retry
from gendeploy.models.bundle import ConfigBundle
from gendeploy.models.errors import (
    AuthenticationError,
    CommandTimeout,
    TransientTransportError,
    TransportError,
)

logger = get_logger(__name__)

FINGERPRINT_MARKER = ".gendeploy-fingerprint"

# Exit code used by read_text() to tell "missing file" apart from failures
_MISSING_EXIT = 44

AUTH_FAILURE_PATTERNS = (
    "permission denied",
    "host key verification failed",
    "too many authentication failures",
    "no matching host key type",
    "authentication failed",
)

# Failures while connecting: the remote command never started, safe to retry
CONNECT_FAILURE_PATTERNS = (
    "could not resolve hostname",
    "name or service not known",
    "temporary failure in name resolution",
    "connection refused",
    "connection timed out",
    "operation timed out",
    "no route to host",
    "network is unreachable",
    "kex_exchange_identification",
)

# The session dropped after the command may have started; never retried
DISCONNECT_PATTERNS = (
    "broken pipe",
    "connection reset",
    "connection closed by",
    "client_loop: send disconnect",
    "timeout, server not responding",
)


@dataclass
class CommandResult:
    """Exit code and captured output of a command run on a target."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def classify_connection_failure(stderr: str) -> Optional[TransportError]:
    """Map ssh/rsync error output to a transport error, or None if it is not one.

    Only failures to establish the connection come back as
    TransientTransportError. A dropped session is a plain TransportError:
    the command may already have run, so repeating it is not safe.
    """
    text = (stderr or "").lower()
    message = (stderr or "").strip().splitlines()[-1] if (stderr or "").strip() else "connection failed"

    if any(pattern in text for pattern in AUTH_FAILURE_PATTERNS):
        return AuthenticationError(f"Authentication failed: {message}")
    if any(pattern in text for pattern in CONNECT_FAILURE_PATTERNS):
        return TransientTransportError(message)
    if any(pattern in text for pattern in DISCONNECT_PATTERNS):
        return TransportError(f"Connection lost: {message}")
    return None


def file_digest(path: Path) -> str:
    sha256_hash = hashlib.sha256()
    with open(path, "rb") as f:
        for byte_block in iter(lambda: f.read(4096), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


class Transport(ABC):
    """Connection to a single target."""

    def __init__(self, target: str):
        self.target = target

    @property
    @abstractmethod
    def hostname(self) -> str:
        """Host name the orchestrator uses for network probes."""

    @abstractmethod
    def exec(
        self,
        command: str,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a shell command on the target.

        Raises:
            TransportError: Target unreachable or command timed out
        """

    @abstractmethod
    def push(self, bundle: ConfigBundle, dest_dir: str) -> bool:
        """Sync a bundle to dest_dir on the target.

        Returns:
            True if files were transferred, False if the target already
            held this fingerprint
        """

    def ping(self) -> bool:
        """Check the target answers. Raises TransportError when it does not."""
        return self.exec("true").ok

    def path_exists(self, path: str) -> bool:
        return self.exec(f"test -e {shlex.quote(path)}").ok

    def read_text(self, path: str) -> Optional[str]:
        """Return file content, or None if the file does not exist."""
        quoted = shlex.quote(path)
        result = self.exec(f"test -e {quoted} || exit {_MISSING_EXIT}; cat {quoted}")
        if result.exit_code == _MISSING_EXIT:
            return None
        if not result.ok:
            raise TransportError(f"Cannot read {path} on {self.target}: {result.stderr.strip()}")
        return result.stdout

    def write_text_atomic(self, path: str, content: str) -> None:
        """Replace a file by writing a sibling temp file and renaming it."""
        quoted = shlex.quote(path)
        temp = shlex.quote(f"{path}.tmp.{os.getpid()}")
        parent = shlex.quote(os.path.dirname(path) or ".")
        result = self.exec(
            f"mkdir -p {parent} && cat > {temp} && mv -f {temp} {quoted}",
            input_text=content,
        )
        if not result.ok:
            raise TransportError(f"Cannot write {path} on {self.target}: {result.stderr.strip()}")

    def append_text(self, path: str, content: str) -> None:
        quoted = shlex.quote(path)
        parent = shlex.quote(os.path.dirname(path) or ".")
        result = self.exec(f"mkdir -p {parent} && cat >> {quoted}", input_text=content)
        if not result.ok:
            raise TransportError(f"Cannot append to {path} on {self.target}: {result.stderr.strip()}")

    def remote_fingerprint(self, dest_dir: str) -> Optional[str]:
        marker = self.read_text(f"{dest_dir.rstrip('/')}/{FINGERPRINT_MARKER}")
        return marker.strip() if marker else None


class SSHTransport(Transport):
    """Reach a target with the system ssh and rsync binaries (key-based only)."""

    def __init__(
        self,
        host: str,
        user: Optional[str] = None,
        port: Optional[int] = None,
        identity_file: Optional[str] = None,
        connect_timeout: int = 10,
        retries: int = 3,
        retry_delay: float = 2.0,
        sudo: bool = False,
        target: Optional[str] = None,
    ):
        super().__init__(target or host)
        self.host = host
        self.user = user
        self.port = port
        self.identity_file = identity_file
        self.connect_timeout = connect_timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.sudo = sudo

    @property
    def hostname(self) -> str:
        return self.host

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def ssh_command(self) -> List[str]:
        """Base ssh invocation; password prompts are disabled."""
        cmd = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "PasswordAuthentication=no",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        if self.port:
            cmd.extend(["-p", str(self.port)])
        if self.identity_file:
            cmd.extend(["-i", str(Path(self.identity_file).expanduser())])
        return cmd

    def _remote(self, command: str) -> str:
        if self.sudo:
            return f"sudo -n sh -c {shlex.quote(command)}"
        return command

    def _with_retry(self, func, *args):
        return retry(
            max_attempts=self.retries,
            delay=self.retry_delay,
            exceptions=(TransientTransportError,),
        )(func)(*args)

    def exec(
        self,
        command: str,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        argv = self.ssh_command() + [self.destination, self._remote(command)]
        return self._with_retry(self._run_ssh, argv, command, input_text, timeout)

    def _run_ssh(
        self,
        argv: List[str],
        label: str,
        input_text: Optional[str],
        timeout: Optional[float],
    ) -> CommandResult:
        logger.debug(f"[{self.target}] $ {label}")
        result = _run(argv, label, input_text, timeout)

        # ssh reserves 255 for its own failures
        if result.exit_code == 255:
            error = classify_connection_failure(result.stderr)
            if error is not None:
                raise error
            if result.stderr.lstrip().startswith("ssh:"):
                raise TransportError(result.stderr.strip())

        return result

    def push(self, bundle: ConfigBundle, dest_dir: str) -> bool:
        dest_dir = dest_dir.rstrip("/")
        if self.remote_fingerprint(dest_dir) == bundle.fingerprint:
            logger.info(f"Bundle {bundle.short_fingerprint} already on {self.target}, skipping transfer")
            return False

        mkdir = self.exec(f"mkdir -p {shlex.quote(dest_dir)}")
        if not mkdir.ok:
            raise TransportError(f"Cannot create {dest_dir} on {self.target}: {mkdir.stderr.strip()}")

        # Stage exactly the fingerprinted bytes so disk edits after load cannot leak in
        with tempfile.TemporaryDirectory(prefix="gendeploy-") as staging:
            _materialize(bundle, Path(staging))
            argv = [
                "rsync", "-rz", "--checksum", "--delete",
                "--exclude", FINGERPRINT_MARKER,
                "-e", shlex.join(self.ssh_command()),
            ]
            if self.sudo:
                argv.append("--rsync-path=sudo -n rsync")
            argv.extend([f"{staging}/", f"{self.destination}:{dest_dir}/"])
            self._with_retry(self._run_rsync, argv)

        self.write_text_atomic(f"{dest_dir}/{FINGERPRINT_MARKER}", bundle.fingerprint + "\n")
        logger.info(f"Pushed bundle {bundle.short_fingerprint} ({len(bundle)} files) to {self.target}:{dest_dir}")
        return True

    def _run_rsync(self, argv: List[str]) -> None:
        result = _run(argv, "rsync", None, None)
        if result.ok:
            return
        error = classify_connection_failure(result.stderr)
        if error is not None:
            raise error
        raise TransportError(f"rsync to {self.target} failed (exit {result.exit_code}): {result.stderr.strip()}")


class LocalTransport(Transport):
    """Treat the orchestrator host itself as the target."""

    def __init__(self, target: str = "local"):
        super().__init__(target)

    @property
    def hostname(self) -> str:
        return "localhost"

    def exec(
        self,
        command: str,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        logger.debug(f"[{self.target}] $ {command}")
        return _run(["sh", "-c", command], command, input_text, timeout)

    def path_exists(self, path: str) -> bool:
        return Path(path).exists()

    def read_text(self, path: str) -> Optional[str]:
        file_path = Path(path)
        if not file_path.exists():
            return None
        try:
            return file_path.read_text()
        except OSError as e:
            raise TransportError(f"Cannot read {path}: {e}") from e

    def write_text_atomic(self, path: str, content: str) -> None:
        file_path = Path(path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = file_path.with_name(f"{file_path.name}.tmp.{os.getpid()}")
            with open(temp_file, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, file_path)
        except OSError as e:
            raise TransportError(f"Cannot write {path}: {e}") from e

    def append_text(self, path: str, content: str) -> None:
        file_path = Path(path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "a") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise TransportError(f"Cannot append to {path}: {e}") from e

    def push(self, bundle: ConfigBundle, dest_dir: str) -> bool:
        dest = Path(dest_dir)
        if self.remote_fingerprint(str(dest)) == bundle.fingerprint:
            logger.info(f"Bundle {bundle.short_fingerprint} already in {dest}, skipping copy")
            return False

        try:
            dest.mkdir(parents=True, exist_ok=True)
            changed = 0
            for relative, content in bundle.files.items():
                target_file = dest / relative
                if target_file.is_file() and file_digest(target_file) == hashlib.sha256(content).hexdigest():
                    continue
                target_file.parent.mkdir(parents=True, exist_ok=True)
                target_file.write_bytes(content)
                changed += 1

            removed = self._delete_extraneous(dest, set(bundle.files))
        except OSError as e:
            raise TransportError(f"Cannot copy bundle to {dest}: {e}") from e

        self.write_text_atomic(str(dest / FINGERPRINT_MARKER), bundle.fingerprint + "\n")
        logger.info(f"Copied bundle {bundle.short_fingerprint} to {dest} ({changed} changed, {removed} removed)")
        return True

    @staticmethod
    def _delete_extraneous(dest: Path, keep: set) -> int:
        removed = 0
        for path in sorted(dest.rglob("*"), reverse=True):
            relative = path.relative_to(dest).as_posix()
            if relative == FINGERPRINT_MARKER:
                continue
            if path.is_file() or path.is_symlink():
                if relative not in keep:
                    path.unlink()
                    removed += 1
            elif path.is_dir() and not any(path.iterdir()):
                path.rmdir()
        return removed


def _materialize(bundle: ConfigBundle, directory: Path) -> None:
    for relative, content in bundle.files.items():
        target_file = directory / relative
        target_file.parent.mkdir(parents=True, exist_ok=True)
        target_file.write_bytes(content)


def _run(
    argv: List[str],
    label: str,
    input_text: Optional[str],
    timeout: Optional[float],
) -> CommandResult:
    try:
        completed = subprocess.run(
            argv,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            # Own process group: terminal SIGINT reaches gendeploy only
            start_new_session=True,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandTimeout(label, timeout) from e
    except FileNotFoundError as e:
        raise TransportError(f"Required command not found: {argv[0]}") from e

    return CommandResult(
        exit_code=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
