"""Actions that change the host or the cluster.

Every action turns failures of the underlying command or file operation into
ActionError and never hides them.
"""

import logging
import os
import secrets
import shutil
import string
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

import yaml

from ..engine.state import (
    AuthorizedKeys,
    FileChecksum,
    NodeReady,
    NodeTaints,
    PackagesPresent,
    ReleaseState,
    ResourceState,
    RolloutState,
    SecretPresent,
    ServiceState,
    SwapState,
)
from ..engine.step import Action
from ..errors import ActionError, CommandError, ConfigError
from . import manifest
from .probes import fstab_swap_lines, kubectl
from .runner import CommandRunner

logger = logging.getLogger(__name__)

K3S_INSTALL_URL = "https://get.k3s.io"
# helm --timeout runs this many seconds short of the process timeout
HELM_TIMEOUT_MARGIN = 15


class CommandAction(Action):
    """Base for actions carried out through a CommandRunner"""

    def __init__(self, runner: CommandRunner, timeout: float = 300.0):
        self.runner = runner
        self.timeout = timeout

    def _run(self, cmd: list[str], **kwargs):
        try:
            return self.runner.run(cmd, timeout=self.timeout, **kwargs)
        except CommandError as e:
            raise ActionError(str(e), cause=e) from e


def write_atomic(path: Path, data: Union[str, bytes], mode: int = 0o644, owner: Optional[str] = None) -> None:
    """Replace a file's content in one rename, creating parent directories"""
    path.parent.mkdir(parents=True, exist_ok=True)
    raw = data.encode("utf-8") if isinstance(data, str) else data
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(raw)
        os.chmod(tmp, mode)
        if owner:
            shutil.chown(tmp, user=owner, group=owner)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class DisableSwap(CommandAction):
    """Turn swap off now and comment out its fstab entries"""

    def __init__(self, runner: CommandRunner, fstab: Union[str, Path] = "/etc/fstab", timeout: float = 60.0):
        super().__init__(runner, timeout)
        self.fstab = Path(fstab)

    def apply(self, desired: SwapState) -> None:
        if not desired.active:
            self._run(["swapoff", "-a"])
        if not desired.in_fstab:
            try:
                text = self.fstab.read_text()
                lines = text.splitlines(keepends=True)
                indexes = fstab_swap_lines(text)
                if not indexes:
                    return
                for i in indexes:
                    lines[i] = "#" + lines[i]
                logger.info("Commenting out %d swap entries in %s", len(indexes), self.fstab)
                write_atomic(self.fstab, "".join(lines), mode=self.fstab.stat().st_mode & 0o777)
            except FileNotFoundError:
                return
            except OSError as e:
                raise ActionError(f"Cannot update {self.fstab}: {e}", cause=e) from e


class EnsurePackages(CommandAction):
    """Install the desired packages, skipping those already up to date"""

    def __init__(
        self,
        runner: CommandRunner,
        install_cmd: Iterable[str] = ("yay", "-S", "--needed", "--noconfirm"),
        user: Optional[str] = None,
        timeout: float = 1800.0,
    ):
        super().__init__(runner, timeout)
        self.install_cmd = list(install_cmd)
        self.user = user

    def apply(self, desired: PackagesPresent) -> None:
        packages = sorted(desired.packages)
        logger.info("Installing packages: %s", ", ".join(packages))
        self._run(self.install_cmd + packages, user=self.user)


class EnsureClusterInstalled(CommandAction):
    """Install k3s as server or as an agent joining an existing server"""

    def __init__(
        self,
        runner: CommandRunner,
        mode: str = "server",
        join_url: Optional[str] = None,
        token: Optional[str] = None,
        install_url: str = K3S_INSTALL_URL,
        exec_args: Iterable[str] = (),
        timeout: float = 600.0,
    ):
        super().__init__(runner, timeout)
        if mode not in ("server", "agent"):
            raise ConfigError(f"Unknown k3s mode: {mode}")
        if mode == "agent" and not (join_url and token):
            raise ConfigError("Agent mode needs a join URL and a token")
        self.mode = mode
        self.join_url = join_url
        self.token = token
        self.install_url = install_url
        self.exec_args = list(exec_args)

    def environment(self) -> Dict[str, str]:
        env = {}
        if self.mode == "agent":
            env["K3S_URL"] = self.join_url
            env["K3S_TOKEN"] = self.token
        if self.exec_args:
            env["INSTALL_K3S_EXEC"] = " ".join(self.exec_args)
        return env

    def apply(self, desired: ServiceState) -> None:
        logger.info("Installing k3s (%s mode)", self.mode)
        self._run(["sh", "-c", f"curl -sfL {self.install_url} | sh -"], env=self.environment())


class EnableService(CommandAction):
    def __init__(self, runner: CommandRunner, timeout: float = 60.0):
        super().__init__(runner, timeout)

    def apply(self, desired: ServiceState) -> None:
        self._run(["systemctl", "enable", "--now", desired.name])


class RestartService(CommandAction):
    def __init__(self, runner: CommandRunner, timeout: float = 120.0):
        super().__init__(runner, timeout)

    def apply(self, desired: ServiceState) -> None:
        logger.info("Restarting %s", desired.name)
        self._run(["systemctl", "restart", desired.name])


class WaitForNode(CommandAction):
    def __init__(self, runner: CommandRunner, kubeconfig: Optional[str] = None, wait: str = "120s", timeout: float = 150.0):
        super().__init__(runner, timeout)
        self.kubeconfig = kubeconfig
        self.wait = wait

    def apply(self, desired: NodeReady) -> None:
        self._run(
            kubectl(self.kubeconfig, "wait", "--for=condition=Ready", f"node/{desired.node}", f"--timeout={self.wait}")
        )


class WriteFile(Action):
    """Write fixed content to the desired file path"""

    def __init__(self, content: str, mode: int = 0o644, owner: Optional[str] = None):
        self.content = content
        self.mode = mode
        self.owner = owner

    def apply(self, desired: FileChecksum) -> None:
        try:
            write_atomic(Path(desired.path), self.content, self.mode, self.owner)
        except (OSError, LookupError) as e:
            raise ActionError(f"Cannot write {desired.path}: {e}", cause=e) from e


class CopyFile(Action):
    """Copy a source file over the desired path with the given mode and owner"""

    def __init__(self, source: Union[str, Path], mode: int = 0o600, owner: Optional[str] = None):
        self.source = Path(source)
        self.mode = mode
        self.owner = owner

    def apply(self, desired: FileChecksum) -> None:
        dest = Path(desired.path)
        try:
            write_atomic(dest, self.source.read_bytes(), self.mode, self.owner)
            if self.owner:
                shutil.chown(dest.parent, user=self.owner, group=self.owner)
        except (OSError, LookupError) as e:
            raise ActionError(f"Cannot copy {self.source} to {dest}: {e}", cause=e) from e


class ApplyManifest(CommandAction):
    """Apply a manifest stamped with its checksum annotation"""

    def __init__(self, runner: CommandRunner, content: str, kubeconfig: Optional[str] = None, timeout: float = 120.0):
        super().__init__(runner, timeout)
        self.stamped, self.checksum = manifest.stamp(content)
        self.kubeconfig = kubeconfig

    def apply(self, desired: ResourceState) -> None:
        self._run(kubectl(self.kubeconfig, "apply", "-f", "-"), input=self.stamped)


class EnsureRelease(CommandAction):
    """helm upgrade --install, relying on helm's own idempotency"""

    def __init__(
        self,
        runner: CommandRunner,
        chart: str,
        values: Optional[Dict[str, Any]] = None,
        repo: Optional[Tuple[str, str]] = None,
        wait: bool = True,
        create_namespace: bool = True,
        timeout: float = 900.0,
    ):
        super().__init__(runner, timeout)
        self.chart = chart
        self.values = values or {}
        self.repo = repo
        self.wait = wait
        self.create_namespace = create_namespace

    def apply(self, desired: ReleaseState) -> None:
        if self.repo:
            repo_name, repo_url = self.repo
            self._run(["helm", "repo", "add", repo_name, repo_url, "--force-update"])
            self._run(["helm", "repo", "update", repo_name])

        fd, values_file = tempfile.mkstemp(prefix="homekube-values-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(self.values, f, default_flow_style=False)
            cmd = [
                "helm", "upgrade", "--install", desired.name, self.chart,
                "--namespace", desired.namespace,
                "--values", values_file,
            ]
            if self.create_namespace:
                cmd.append("--create-namespace")
            if self.wait:
                helm_timeout = max(int(self.timeout) - HELM_TIMEOUT_MARGIN, 1)
                cmd += ["--wait", f"--timeout={helm_timeout}s"]
            self._run(cmd)
        finally:
            os.unlink(values_file)


def generate_password(length: int = 24) -> str:
    """Random alphanumeric password"""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class EnsureSecret(CommandAction):
    """Create a secret holding a freshly generated value.

    Only runs when the secret is absent, so the generator is called at most
    once per convergence and an existing secret is never regenerated. The
    value is handed to ``reveal`` exactly once, since it is not shown again.
    ``literals`` are fixed keys stored next to the generated one. The secret
    travels on stdin, never in the command line.
    """

    def __init__(
        self,
        runner: CommandRunner,
        key: str,
        generator: Callable[[], str] = generate_password,
        reveal: Optional[Callable[[SecretPresent, str, str], None]] = None,
        kubeconfig: Optional[str] = None,
        timeout: float = 60.0,
        literals: Optional[Dict[str, str]] = None,
    ):
        super().__init__(runner, timeout)
        self.key = key
        self.generator = generator
        self.reveal = reveal
        self.kubeconfig = kubeconfig
        self.literals = literals or {}

    def apply(self, desired: SecretPresent) -> None:
        value = self.generator()
        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": desired.name, "namespace": desired.namespace},
            "type": "Opaque",
            "stringData": {**self.literals, self.key: value},
        }
        self._run(kubectl(self.kubeconfig, "create", "-f", "-"), input=manifest.render([secret]))
        logger.info("Created secret %s/%s", desired.namespace, desired.name)
        if self.reveal:
            self.reveal(desired, self.key, value)


class TaintNode(CommandAction):
    def __init__(self, runner: CommandRunner, kubeconfig: Optional[str] = None, timeout: float = 60.0):
        super().__init__(runner, timeout)
        self.kubeconfig = kubeconfig

    def apply(self, desired: NodeTaints) -> None:
        for taint in sorted(desired.taints):
            self._run(kubectl(self.kubeconfig, "taint", "nodes", desired.node, str(taint), "--overwrite"))


class WaitForRollout(CommandAction):
    def __init__(self, runner: CommandRunner, kubeconfig: Optional[str] = None, wait: str = "5m", timeout: float = 330.0):
        super().__init__(runner, timeout)
        self.kubeconfig = kubeconfig
        self.wait = wait

    def apply(self, desired: RolloutState) -> None:
        self._run(
            kubectl(
                self.kubeconfig,
                "rollout", "status", f"{desired.kind_name}/{desired.name}",
                "-n", desired.namespace,
                f"--timeout={self.wait}",
            )
        )


class Require(Action):
    """Precondition that cannot be fixed automatically"""

    def __init__(self, message: str):
        self.message = message

    def apply(self, desired: ResourceState) -> None:
        raise ActionError(self.message)


class GenerateSSHKey(CommandAction):
    def __init__(self, runner: CommandRunner, comment: str, user: Optional[str] = None, timeout: float = 60.0):
        super().__init__(runner, timeout)
        self.comment = comment
        self.user = user

    def apply(self, desired: FileChecksum) -> None:
        path = Path(desired.path)
        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            if self.user:
                shutil.chown(path.parent, user=self.user, group=self.user)
        except (OSError, LookupError) as e:
            raise ActionError(f"Cannot create {path.parent}: {e}", cause=e) from e
        self._run(["ssh-keygen", "-t", "ed25519", "-C", self.comment, "-f", str(path), "-N", ""], user=self.user)


class AuthorizeKey(Action):
    """Append the public keys missing from an authorized_keys file"""

    def __init__(self, pub_path: Union[str, Path], owner: Optional[str] = None):
        self.pub_path = Path(pub_path)
        self.owner = owner

    def apply(self, desired: AuthorizedKeys) -> None:
        path = Path(desired.path)
        try:
            existing = path.read_text() if path.exists() else ""
            line = self.pub_path.read_text().strip()
            if existing and not existing.endswith("\n"):
                existing += "\n"
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            write_atomic(path, f"{existing}{line}\n", mode=0o600, owner=self.owner)
        except (OSError, LookupError) as e:
            raise ActionError(f"Cannot update {path}: {e}", cause=e) from e
