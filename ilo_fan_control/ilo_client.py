"""
Clients for the two iLO channels

- RedfishClient: structured REST API over HTTPS
- SSHShell: the iLO command shell, driven through the system ssh binary
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
import urllib3

from .models import IloConfig

logger = logging.getLogger(__name__)

# iLO ships a self-signed certificate
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

THERMAL_PATH = "/redfish/v1/chassis/1/Thermal/"
SYSTEM_PATH = "/redfish/v1/Systems/1"
SENSOR_COMMAND = "show /system1/sensor"
SYSTEM_COMMAND = "show /system1"

# ssh exits with 255 when the connection itself failed
SSH_CONNECTION_ERROR = 255


class RedfishError(Exception):
    """Structured channel unreachable or answered with garbage"""


class ShellError(Exception):
    """Command shell unreachable, timed out or refused the login"""


class RedfishClient:
    """Read-only client for the Redfish resources we need"""

    def __init__(self, config: IloConfig, timeout: float = 3.0):
        """
        Args:
            config: Controller host and credentials
            timeout: Per-request timeout in seconds
        """
        self.base_url = f"https://{config.host}"
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (config.username, config.password)
        self.session.verify = False
        self.session.headers.update({'Accept': 'application/json'})

    def get(self, path: str) -> Dict[str, Any]:
        endpoint = f"{self.base_url}{path}"
        try:
            response = self.session.get(endpoint, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.ConnectionError as e:
            raise RedfishError(f"Cannot connect to {endpoint}") from e
        except requests.exceptions.Timeout as e:
            raise RedfishError(f"Timeout reading {endpoint}") from e
        except requests.exceptions.HTTPError as e:
            raise RedfishError(f"HTTP {e.response.status_code} from {endpoint}") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise RedfishError(f"Redfish read failed: {e}") from e

        if not isinstance(data, dict):
            raise RedfishError(f"Unexpected payload from {endpoint}")
        return data

    def get_thermal(self) -> Dict[str, Any]:
        return self.get(THERMAL_PATH)

    def get_system(self) -> Dict[str, Any]:
        return self.get(SYSTEM_PATH)


@dataclass
class CommandOutput:
    """Result of one shell command"""
    command: str
    stdout: str
    stderr: str
    returncode: int

    @property
    def text(self) -> str:
        """Whatever the shell printed, stdout first"""
        return (self.stdout or self.stderr or "").strip()


class SSHShell:
    """
    Runs one iLO shell command per ssh invocation

    The iLO shell has no structured error codes; callers inspect the
    printed text. A ControlMaster connection is kept alive between
    commands to avoid a handshake per command.
    """

    def __init__(
        self,
        config: IloConfig,
        timeout: float = 15.0,
        legacy_algorithms: bool = True,
        control_persist: int = 60,
    ):
        self.config = config
        self.timeout = timeout
        self.legacy_algorithms = legacy_algorithms
        self.control_persist = control_persist

    def build_command(self, command: str) -> List[str]:
        base = [
            "ssh",
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-o", f"ConnectTimeout={int(self.timeout)}",
            "-o", "ServerAliveInterval=5",
            "-o", "ServerAliveCountMax=2",
            "-o", "ControlMaster=auto",
            "-o", "ControlPath=/tmp/ssh-ilo-%C",
            "-o", f"ControlPersist={self.control_persist}",
        ]
        if self.legacy_algorithms:
            base += [
                "-o", "KexAlgorithms=+diffie-hellman-group14-sha1,diffie-hellman-group1-sha1",
                "-o", "HostKeyAlgorithms=+ssh-rsa,ssh-dss",
                "-o", "Ciphers=+aes128-cbc,3des-cbc,aes256-cbc",
            ]
        base += [f"{self.config.username}@{self.config.host}", command]
        if self.config.password:
            base = ["sshpass", "-p", self.config.password] + base
        return base

    def run(self, command: str, timeout: Optional[float] = None) -> CommandOutput:
        """
        Executes one command on the iLO shell

        Raises:
            ShellError: ssh could not be started, timed out, failed to
                connect or (through sshpass) exited non-zero
        """
        argv = self.build_command(command)
        try:
            res = subprocess.run(
                argv,
                text=True,
                capture_output=True,
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ShellError(f"Timeout running '{command}' on {self.config.host}") from e
        except OSError as e:
            raise ShellError(f"Cannot start ssh: {e}") from e

        # sshpass reports a refused login or a host key problem with 1-6
        failed = res.returncode != 0 if self.config.password else res.returncode == SSH_CONNECTION_ERROR
        if failed:
            detail = (res.stderr or res.stdout or "").strip()
            raise ShellError(f"ssh to {self.config.host} failed (exit {res.returncode}): {detail}")

        output = CommandOutput(command, res.stdout or "", res.stderr or "", res.returncode)
        logger.debug(f"[SSH] {command} => {output.text or output.returncode}")
        return output


def ssh_shell_factory(timeout: float = 15.0, legacy_algorithms: bool = True):
    """Returns a callable building an SSHShell for given credentials"""
    def factory(config: IloConfig) -> SSHShell:
        return SSHShell(config, timeout=timeout, legacy_algorithms=legacy_algorithms)
    return factory


def redfish_client_factory(timeout: float = 3.0):
    def factory(config: IloConfig) -> RedfishClient:
        return RedfishClient(config, timeout=timeout)
    return factory
