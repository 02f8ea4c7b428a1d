"""
Workspace management for adlab.
"""

import copy
import json
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validate

from adlab.exceptions import InvalidConfigError, WorkspaceNotFoundError

# Get project root to find schema
PROJECT_ROOT = Path(__file__).parent.parent

SAMPLE_LAB = """\
# adlab lab definition. Passwords are read from the environment variables named here.
schema_version: 1
name: corp-lab

host:
  vm_path: D:\\Hyper-V\\corp-lab
  media_path: D:\\Hyper-V\\corp-lab\\media

switches:
  - name: LabInternal
    type: internal
    nat:
      prefix: 10.10.0.0/24
      gateway: 10.10.0.1

images:
  server2022:
    source_iso: D:\\ISO\\windows_server_2022.iso
    image_name: Windows Server 2022 Standard (Desktop Experience)
  win11:
    source_iso: D:\\ISO\\windows_11.iso
    image_name: Windows 11 Pro

domain:
  fqdn: corp.example.com
  netbios: CORP
  safe_mode_password_env: ADLAB_DSRM_PASSWORD
  organizational_units:
    - Lab
    - Lab/Servers
    - Lab/Workstations
    - Lab/Users
  dns_forwarders: [1.1.1.1]
  reverse_zone: 10.10.0.0/24

credentials:
  local_admin:
    username: Administrator
    password_env: ADLAB_ADMIN_PASSWORD

machines:
  - {name: DC01, role: primary_dc, image: server2022, switch: LabInternal,
     ip: 10.10.0.10, gateway: 10.10.0.1, memory_gb: 4}
  - {name: DC02, role: replica_dc, image: server2022, switch: LabInternal,
     ip: 10.10.0.11, gateway: 10.10.0.1, memory_gb: 4}
  - {name: SRV01, role: member, image: server2022, switch: LabInternal,
     ip: 10.10.0.20, gateway: 10.10.0.1, memory_gb: 4, disk_gb: 120, ou: Lab/Servers}
  - {name: CL01, role: workstation, image: win11, switch: LabInternal,
     ip: 10.10.0.50, gateway: 10.10.0.1, memory_gb: 4, ou: Lab/Workstations}

dhcp:
  server: SRV01
  scope:
    name: Lab clients
    start: 10.10.0.100
    end: 10.10.0.200
    subnet_mask: 255.255.255.0
    router: 10.10.0.1
    dns_servers: [10.10.0.10, 10.10.0.11]

file_shares:
  - server: SRV01
    name: Public
    path: C:\\Shares\\Public
    full_access: ["CORP\\\\Domain Admins"]
    change_access: ["CORP\\\\Domain Users"]

wsus:
  server: SRV01
  content_dir: C:\\WSUS
  products: [Windows Server 2022, Windows 11]
  classifications: [Critical Updates, Security Updates]

group_policies:
  - name: Lab - Windows Update
    link: Lab
    registry_values:
      - {key: "HKLM\\\\Software\\\\Policies\\\\Microsoft\\\\Windows\\\\WindowsUpdate",
         value_name: WUServer, type: String, value: "http://SRV01:8530"}
      - {key: "HKLM\\\\Software\\\\Policies\\\\Microsoft\\\\Windows\\\\WindowsUpdate",
         value_name: WUStatusServer, type: String, value: "http://SRV01:8530"}
      - {key: "HKLM\\\\Software\\\\Policies\\\\Microsoft\\\\Windows\\\\WindowsUpdate\\\\AU",
         value_name: UseWUServer, type: DWord, value: 1}

clone:
  source: DC01
  name: DC03
  ip: 10.10.0.12
"""


class Workspace:
    """Manages the adlab workspace structure and configuration."""

    REQUIRED_DIRS = [
        "unattend",
        "state",
        "logs",
        "runs",
    ]

    CONFIG_NAME = "adlab.yaml"
    LAB_NAME = "lab.yaml"

    DEFAULT_CONFIG = {
        "transport": {
            "guest": "powershell_direct",
            "host_shell": "powershell.exe",
            "command_timeout": 3600,
            "winrm": {
                "transport": "ntlm",
                "use_ssl": False,
                "server_cert_validation": "ignore",
                "operation_timeout": 60,
                "read_timeout": 90,
            },
        },
        "polling": {
            "initial_delay": 5.0,
            "backoff_factor": 2.0,
            "max_delay": 60.0,
            "timeouts": {
                "vm_running": 300,
                "guest_responds": 2700,  # OS install from ISO
                "domain_ready": 1800,
                "dc_registered": 1200,
                "group_replicated": 900,
                "service_running": 600,
                "domain_member": 900,
                "dc_health": 900,
                "default": 900,
            },
        },
        "retry": {
            "strategy": "REMOTE",
        },
        "logging": {
            "level": "INFO",
            "file": "logs/adlab.log",
        },
    }

    def __init__(self, root: Path):
        self.root = Path(root)
        self.config_file = self.root / self.CONFIG_NAME
        self.lab_file = self.root / self.LAB_NAME
        self._config_cache: dict[str, Any] | None = None

    @classmethod
    def require(cls, root: Path) -> "Workspace":
        """Open an existing workspace or raise WorkspaceNotFoundError."""
        workspace = cls(root)
        if not workspace.config_file.exists():
            raise WorkspaceNotFoundError()
        return workspace

    def initialize(self, with_lab: bool = True) -> None:
        """Initialize workspace directory structure and config."""
        for dir_path in self.REQUIRED_DIRS:
            (self.root / dir_path).mkdir(parents=True, exist_ok=True)

        with open(self.config_file, "w") as f:
            yaml.dump(self.DEFAULT_CONFIG, f, default_flow_style=False, sort_keys=False)

        if with_lab and not self.lab_file.exists():
            self.lab_file.write_text(SAMPLE_LAB)

    def state_file(self, lab_name: str) -> Path:
        return self.root / "state" / f"{lab_name}.state.json"

    def log_file(self) -> Path:
        config = self.load_config()
        return self.root / config["logging"]["file"]

    def load_config(self) -> dict[str, Any]:
        """Load and validate workspace configuration, merged over the defaults."""
        if self._config_cache is not None:
            return self._config_cache

        if not self.config_file.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_file}")

        with open(self.config_file) as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise InvalidConfigError(f"YAML parse error: {e}") from e

        if config is None:
            config = {}

        if not isinstance(config, dict):
            raise InvalidConfigError(f"expected a mapping, got {type(config).__name__}")

        self._validate_config_schema(config)

        self._config_cache = _deep_merge(copy.deepcopy(self.DEFAULT_CONFIG), config)

        return self._config_cache

    def _validate_config_schema(self, config: dict) -> None:
        """Validate config against JSON schema."""
        schema_file = PROJECT_ROOT / "schema/config.schema.json"
        if not schema_file.exists():
            raise FileNotFoundError(
                f"Configuration schema file not found: {schema_file}\n"
                f"This indicates an incomplete installation. Please reinstall adlab:\n"
                f"  pip install --force-reinstall adlab"
            )

        schema = json.loads(schema_file.read_text())
        try:
            validate(instance=config, schema=schema)
        except ValidationError as e:
            raise InvalidConfigError(
                f"{e.message} (at {'.'.join(str(p) for p in e.path) or 'root'})"
            ) from e


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge ``override`` into ``base`` (mutates and returns base)."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base
