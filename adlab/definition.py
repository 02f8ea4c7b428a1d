"""Lab definition loading and validation.

Validation happens in two passes: the YAML is checked against
``schema/lab.schema.json`` (structure and types), then the parsed
definition is checked for cross-references the schema cannot express
(machines pointing at undefined images, duplicate addresses, the clone
source not being a DC, and so on). All problems are collected and reported
together.
"""

import ipaddress
import json
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft7Validator, ValidationError
from jsonschema.exceptions import SchemaError

from adlab.exceptions import LabValidationError
from adlab.models.lab import (
    CloneSpec,
    Credential,
    DhcpScope,
    DhcpSpec,
    DomainSpec,
    FileShareSpec,
    GroupPolicySpec,
    HostSpec,
    ImageSpec,
    LabDefinition,
    MachineRole,
    MachineSpec,
    NatConfig,
    RegistryValue,
    SwitchSpec,
    SwitchType,
    WsusSpec,
)

# Get project root to find schema
PROJECT_ROOT = Path(__file__).parent.parent

# Module-level schema cache
_SCHEMA_CACHE: dict[str, dict] = {}


def _load_lab_schema() -> dict:
    """
    Load and cache the lab JSON schema.

    Raises:
        FileNotFoundError: If schema file doesn't exist
    """
    if "lab" not in _SCHEMA_CACHE:
        schema_file = PROJECT_ROOT / "schema/lab.schema.json"
        if not schema_file.exists():
            raise FileNotFoundError(
                f"Lab schema file not found: {schema_file}\n"
                f"This indicates an incomplete installation. Please reinstall adlab:\n"
                f"  pip install --force-reinstall adlab"
            )
        _SCHEMA_CACHE["lab"] = json.loads(schema_file.read_text())
    return _SCHEMA_CACHE["lab"]


def format_validation_error(error: ValidationError) -> list[str]:
    """
    Format a jsonschema ValidationError into user-friendly messages.

    Args:
        error: ValidationError from jsonschema

    Returns:
        List of formatted error lines
    """
    path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
    errors = [f"Validation error at '{path}': {error.message}"]

    if error.validator == "required":
        missing = error.message.split("'")[1::2]
        errors.append(f"  Required properties missing: {', '.join(missing)}")
        if "password_env" in missing:
            errors.append("  Example: password_env: ADLAB_LOCAL_PASSWORD")
    elif error.validator == "enum":
        errors.append(f"  Allowed values: {', '.join(str(v) for v in error.validator_value)}")
        errors.append(f"  Got: {error.instance}")
    elif error.validator == "type":
        errors.append(f"  Expected type: {error.validator_value}")
        errors.append(f"  Got: {type(error.instance).__name__}")
    elif error.validator == "additionalProperties":
        errors.append("  Check for typos in field names")
    elif error.validator == "pattern" and path.endswith("name") and "machines" in path:
        errors.append("  Machine names must be valid NetBIOS names (max 15 characters)")

    return errors


def validate_lab_schema(data: Any) -> list[str]:
    """Validate raw lab data against the JSON schema; return error lines."""
    try:
        schema = _load_lab_schema()
        validator = Draft7Validator(schema)
        errors: list[str] = []
        for error in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
            errors.extend(format_validation_error(error))
        return errors
    except SchemaError as e:
        return [f"Invalid lab schema: {e}"]


def _parse_switch(data: dict) -> SwitchSpec:
    nat = None
    if "nat" in data:
        nat = NatConfig(prefix=data["nat"]["prefix"], gateway=data["nat"]["gateway"])
    return SwitchSpec(
        name=data["name"],
        type=SwitchType(data.get("type", "internal")),
        adapter=data.get("adapter"),
        nat=nat,
    )


def _parse_image(image_id: str, data: dict) -> ImageSpec:
    return ImageSpec(
        id=image_id,
        source_iso=data["source_iso"],
        image_name=data["image_name"],
        product_key=data.get("product_key"),
        locale=data.get("locale", "en-US"),
        timezone=data.get("timezone", "UTC"),
    )


def _parse_domain(data: dict) -> DomainSpec:
    return DomainSpec(
        fqdn=data["fqdn"],
        netbios=data["netbios"].upper(),
        safe_mode_password_env=data["safe_mode_password_env"],
        forest_mode=data.get("forest_mode", "WinThreshold"),
        domain_mode=data.get("domain_mode", "WinThreshold"),
        organizational_units=data.get("organizational_units", []),
        dns_forwarders=data.get("dns_forwarders", []),
        reverse_zone=data.get("reverse_zone"),
    )


def _parse_credentials(data: dict, domain: DomainSpec) -> tuple[Credential, Credential]:
    """Parse local and domain admin credentials.

    The domain admin defaults to NETBIOS\\Administrator sharing the local
    admin's password: forest promotion turns the first DC's local
    Administrator into the domain Administrator.
    """
    local_data = data["local_admin"]
    local = Credential(
        username=local_data.get("username", "Administrator"),
        password_env=local_data["password_env"],
    )
    domain_data = data.get("domain_admin", {})
    domain_admin = Credential(
        username=domain_data.get("username", f"{domain.netbios}\\Administrator"),
        password_env=domain_data.get("password_env", local.password_env),
    )
    return local, domain_admin


def _parse_machine(data: dict) -> MachineSpec:
    return MachineSpec(
        name=data["name"].upper(),
        role=MachineRole(data["role"]),
        image=data["image"],
        switch=data["switch"],
        ip=data["ip"],
        prefix_length=data.get("prefix_length", 24),
        gateway=data.get("gateway"),
        dns=data.get("dns", []),
        memory_gb=data.get("memory_gb", 2),
        cpus=data.get("cpus", 2),
        disk_gb=data.get("disk_gb", 60),
        generation=data.get("generation", 2),
        ou=data.get("ou"),
    )


def _parse_dhcp(data: dict) -> DhcpSpec:
    scope = data["scope"]
    return DhcpSpec(
        server=data["server"].upper(),
        scope=DhcpScope(
            name=scope["name"],
            start=scope["start"],
            end=scope["end"],
            subnet_mask=scope["subnet_mask"],
            router=scope.get("router"),
            dns_servers=scope.get("dns_servers", []),
            lease_days=scope.get("lease_days", 8),
        ),
        exclusions=[(e["start"], e["end"]) for e in data.get("exclusions", [])],
    )


def _parse_share(data: dict) -> FileShareSpec:
    return FileShareSpec(
        server=data["server"].upper(),
        name=data["name"],
        path=data["path"],
        description=data.get("description", ""),
        full_access=data.get("full_access", []),
        change_access=data.get("change_access", []),
        read_access=data.get("read_access", []),
    )


def _parse_wsus(data: dict) -> WsusSpec:
    return WsusSpec(
        server=data["server"].upper(),
        content_dir=data.get("content_dir", "C:\\WSUS"),
        products=data.get("products", []),
        classifications=data.get("classifications", []),
        languages=data.get("languages", ["en"]),
    )


def _parse_gpo(data: dict) -> GroupPolicySpec:
    return GroupPolicySpec(
        name=data["name"],
        link=data.get("link"),
        comment=data.get("comment", ""),
        registry_values=[
            RegistryValue(
                key=rv["key"], value_name=rv["value_name"], type=rv["type"], value=rv["value"]
            )
            for rv in data.get("registry_values", [])
        ],
    )


def _parse_clone(data: dict) -> CloneSpec:
    return CloneSpec(
        source=data["source"].upper(),
        name=data["name"].upper(),
        ip=data["ip"],
        site=data.get("site", "Default-First-Site-Name"),
    )


def parse_lab(data: dict) -> LabDefinition:
    """Build a LabDefinition from schema-valid data (no reference checks)."""
    domain = _parse_domain(data["domain"])
    local_admin, domain_admin = _parse_credentials(data["credentials"], domain)
    host = data["host"]

    return LabDefinition(
        schema_version=data["schema_version"],
        name=data["name"],
        host=HostSpec(
            vm_path=host["vm_path"],
            media_path=host["media_path"],
            staging_path=host.get("staging_path"),
        ),
        domain=domain,
        local_admin=local_admin,
        domain_admin=domain_admin,
        switches=[_parse_switch(s) for s in data["switches"]],
        images={k: _parse_image(k, v) for k, v in data["images"].items()},
        machines=[_parse_machine(m) for m in data["machines"]],
        dhcp=_parse_dhcp(data["dhcp"]) if "dhcp" in data else None,
        file_shares=[_parse_share(s) for s in data.get("file_shares", [])],
        wsus=_parse_wsus(data["wsus"]) if "wsus" in data else None,
        group_policies=[_parse_gpo(g) for g in data.get("group_policies", [])],
        clone=_parse_clone(data["clone"]) if "clone" in data else None,
    )


def _check_server_reference(lab: LabDefinition, server: str, what: str, errors: list[str]):
    if not lab.has_machine(server):
        errors.append(f"{what}: server '{server}' is not a defined machine")
    elif lab.machine(server).role == MachineRole.WORKSTATION:
        errors.append(f"{what}: server '{server}' is a workstation")


def validate_references(lab: LabDefinition) -> list[str]:
    """
    Check cross-references and invariants the JSON schema cannot express.

    Returns:
        List of error messages (empty when the lab is consistent)
    """
    errors: list[str] = []

    primaries = lab.machines_by_role(MachineRole.PRIMARY_DC)
    if len(primaries) != 1:
        errors.append(f"Exactly one machine must have role primary_dc (found {len(primaries)})")

    seen_names: set[str] = set()
    for m in lab.machines:
        if m.name.lower() in seen_names:
            errors.append(f"Duplicate machine name: {m.name}")
        seen_names.add(m.name.lower())

    switch_names = {s.name for s in lab.switches}
    if len(switch_names) != len(lab.switches):
        errors.append("Switch names must be unique")

    for s in lab.switches:
        if s.type == SwitchType.EXTERNAL and not s.adapter:
            errors.append(f"Switch '{s.name}': external switches need an adapter")
        if s.nat is not None and s.type != SwitchType.INTERNAL:
            errors.append(f"Switch '{s.name}': NAT is only supported on internal switches")
        if s.nat is not None:
            try:
                network = ipaddress.ip_network(s.nat.prefix, strict=False)
                if ipaddress.ip_address(s.nat.gateway) not in network:
                    errors.append(f"Switch '{s.name}': NAT gateway is outside {s.nat.prefix}")
            except ValueError as e:
                errors.append(f"Switch '{s.name}': {e}")

    addresses: dict[str, str] = {}
    for m in lab.machines:
        if m.image not in lab.images:
            errors.append(f"Machine '{m.name}': image '{m.image}' is not defined")
        if m.switch not in switch_names:
            errors.append(f"Machine '{m.name}': switch '{m.switch}' is not defined")
        if m.ip in addresses:
            errors.append(f"Machine '{m.name}': IP {m.ip} already used by {addresses[m.ip]}")
        addresses[m.ip] = m.name
        if m.ou and m.is_dc:
            errors.append(f"Machine '{m.name}': domain controllers cannot be placed in an OU")
        if m.ou and m.ou not in lab.domain.organizational_units:
            errors.append(f"Machine '{m.name}': OU '{m.ou}' is not in domain.organizational_units")

    for ou in lab.domain.organizational_units:
        parent = ou.rsplit("/", 1)[0] if "/" in ou else None
        if parent and parent not in lab.domain.organizational_units:
            errors.append(f"OU '{ou}': parent '{parent}' must be listed before it")

    if lab.dhcp is not None:
        _check_server_reference(lab, lab.dhcp.server, "dhcp", errors)
        try:
            start = ipaddress.ip_address(lab.dhcp.scope.start)
            end = ipaddress.ip_address(lab.dhcp.scope.end)
            if start > end:
                errors.append("dhcp.scope: start address is after end address")
        except ValueError as e:
            errors.append(f"dhcp.scope: {e}")

    share_names: set[tuple[str, str]] = set()
    for share in lab.file_shares:
        _check_server_reference(lab, share.server, f"file share '{share.name}'", errors)
        key = (share.server.lower(), share.name.lower())
        if key in share_names:
            errors.append(f"Duplicate file share '{share.name}' on {share.server}")
        share_names.add(key)

    if lab.wsus is not None:
        _check_server_reference(lab, lab.wsus.server, "wsus", errors)

    gpo_names: set[str] = set()
    for gpo in lab.group_policies:
        if gpo.name.lower() in gpo_names:
            errors.append(f"Duplicate group policy name: {gpo.name}")
        gpo_names.add(gpo.name.lower())
        if gpo.link and gpo.link not in lab.domain.organizational_units:
            errors.append(
                f"Group policy '{gpo.name}': link target '{gpo.link}' "
                "is not in domain.organizational_units"
            )

    if lab.clone is not None:
        if not lab.has_machine(lab.clone.source):
            errors.append(f"clone: source '{lab.clone.source}' is not a defined machine")
        elif not lab.machine(lab.clone.source).is_dc:
            errors.append(f"clone: source '{lab.clone.source}' is not a domain controller")
        if len(lab.domain_controllers) < 2:
            errors.append("clone: at least two domain controllers are required before cloning")
        if lab.has_machine(lab.clone.name):
            errors.append(f"clone: name '{lab.clone.name}' collides with a defined machine")
        if lab.clone.ip in addresses:
            errors.append(f"clone: IP {lab.clone.ip} already used by {addresses[lab.clone.ip]}")

    return errors


def load_lab_data(lab_file: Path) -> Any:
    """Read lab YAML, turning parse errors into LabValidationError."""
    if not lab_file.exists():
        raise FileNotFoundError(f"Lab definition not found: {lab_file}")
    try:
        return yaml.safe_load(lab_file.read_text())
    except yaml.YAMLError as e:
        raise LabValidationError([f"YAML parse error: {e}"], str(lab_file)) from e


def load_lab(lab_file: Path) -> LabDefinition:
    """
    Load, validate and parse a lab definition.

    Args:
        lab_file: Path to lab.yaml

    Returns:
        LabDefinition instance

    Raises:
        FileNotFoundError: If the file doesn't exist
        LabValidationError: If schema or reference validation fails
    """
    data = load_lab_data(lab_file)

    errors = validate_lab_schema(data)
    if errors:
        raise LabValidationError(errors, str(lab_file))

    lab = parse_lab(data)

    errors = validate_references(lab)
    if errors:
        raise LabValidationError(errors, str(lab_file))

    return lab


def validate_lab_file(lab_file: Path) -> tuple[bool, list[str]]:
    """
    Validate a lab file without raising.

    Returns:
        tuple: (is_valid, error_messages)
    """
    try:
        load_lab(lab_file)
        return (True, [])
    except LabValidationError as e:
        return (False, e.errors)
    except FileNotFoundError as e:
        return (False, [str(e)])
