"""
Unattended installation answer files.

Each machine boots from its own ISO carrying an ``autounattend.xml`` that
partitions the disk, installs the selected image, sets the computer name and
static address, and finishes with a first-logon script enabling remoting.
The last first-logon command drops a marker file that readiness checks look
for, so "the guest responds" means setup has really finished.
"""

import base64
import logging

from lxml import etree

from adlab.exceptions import UnattendValidationError
from adlab.models.lab import LabDefinition, MachineSpec
from adlab.util.templates import TemplateLoader

logger = logging.getLogger(__name__)

UNATTEND_TEMPLATE = "unattend/autounattend.xml.j2"
UNATTEND_NS = "urn:schemas-microsoft-com:unattend"
REQUIRED_PASSES = ("windowsPE", "specialize", "oobeSystem")

# Name of the synthetic adapter in a fresh Hyper-V guest
DEFAULT_INTERFACE_ALIAS = "Ethernet"

SETUP_MARKER = r"C:\ProgramData\adlab\setup-complete.txt"

MAX_COMPUTER_NAME = 15


def obscure_password(password: str, element: str) -> str:
    """
    Encode a password the way Windows SIM does for ``<PlainText>false``.

    The value is base64 of UTF-16LE(password + element name), where element
    is "AdministratorPassword" or "Password". It hides the password from
    casual reading only.
    """
    return base64.b64encode((password + element).encode("utf-16-le")).decode("ascii")


def first_logon_commands() -> list[str]:
    """Commands run once at the first automatic logon."""
    ps = 'powershell.exe -NoProfile -ExecutionPolicy Bypass -Command "{}"'
    return [
        "cmd.exe /c net user Administrator /active:yes",
        ps.format("Get-NetConnectionProfile | Set-NetConnectionProfile -NetworkCategory Private"),
        ps.format("Enable-PSRemoting -Force -SkipNetworkProfileCheck"),
        ps.format("Enable-NetFirewallRule -DisplayGroup 'File and Printer Sharing'"),
        ps.format(f"New-Item -ItemType File -Force -Path '{SETUP_MARKER}' | Out-Null"),
    ]


def render_unattend(
    lab: LabDefinition,
    machine: MachineSpec,
    loader: TemplateLoader,
    admin_password: str | None = None,
) -> str:
    """
    Render the answer file for one machine.

    Args:
        lab: Lab definition
        machine: Machine to render for
        loader: Template loader (workspace overrides win)
        admin_password: Local Administrator password; read from the
            environment when not given

    Returns:
        Answer file XML
    """
    if admin_password is None:
        admin_password = lab.local_admin.resolve_password()

    image = lab.images[machine.image]
    username = lab.local_admin.username.split("\\")[-1]

    return loader.render(
        UNATTEND_TEMPLATE,
        machine=machine,
        image=image,
        interface_alias=DEFAULT_INTERFACE_ALIAS,
        dns_servers=lab.dns_servers_for(machine),
        admin_username=username,
        administrator_password_value=obscure_password(admin_password, "AdministratorPassword"),
        autologon_password_value=obscure_password(admin_password, "Password"),
        first_logon_commands=first_logon_commands(),
    )


def _q(tag: str) -> str:
    return f"{{{UNATTEND_NS}}}{tag}"


def validate_unattend(xml: str) -> list[str]:
    """
    Check an answer file for the structure Windows Setup needs.

    Returns:
        List of problems (empty when the document is usable)
    """
    parser = etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False)
    try:
        root = etree.fromstring(xml.encode("utf-8"), parser)
    except etree.XMLSyntaxError as e:
        return [f"not well-formed XML: {e}"]

    if root.tag != _q("unattend"):
        return [f"root element must be <unattend xmlns=\"{UNATTEND_NS}\">, found {root.tag}"]

    errors = []
    passes = {s.get("pass"): s for s in root.findall(_q("settings"))}
    for name in REQUIRED_PASSES:
        if name not in passes:
            errors.append(f"missing <settings pass=\"{name}\">")

    if "windowsPE" in passes:
        image_name = passes["windowsPE"].find(f".//{_q('MetaData')}/{_q('Value')}")
        if image_name is None or not (image_name.text or "").strip():
            errors.append("windowsPE pass does not select an image (/IMAGE/NAME)")

    if "specialize" in passes:
        name = passes["specialize"].find(f".//{_q('ComputerName')}")
        if name is None or not (name.text or "").strip():
            errors.append("specialize pass does not set ComputerName")
        elif len(name.text.strip()) > MAX_COMPUTER_NAME:
            errors.append(f"ComputerName '{name.text.strip()}' exceeds {MAX_COMPUTER_NAME} characters")

    if "oobeSystem" in passes:
        if passes["oobeSystem"].find(f".//{_q('AdministratorPassword')}") is None:
            errors.append("oobeSystem pass does not set AdministratorPassword")

    return errors


def render_validated(
    lab: LabDefinition,
    machine: MachineSpec,
    loader: TemplateLoader,
    admin_password: str | None = None,
) -> str:
    """Render and validate, raising UnattendValidationError on problems."""
    xml = render_unattend(lab, machine, loader, admin_password)
    errors = validate_unattend(xml)
    if errors:
        raise UnattendValidationError(machine.name, errors)
    logger.debug("Rendered answer file for %s (%d bytes)", machine.name, len(xml))
    return xml
