"""
Tests for host operations and guest roles: the scripts each stage sends.
"""

import copy

import pytest

from adlab.exceptions import RemoteCommandError
from adlab.hyperv import machines, media, switches
from adlab.models.lab import DomainSpec, FileShareSpec
from adlab.pipeline.context import StageContext
from adlab.remote import CommandResult, CredentialContext, RecordingExecutor
from adlab.roles import clone, dhcp, domain, fileshare, gpo, wsus
from adlab.util.redact import REDACTED
from adlab.util.templates import TemplateLoader
from adlab.workspace import Workspace


@pytest.fixture
def ctx(sample_lab, temp_workspace, dry_connections, lab_env):
    return StageContext(
        lab=sample_lab,
        workspace=temp_workspace,
        connections=dry_connections,
        loader=TemplateLoader(temp_workspace.root),
        config=copy.deepcopy(Workspace.DEFAULT_CONFIG),
    )


def _last_script(ctx, target):
    """Most recent script recorded for a target ("host" or a machine name)."""
    for described, script in reversed(ctx.connections.journal):
        if described == f"recording:{target}":
            return script
    raise AssertionError(f"no script recorded for {target}")


class TestHelpers:
    def test_reverse_zone(self, sample_lab):
        assert domain.reverse_zone(sample_lab.domain) == ("10.10.0.0/24", "0.10.10.in-addr.arpa")

    def test_reverse_zone_16(self):
        spec = DomainSpec("corp.example.com", "CORP", "X", reverse_zone="172.16.0.0/16")
        assert domain.reverse_zone(spec) == ("172.16.0.0/16", "16.172.in-addr.arpa")

    def test_no_reverse_zone(self):
        assert domain.reverse_zone(DomainSpec("a.b", "A", "X")) == (None, None)

    def test_ou_entries_parents_first(self):
        spec = DomainSpec(
            "corp.example.com", "CORP", "X", organizational_units=["Lab/Servers", "Lab"]
        )
        entries = domain.ou_entries(spec)
        assert [e["name"] for e in entries] == ["Lab", "Servers"]
        assert entries[0]["parent_dn"] == "DC=corp,DC=example,DC=com"
        assert entries[1]["parent_dn"] == "OU=Lab,DC=corp,DC=example,DC=com"
        assert entries[1]["dn"] == "OU=Servers,OU=Lab,DC=corp,DC=example,DC=com"

    def test_ntfs_rules(self):
        share = FileShareSpec(
            "SRV01", "Data", "C:\\Data", full_access=["A"], change_access=["B"], read_access=["C", "D"]
        )
        assert fileshare.ntfs_rules(share) == [
            ("A", "FullControl"),
            ("B", "Modify"),
            ("C", "ReadAndExecute"),
            ("D", "ReadAndExecute"),
        ]

    @pytest.mark.parametrize(
        "prefix, mask", [(24, "255.255.255.0"), (16, "255.255.0.0"), (26, "255.255.255.192")]
    )
    def test_subnet_mask(self, prefix, mask):
        assert clone.subnet_mask(prefix) == mask

    def test_media_paths(self, sample_lab):
        dc = sample_lab.machine("DC01")
        assert media.media_iso_path(sample_lab, dc) == "D:\\Hyper-V\\corp-lab\\media\\DC01.iso"
        assert media.volume_label(dc) == "ADLAB_DC01"


class TestHostOperations:
    def test_create_switch_with_nat(self, ctx, sample_lab):
        switches.create_switch(ctx, sample_lab.switches[0])
        script = _last_script(ctx, "host")
        assert "New-VMSwitch -Name $name -SwitchType 'Internal'" in script
        assert "-PrefixLength 24" in script
        assert "New-NetNat" in script

    def test_build_media(self, ctx, sample_lab, temp_workspace, lab_env):
        digest = media.build_media(ctx, sample_lab.machine("DC01"))

        local_copy = (temp_workspace.root / "unattend" / "DC01.xml").read_text()
        assert "<ComputerName>DC01</ComputerName>" in local_copy
        assert REDACTED in local_copy
        assert ctx.metadata["media"]["DC01"] == {
            "iso": "D:\\Hyper-V\\corp-lab\\media\\DC01.iso",
            "unattend_sha256": digest,
        }
        script = _last_script(ctx, "host")
        assert "$outputIso = 'D:\\Hyper-V\\corp-lab\\media\\DC01.iso'" in script
        assert "efisys_noprompt.bin" in script

    def test_create_machine(self, ctx, sample_lab):
        machines.create_machine(ctx, sample_lab.machine("SRV01"))
        script = _last_script(ctx, "host")
        assert "-Generation 2" in script
        assert "-NewVHDSizeBytes 120GB" in script
        assert "Set-VMFirmware -VMName $name -BootOrder $disk, $dvd" in script

    def test_clone_host_steps(self, ctx, sample_lab):
        machines.export_machine(ctx, "DC01")
        assert "'D:\\Hyper-V\\corp-lab\\exports\\DC01'" in _last_script(ctx, "host")

        machines.clear_clone_config(ctx, "DC01")
        assert "DCCloneConfig.xml" in _last_script(ctx, "host")

        machines.import_clone(ctx, sample_lab.clone)
        script = _last_script(ctx, "host")
        assert "'DC03'" in script
        assert "'D:\\Hyper-V\\corp-lab\\exports\\DC01'" in script


class TestGuestRoles:
    def test_install_forest(self, ctx, sample_lab, lab_env):
        domain.install_forest(ctx, sample_lab.primary_dc)
        script = _last_script(ctx, "DC01")
        assert "-DomainName 'corp.example.com'" in script
        assert "-DomainNetbiosName 'CORP'" in script
        assert lab_env["dsrm"] not in script

    def test_install_replica_dc(self, ctx, sample_lab, lab_env):
        domain.install_replica_dc(ctx, sample_lab.machine("DC02"))
        script = _last_script(ctx, "DC02")
        assert "Install-ADDSDomainController" in script
        assert "'DC01.corp.example.com'" in script
        assert lab_env["admin"] not in script

    def test_primary_gets_reverse_zone(self, ctx, sample_lab):
        domain.configure_dns(ctx, sample_lab.primary_dc)
        script = _last_script(ctx, "DC01")
        assert "Add-DnsServerPrimaryZone -NetworkId '10.10.0.0/24'" in script
        assert "Set-DnsServerForwarder -IPAddress @('1.1.1.1')" in script
        assert "-ServerAddresses @('127.0.0.1', '10.10.0.11')" in script

    def test_replica_has_no_reverse_zone(self, ctx, sample_lab):
        domain.configure_dns(ctx, sample_lab.machine("DC02"))
        assert "Add-DnsServerPrimaryZone" not in _last_script(ctx, "DC02")

    def test_create_ous(self, ctx, sample_lab):
        domain.create_ous(ctx, sample_lab.primary_dc)
        script = _last_script(ctx, "DC01")
        assert script.index("-Name 'Lab' ") < script.index("-Name 'Servers' ")

    def test_join_domain_with_ou(self, ctx, sample_lab):
        domain.join_domain(ctx, sample_lab.machine("CL01"))
        script = _last_script(ctx, "CL01")
        assert "-OUPath 'OU=Workstations,OU=Lab,DC=corp,DC=example,DC=com'" in script
        assert "-ServerAddresses @('10.10.0.10', '10.10.0.11')" in script

    def test_install_dhcp(self, ctx, sample_lab):
        dhcp.install_dhcp(ctx, sample_lab.dhcp)
        script = _last_script(ctx, "SRV01")
        assert "$scopeId = '10.10.0.0'" in script
        assert "-DnsServer @('10.10.0.10', '10.10.0.11')" in script
        assert "-Router '10.10.0.1'" in script

    def test_dhcp_dns_defaults_to_dcs(self, ctx, sample_lab):
        sample_lab.dhcp.scope.dns_servers = []
        dhcp.install_dhcp(ctx, sample_lab.dhcp)
        assert "-DnsServer @('10.10.0.10', '10.10.0.11')" in _last_script(ctx, "SRV01")

    def test_create_share(self, ctx, sample_lab):
        fileshare.create_share(ctx, sample_lab.file_shares[0])
        script = _last_script(ctx, "SRV01")
        assert "$path = 'C:\\Shares\\Public'" in script
        assert "'CORP\\Domain Admins', 'FullControl'" in script
        assert "$params.ChangeAccess = @('CORP\\Domain Users')" in script

    def test_install_wsus(self, ctx, sample_lab):
        wsus.install_wsus(ctx, sample_lab.wsus)
        script = _last_script(ctx, "SRV01")
        assert "'Windows Server 2022'" in script
        assert "'Security Updates'" in script

    def test_create_gpo(self, ctx, sample_lab):
        gpo.create_gpo(ctx, sample_lab.group_policies[0])
        script = _last_script(ctx, "DC01")
        assert "$name = 'Lab - Windows Update'" in script
        assert "-ValueName 'UseWUServer' -Type DWord -Value 1" in script
        assert "$target = 'OU=Lab,DC=corp,DC=example,DC=com'" in script

    def test_clone_scripts(self, ctx, sample_lab):
        clone.authorize_clone(ctx, sample_lab.clone)
        assert "'Cloneable Domain Controllers'" in _last_script(ctx, "DC01")

        clone.prepare_clone(ctx, sample_lab.clone)
        script = _last_script(ctx, "DC01")
        assert "-CloneComputerName 'DC03'" in script
        assert "-IPv4Address '10.10.0.12'" in script
        assert "-IPv4SubnetMask '255.255.255.0'" in script
        assert "-IPv4DNSResolver @('10.10.0.10', '127.0.0.1')" in script


class TestStageContext:
    def test_placeholders_only_in_dry_run(self, ctx, monkeypatch):
        monkeypatch.delenv("ADLAB_DSRM_PASSWORD")
        ctx.dry_run = True
        assert ctx.safe_mode_password() == "<ADLAB_DSRM_PASSWORD>"

    def test_run_guest_raises_on_failure(self, ctx, sample_lab):
        failing = RecordingExecutor("DC01").when("Install-ADDSForest", CommandResult(1, "", "denied"))
        ctx.connections.register_guest("DC01", CredentialContext.LOCAL, failing)
        with pytest.raises(RemoteCommandError):
            domain.install_forest(ctx, sample_lab.primary_dc)
