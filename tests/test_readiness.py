"""
Tests for readiness checks.
"""

import pytest

from adlab.exceptions import RemoteExecutionError
from adlab.pipeline.readiness import (
    DomainControllerRegistered,
    DomainControllersHealthy,
    DomainMember,
    DomainServicesReady,
    GroupMembershipReplicated,
    GuestResponds,
    ServiceRunning,
    VmRunning,
    VmState,
)
from adlab.remote import CommandResult, Connections, CredentialContext, RecordingExecutor
from adlab.unattend import SETUP_MARKER
from adlab.workspace import Workspace


@pytest.fixture
def host():
    return RecordingExecutor("host")


@pytest.fixture
def connections(sample_lab, host):
    return Connections(sample_lab, Workspace.DEFAULT_CONFIG["transport"], host_executor=host)


def _guest(connections, machine, context=CredentialContext.DOMAIN, *rules):
    executor = RecordingExecutor(machine)
    for substring, reply in rules:
        executor.when(substring, reply)
    connections.register_guest(machine, context, executor)
    return executor


class TestVmState:
    def test_running(self, connections, host):
        host.when("Get-VM", CommandResult(0, "Running"))
        check = VmRunning("DC01")
        assert check.probe(connections)
        assert "Get-VM -Name 'DC01'" in host.calls[0]

    def test_off_is_case_insensitive(self, connections, host):
        host.when("Get-VM", CommandResult(0, "off\r\n"))
        assert VmState("DC01", "Off").probe(connections)
        assert not VmRunning("DC01").probe(connections)

    def test_failed_query(self, connections, host):
        host.when("Get-VM", CommandResult(1, "", "not found"))
        assert not VmRunning("DC01").probe(connections)

    def test_kind_and_description(self):
        assert VmRunning("DC01").kind == "vm_running"
        assert VmState("DC01", "Off").kind == "vm_running"
        assert str(VmState("DC01", "Off")) == "VM DC01 is Off"


class TestGuestChecks:
    def test_guest_responds_checks_marker(self, connections):
        guest = _guest(
            connections, "CL01", CredentialContext.LOCAL, ("Test-Path", CommandResult(0, "ADLAB_READY"))
        )
        assert GuestResponds("CL01").probe(connections)
        assert SETUP_MARKER in guest.calls[0]

    def test_guest_responds_without_marker(self, connections):
        _guest(connections, "CL01", CredentialContext.LOCAL)
        assert not GuestResponds("CL01").probe(connections)

    def test_transport_error_propagates(self, connections):
        _guest(
            connections,
            "CL01",
            CredentialContext.LOCAL,
            ("Test-Path", RemoteExecutionError("The virtual machine is not running")),
        )
        with pytest.raises(RemoteExecutionError):
            GuestResponds("CL01").probe(connections)

    def test_domain_services_ready(self, connections):
        _guest(connections, "DC02", CredentialContext.DOMAIN, ("Get-ADDomain", CommandResult(0, "AD_READY")))
        assert DomainServicesReady("DC02").probe(connections)

    def test_service_running(self, connections):
        reply = ("Get-Service", CommandResult(0, "SERVICE_RUNNING"))
        guest = _guest(connections, "SRV01", CredentialContext.DOMAIN, reply)
        assert ServiceRunning("SRV01", "DHCPServer").probe(connections)
        assert "'DHCPServer'" in guest.calls[0]

    def test_dc_registered_runs_on_observer(self, connections):
        reply = ("Get-ADDomainController", CommandResult(0, "DC_REGISTERED"))
        observer = _guest(connections, "DC01", CredentialContext.DOMAIN, reply)
        assert DomainControllerRegistered("DC01", "DC03").probe(connections)
        assert "-Identity 'DC03'" in observer.calls[0]

    def test_group_replicated(self, connections):
        reply = ("Get-ADGroupMember", CommandResult(0, "MEMBER_PRESENT"))
        guest = _guest(connections, "DC02", CredentialContext.DOMAIN, reply)
        check = GroupMembershipReplicated("DC02", "Cloneable Domain Controllers", "DC01")
        assert check.probe(connections)
        assert "'Cloneable Domain Controllers'" in guest.calls[0]

    def test_domain_member(self, connections):
        reply = ("Win32_ComputerSystem", CommandResult(0, "DOMAIN_MEMBER"))
        _guest(connections, "SRV01", CredentialContext.DOMAIN, reply)
        assert DomainMember("SRV01", "corp.example.com").probe(connections)

    def test_nonzero_exit_is_not_ready(self, connections):
        _guest(connections, "DC01", CredentialContext.DOMAIN, ("Get-ADDomain", CommandResult(1, "AD_READY")))
        assert not DomainServicesReady("DC01").probe(connections)


class TestDomainControllersHealthy:
    @pytest.mark.parametrize(
        "stdout, expected",
        [
            ("HEALTHY_COUNT=2", True),
            ("HEALTHY_COUNT=3", True),
            ("UNHEALTHY DC02\nHEALTHY_COUNT=1", False),
            ("", False),
        ],
    )
    def test_counts(self, connections, stdout, expected):
        _guest(connections, "DC01", CredentialContext.DOMAIN, ("HEALTHY_COUNT", CommandResult(0, stdout)))
        assert DomainControllersHealthy("DC01", 2).probe(connections) is expected

    def test_kind(self):
        assert DomainControllersHealthy("DC01").kind == "dc_health"
