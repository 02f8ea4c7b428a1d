"""
Tests for the stage plan.
"""

import pytest

from adlab.definition import parse_lab
from adlab.exceptions import PlanError, UnknownStageError
from adlab.pipeline.plan import Plan, Stage, build_plan
from adlab.pipeline.readiness import (
    DomainControllerRegistered,
    DomainControllersHealthy,
    DomainMember,
    GroupMembershipReplicated,
    GuestResponds,
    VmState,
)
from adlab.pipeline.state import NodeState
from adlab.remote import CredentialContext


def _stage(stage_id, *requires):
    return Stage(id=stage_id, node="N", description=stage_id, requires=list(requires))


@pytest.fixture
def plan(sample_lab):
    return build_plan(sample_lab)


@pytest.fixture
def order(plan):
    ids = [s.id for s in plan.ordered()]
    return {stage_id: index for index, stage_id in enumerate(ids)}


class TestPlanOrdering:
    """Ordering mechanics of Plan."""

    def test_declaration_order_kept_among_peers(self):
        plan = Plan([_stage("a"), _stage("b"), _stage("c")])
        assert [s.id for s in plan.ordered()] == ["a", "b", "c"]

    def test_dependencies_come_first(self):
        plan = Plan([_stage("a", "c"), _stage("b"), _stage("c")])
        assert [s.id for s in plan.ordered()] == ["b", "c", "a"]

    def test_duplicate_ids(self):
        with pytest.raises(PlanError, match="duplicate stage id 'a'"):
            Plan([_stage("a"), _stage("a")])

    def test_unknown_dependency(self):
        plan = Plan([_stage("a", "missing")])
        with pytest.raises(PlanError, match="requires unknown stage 'missing'"):
            plan.ordered()

    def test_cycle(self):
        plan = Plan([_stage("x"), _stage("a", "b"), _stage("b", "a")])
        with pytest.raises(PlanError, match="dependency cycle among: a, b"):
            plan.ordered()

    def test_get_unknown_suggests(self):
        plan = Plan([_stage("start-vm:DC01"), _stage("start-vm:DC02")])
        with pytest.raises(UnknownStageError) as exc_info:
            plan.get("start-vm:DC09")
        assert "start-vm:DC01" in exc_info.value.suggestion

    def test_select_only(self):
        plan = Plan([_stage("a"), _stage("b", "a"), _stage("c")])
        assert [s.id for s in plan.select(only=["c", "a"])] == ["a", "c"]

    def test_select_start_at(self):
        plan = Plan([_stage("a"), _stage("b", "a"), _stage("c", "b")])
        assert [s.id for s in plan.select(start_at="b")] == ["b", "c"]

    def test_select_unknown(self):
        plan = Plan([_stage("a")])
        with pytest.raises(UnknownStageError):
            plan.select(only=["z"])

    def test_container_protocol(self):
        plan = Plan([_stage("a"), _stage("b")])
        assert len(plan) == 2
        assert "a" in plan
        assert "z" not in plan
        assert plan.ids == ["a", "b"]
        assert plan.get("b").verb == "b"


class TestBuildPlan:
    """The sample lab's plan and its cross-machine ordering."""

    def test_stage_count(self, plan):
        assert len(plan) == 41

    def test_all_vms_start_before_any_promotion(self, order):
        starts = [order[f"start-vm:{m}"] for m in ("DC01", "DC02", "SRV01", "CL01")]
        assert max(starts) < order["install-forest:DC01"]

    def test_switch_before_vms(self, order):
        assert order["create-switch:LabInternal"] < order["create-vm:DC01"]

    def test_forest_before_replica(self, order):
        assert order["create-ous:DC01"] < order["install-replica-dc:DC02"]

    def test_all_dcs_before_joins(self, order):
        for member in ("SRV01", "CL01"):
            assert order["configure-dns:DC02"] < order[f"join-domain:{member}"]
            assert order["create-ous:DC01"] < order[f"join-domain:{member}"]

    def test_services_after_join(self, order):
        for stage_id in ("install-dhcp:SRV01", "create-share:SRV01/Public", "install-wsus:SRV01"):
            assert order["join-domain:SRV01"] < order[stage_id]

    def test_clone_sequence(self, order):
        sequence = [
            "verify-dcs:DC01",
            "authorize-clone:DC01",
            "prepare-clone:DC01",
            "stop-vm:DC01",
            "export-vm:DC01",
            "clear-clone-config:DC01",
            "resume-vm:DC01",
            "import-clone:DC03",
            "start-vm:DC03",
        ]
        positions = [order[s] for s in sequence]
        assert positions == sorted(positions)
        assert order["configure-dns:DC02"] < order["verify-dcs:DC01"]

    def test_install_os_is_wait_only(self, plan):
        stage = plan.get("install-os:CL01")
        assert stage.action is None
        assert stage.credential == CredentialContext.LOCAL
        assert stage.waits == [GuestResponds("CL01")]
        assert stage.milestone == NodeState.RESPONDING

    def test_replica_waits_for_registration(self, plan):
        stage = plan.get("install-replica-dc:DC02")
        assert DomainControllerRegistered("DC01", "DC02") in stage.waits
        assert stage.milestone == NodeState.PROMOTED

    def test_join_waits_for_membership(self, plan):
        stage = plan.get("join-domain:SRV01")
        assert stage.waits == [DomainMember("SRV01", "corp.example.com")]
        assert stage.milestone == NodeState.JOINED

    def test_clone_checks(self, plan):
        assert plan.get("verify-dcs:DC01").waits == [DomainControllersHealthy("DC01", 2)]
        assert plan.get("authorize-clone:DC01").waits == [
            GroupMembershipReplicated("DC02", "Cloneable Domain Controllers", "DC01")
        ]
        assert plan.get("stop-vm:DC01").waits == [VmState("DC01", "Off")]
        clone_start = plan.get("start-vm:DC03")
        assert clone_start.milestone == NodeState.CLONED
        assert DomainControllerRegistered("DC01", "DC03") in clone_start.waits

    def test_guest_stages_use_domain_credentials(self, plan):
        domain_stages = (
            "configure-dns:DC01",
            "create-ous:DC01",
            "install-dhcp:SRV01",
            "create-gpo:Lab - Windows Update",
        )
        for stage_id in domain_stages:
            assert plan.get(stage_id).credential == CredentialContext.DOMAIN

    def test_minimal_lab(self, lab_data):
        for key in ("dhcp", "file_shares", "wsus", "group_policies", "clone"):
            lab_data.pop(key)
        lab_data["machines"] = lab_data["machines"][:1]

        plan = build_plan(parse_lab(lab_data))

        assert plan.ids == [
            "create-switch:LabInternal",
            "build-media:DC01",
            "create-vm:DC01",
            "start-vm:DC01",
            "install-os:DC01",
            "eject-media:DC01",
            "install-forest:DC01",
            "configure-dns:DC01",
            "create-ous:DC01",
        ]
