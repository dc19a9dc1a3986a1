from budgetflow.services.approval_policies import ApprovalPolicy, ApprovalStepDefinition, DocumentKind
from budgetflow.services.approver_resolver import (
    Member,
    live_approvers,
    resolve_approval_steps,
    resolve_approvers,
    reresolve_deferred_step,
)

MEMBERS = [
    Member("pm", name="Paula", role="PM"),
    Member("ep", name="Eli", role="EP"),
    Member("ctl", email="ctl@example.com", role="Controller"),
    Member("hod-cam", name="Hana", department="Camera", position="HOD"),
    Member("coord-cam", department="Camera", position="Coordinator"),
    Member("hod-art", department="Art", position="HOD"),
    Member("crew-cam", department="Camera", position="Crew"),
]


def _step(**data) -> ApprovalStepDefinition:
    return ApprovalStepDefinition.from_dict({"order": 1, **data})


def test_role_step_resolves_members_holding_any_listed_role():
    ids, names = resolve_approvers(_step(approver_type="role", roles=["PM", "EP"]), MEMBERS)
    assert ids == ["pm", "ep"]
    assert names == ["Paula", "Eli"]


def test_fixed_step_dedupes_and_falls_back_to_ids_for_unknown_members():
    ids, names = resolve_approvers(_step(approver_type="fixed", approvers=["ctl", "ghost", "ctl"]), MEMBERS)
    assert ids == ["ctl", "ghost"]
    assert names == ["ctl@example.com", "ghost"]


def test_department_steps_use_configured_department_first():
    assert resolve_approvers(_step(approver_type="hod", department="Art"), MEMBERS, "Camera")[0] == ["hod-art"]
    assert resolve_approvers(_step(approver_type="hod"), MEMBERS, "Camera")[0] == ["hod-cam"]
    assert resolve_approvers(_step(approver_type="coordinator"), MEMBERS, "Camera")[0] == ["coord-cam"]


def test_department_step_without_any_department_resolves_to_nobody():
    assert resolve_approvers(_step(approver_type="hod"), MEMBERS, None) == ([], [])


def test_generated_steps_mark_requester_department_steps_as_deferred():
    policy = ApprovalPolicy.from_steps("p1", DocumentKind.PO, [
        {"order": 1, "approver_type": "hod"},
        {"order": 2, "approver_type": "hod", "department": "Art"},
        {"order": 3, "approver_type": "role", "roles": ["Accountant"]},
    ])

    steps = resolve_approval_steps(policy, MEMBERS, "Camera")

    assert [s.department_deferred for s in steps] == [True, False, False]
    assert steps[0].resolved_approver_ids == ["hod-cam"]
    assert steps[1].resolved_approver_ids == ["hod-art"]
    assert steps[2].resolved_approver_ids == []


def test_role_snapshot_ignores_later_membership_changes():
    policy = ApprovalPolicy.from_steps("p1", DocumentKind.PO, [{"order": 1, "approver_type": "role", "roles": ["PM"]}])
    step = resolve_approval_steps(policy, MEMBERS)[0]
    reassigned = [Member("pm2", role="PM")]

    assert live_approvers(step, reassigned, "Camera")[0] == ["pm"]
    assert reresolve_deferred_step(step, reassigned, "Camera").resolved_approver_ids == ["pm"]


def test_deferred_step_follows_live_directory():
    policy = ApprovalPolicy.from_steps("p1", DocumentKind.PO, [{"order": 1, "approver_type": "hod"}])
    step = resolve_approval_steps(policy, MEMBERS, "Camera")[0]
    new_directory = [Member("hod-new", name="Nia", department="Camera", position="HOD")]

    assert live_approvers(step, new_directory, "Camera") == (["hod-new"], ["Nia"])
    assert live_approvers(step, None, "Camera")[0] == ["hod-cam"]

    reresolve_deferred_step(step, new_directory, "Camera")
    assert step.resolved_approver_ids == ["hod-new"]
