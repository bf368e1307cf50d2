import asyncio
from datetime import date
from pathlib import Path

import pytest

from identity_provisioner.errors import PrerequisiteMissing
from identity_provisioner.integrations.hr import CsvHRSource
from identity_provisioner.models.provisioning import HRRecord, UpsertStatus
from identity_provisioner.workflows.confirmation import StaticConfirmation
from identity_provisioner.workflows.hr_sync import (
    attribute_changes,
    derive_user_principal_name,
    generate_temporary_password,
    sync_from_hr,
)

TODAY = date(2025, 3, 3)


def _record(**overrides):
    data = {
        "employee_id": "E100",
        "given_name": "Ada",
        "surname": "Lovelace",
        "department": "Engineering",
        "job_title": "Engineer",
        "start_date": date(2025, 3, 10),
    }
    data.update(overrides)
    return HRRecord(**data)


def _seed_user(directory, user_id, **fields):
    user = {"id": user_id, "accountEnabled": True, **fields}
    directory.users[user_id] = user
    return user


def test_joiner_inside_window_is_created(session, directory):
    _seed_user(directory, "mgr-1", userPrincipalName="grace@contoso.com", employeeId="E001")

    report = asyncio.run(sync_from_hr(session, [_record(manager_upn="grace@contoso.com")], TODAY))

    result = report.results[0]
    assert result.status == UpsertStatus.CREATED
    assert result.name == "ada.lovelace@contoso.com"
    user = directory.users[result.resource_id]
    assert user["accountEnabled"] is True
    assert user["employeeId"] == "E100"
    assert user["passwordProfile"]["forceChangePasswordNextSignIn"] is True
    assert directory.managers[result.resource_id] == "mgr-1"


def test_joiner_outside_window_is_skipped(session, directory):
    report = asyncio.run(sync_from_hr(session, [_record(start_date=date(2025, 5, 1))], TODAY))

    assert report.results[0].status == UpsertStatus.SKIPPED
    assert "outside onboarding window" in report.results[0].detail
    assert not any(call.startswith("create_user:") for call in directory.calls)


def test_joiner_is_not_created_twice(session, new_session, directory):
    asyncio.run(sync_from_hr(session, [_record()], TODAY))
    second = asyncio.run(sync_from_hr(new_session(), [_record()], TODAY))

    assert second.results[0].status == UpsertStatus.REUSED
    assert len(directory.users) == 1


def test_mover_updates_changed_fields(session, directory):
    _seed_user(
        directory,
        "user-1",
        userPrincipalName="ada@contoso.com",
        employeeId="E100",
        department="Sales",
        jobTitle="Engineer",
    )
    _seed_user(directory, "mgr-2", userPrincipalName="linus@contoso.com")
    directory.managers["user-1"] = "mgr-1"

    record = _record(department="Marketing", manager_upn="linus@contoso.com")
    report = asyncio.run(sync_from_hr(session, [record], TODAY))

    result = report.results[0]
    assert result.status == UpsertStatus.UPDATED
    assert result.detail == "mover: department, manager"
    assert directory.users["user-1"]["department"] == "Marketing"
    assert directory.managers["user-1"] == "mgr-2"


def test_unchanged_user_is_reused(session, directory):
    _seed_user(
        directory,
        "user-1",
        userPrincipalName="ada@contoso.com",
        employeeId="E100",
        department="Engineering",
        jobTitle="Engineer",
    )

    report = asyncio.run(sync_from_hr(session, [_record()], TODAY))

    assert report.results[0].status == UpsertStatus.REUSED
    assert not any(call.startswith("update_user:") for call in directory.calls)


def test_leaver_disabled_after_confirmation(session, directory):
    _seed_user(directory, "user-1", userPrincipalName="ada@contoso.com", employeeId="E100")
    directory.group_members["group-a"] = {"user-1", "user-2"}
    directory.group_members["group-b"] = {"user-1"}
    session.confirmation = StaticConfirmation(True)

    report = asyncio.run(sync_from_hr(session, [_record(end_date=date(2025, 3, 1))], TODAY))

    result = report.results[0]
    assert result.status == UpsertStatus.UPDATED
    assert directory.users["user-1"]["accountEnabled"] is False
    assert directory.group_members["group-a"] == {"user-2"}
    assert directory.group_members["group-b"] == set()
    assert "2 group membership(s)" in session.confirmation.questions[0]


def test_leaver_flagged_when_declined(session, directory):
    _seed_user(directory, "user-1", userPrincipalName="ada@contoso.com", employeeId="E100")
    directory.group_members["group-a"] = {"user-1"}

    report = asyncio.run(sync_from_hr(session, [_record(end_date=TODAY)], TODAY))

    assert report.results[0].status == UpsertStatus.FLAGGED
    assert directory.users["user-1"]["accountEnabled"] is True
    assert directory.group_members["group-a"] == {"user-1"}


def test_future_end_date_is_not_a_leaver(session, directory):
    _seed_user(
        directory,
        "user-1",
        userPrincipalName="ada@contoso.com",
        employeeId="E100",
        department="Engineering",
        jobTitle="Engineer",
    )

    report = asyncio.run(sync_from_hr(session, [_record(end_date=date(2025, 4, 1))], TODAY))

    assert report.results[0].status == UpsertStatus.REUSED
    assert directory.users["user-1"]["accountEnabled"] is True


def test_missing_domain_fails_joiner(session):
    session.settings.user_domain = ""

    report = asyncio.run(sync_from_hr(session, [_record()], TODAY))

    assert report.results[0].status == UpsertStatus.FAILED


def test_helpers():
    assert derive_user_principal_name(_record(given_name="Zoë", surname="O'Neil"), "contoso.com") == (
        "zo.oneil@contoso.com"
    )
    assert derive_user_principal_name(_record(user_principal_name="ada@fabrikam.com"), "contoso.com") == (
        "ada@fabrikam.com"
    )
    assert attribute_changes(_record(department="", job_title=""), {"department": "Sales"}) == {}

    password = generate_temporary_password()
    assert len(password) == 16
    assert any(c.isdigit() for c in password)


def test_csv_source_loads_and_rejects_rows(tmp_path):
    path = tmp_path / "hr.csv"
    path.write_text(
        "EmployeeId,UserPrincipalName,GivenName,Surname,Department,JobTitle,ManagerUPN,StartDate,EndDate\n"
        "E100,ada@contoso.com,Ada,Lovelace,Engineering,Engineer,,2025-03-10,\n"
        "E101,,Alan,Turing,Research,Scientist,ada@contoso.com,not-a-date,\n"
        "E102,,Grace,Hopper,Engineering,Admiral,,2024-01-01,2025-02-28\n",
        encoding="utf-8",
    )
    source = CsvHRSource(str(path))

    records = source.load_records()

    assert [r.employee_id for r in records] == ["E100", "E102"]
    assert records[0].manager_upn is None
    assert records[1].end_date == date(2025, 2, 28)
    assert len(source.rejected) == 1
    assert source.rejected[0]["line"] == "3"
    assert source.rejected[0]["reason"]


def test_csv_source_requires_columns(tmp_path):
    path = tmp_path / "hr.csv"
    path.write_text("EmployeeId,GivenName\nE100,Ada\n", encoding="utf-8")

    with pytest.raises(PrerequisiteMissing) as excinfo:
        CsvHRSource(str(path)).load_records()
    assert "Surname" in str(excinfo.value)


def test_csv_source_missing_file(tmp_path):
    with pytest.raises(PrerequisiteMissing):
        CsvHRSource(str(tmp_path / "missing.csv")).load_records()


def test_rejected_rows_are_reported_as_failed(session, directory, settings):
    rejected = [{"EmployeeId": "E101", "StartDate": "not-a-date", "line": "3", "reason": "Input should be a valid date"}]

    report = asyncio.run(sync_from_hr(session, [_record()], TODAY, rejected=rejected))

    assert [(r.name, r.status) for r in report.failed] == [("E101", UpsertStatus.FAILED)]
    assert "HR row 3 rejected" in report.failed[0].detail
    assert report.by_status(UpsertStatus.CREATED)[0].name == "ada.lovelace@contoso.com"
    findings = (Path(settings.output_dir) / "findings.csv").read_text(encoding="utf-8")
    assert "E101" in findings


def test_joiner_with_past_start_date_is_still_created(session, directory):
    report = asyncio.run(sync_from_hr(session, [_record(start_date=date(2025, 2, 17))], TODAY))

    assert report.results[0].status == UpsertStatus.CREATED
    assert report.results[0].resource_id in directory.users
