import csv
from datetime import datetime

from identity_provisioner.models.provisioning import UpsertResult, UpsertStatus
from identity_provisioner.utils.reporting import RunReport, read_mapping
from identity_provisioner.utils.telemetry import ProvisioningMetrics


def _result(name, resource_id, status, when):
    return UpsertResult(kind="group", name=name, resource_id=resource_id, status=status, recorded_at=when)


def test_mapping_keeps_first_created_at_for_reused_rows(tmp_path):
    first = RunReport(str(tmp_path))
    first.add(_result("RBAC-a", "id-a", UpsertStatus.CREATED, datetime(2025, 1, 1, 9, 0, 0)))
    first.write_mappings()

    second = RunReport(str(tmp_path))
    second.add(_result("RBAC-a", "id-a", UpsertStatus.REUSED, datetime(2025, 2, 1, 9, 0, 0)))
    second.add(_result("RBAC-b", "id-b", UpsertStatus.CREATED, datetime(2025, 2, 1, 9, 0, 0)))
    paths = second.write_mappings()

    rows = read_mapping(paths["group"])
    assert list(rows) == ["RBAC-a", "RBAC-b"]
    assert rows["RBAC-a"]["CreatedAt"] == "2025-01-01T09:00:00"
    assert rows["RBAC-a"]["Status"] == "reused"
    assert rows["RBAC-b"]["CreatedAt"] == "2025-02-01T09:00:00"


def test_mapping_deduplicates_within_one_run(tmp_path):
    report = RunReport(str(tmp_path))
    when = datetime(2025, 1, 1)
    report.add(_result("RBAC-a", "id-a", UpsertStatus.CREATED, when))
    report.add(_result("RBAC-a", "id-a", UpsertStatus.REUSED, when))
    report.add(_result("RBAC-c", None, UpsertStatus.FAILED, when))

    report.write_mappings()

    with (tmp_path / "groups.csv").open(newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["Name"] for row in rows] == ["RBAC-a"]


def test_findings_are_appended_across_runs(tmp_path):
    for run in range(2):
        report = RunReport(str(tmp_path))
        report.workflow = "rbac"
        report.add(UpsertResult(kind="group", name=f"g{run}", status=UpsertStatus.FAILED, detail="503"))
        report.add(UpsertResult(kind="group", name=f"ok{run}", resource_id="x", status=UpsertStatus.CREATED))

    lines = (tmp_path / "findings.csv").read_text(encoding="utf-8").splitlines()
    assert lines[0] == "Timestamp,Workflow,Kind,Name,Status,Detail"
    assert len(lines) == 3
    assert all(",rbac,group," in line for line in lines[1:])


def test_results_recorded_as_metrics(tmp_path):
    metrics = ProvisioningMetrics()
    report = RunReport(str(tmp_path), metrics)
    report.workflow = "mfa"

    report.add(UpsertResult(kind="ca_policy", name="p", resource_id="1", status=UpsertStatus.CREATED))
    report.add(UpsertResult(kind="ca_policy", name="q", status=UpsertStatus.SKIPPED, detail="no group"))

    assert metrics.count("mfa", UpsertStatus.CREATED) == 1
    assert metrics.count("mfa", UpsertStatus.SKIPPED, kind="ca_policy") == 1
    assert metrics.count("mfa", UpsertStatus.SKIPPED, kind="group") == 0
    assert metrics.summary("mfa") == {UpsertStatus.CREATED: 1, UpsertStatus.SKIPPED: 1}
    assert metrics.summary("rbac") == {}
    assert report.by_status(UpsertStatus.SKIPPED)[0].name == "q"
