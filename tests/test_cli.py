import csv
from pathlib import Path

from identity_provisioner import cli
from identity_provisioner.errors import RemoteCallFailed

from conftest import SUBSCRIPTION_ID, VM_SCOPE


def _use(monkeypatch, settings, session=None):
    monkeypatch.setattr("identity_provisioner.cli.get_settings", lambda: settings)
    if session is not None:
        monkeypatch.setattr("identity_provisioner.cli.build_session", lambda _settings, _confirmation: session)


def test_subscription_command_succeeds(monkeypatch, settings, session, directory):
    _use(monkeypatch, settings, session)

    code = cli.main(["--mock", "--yes", "rbac-subscription", "sub-work-dev-01", "--subscription-id", SUBSCRIPTION_ID])

    assert code == cli.EXIT_OK
    assert len(directory.groups) == 3


def test_unrecognized_environment_exits_halted(monkeypatch, settings, session, directory):
    _use(monkeypatch, settings, session)

    code = cli.main(["--mock", "rbac-subscription", "sub-work-01", "--subscription-id", SUBSCRIPTION_ID])

    assert code == cli.EXIT_HALTED
    assert directory.calls == []


def test_partial_failure_exits_with_two(monkeypatch, settings, session, directory):
    directory.failures["create_catalog"] = RemoteCallFailed("create_catalog", "Azure RBAC")
    _use(monkeypatch, settings, session)

    code = cli.main(["--mock", "--no", "rbac-vm", "vm-webapp-01", "--scope", VM_SCOPE])

    assert code == cli.EXIT_PARTIAL
    assert len(directory.groups) == 2


def test_missing_hr_export_exits_halted(monkeypatch, settings, tmp_path):
    _use(monkeypatch, settings)

    code = cli.main(["--mock", "hr-sync", str(tmp_path / "missing.csv"), "--today", "2025-03-03"])

    assert code == cli.EXIT_HALTED


def test_confirmation_flags(monkeypatch, settings):
    _use(monkeypatch, settings)

    yes = cli.ProvisioningCLI(cli.build_parser().parse_args(["--yes", "mfa-rollout"]))
    no = cli.ProvisioningCLI(cli.build_parser().parse_args(["--no", "mfa-rollout"]))

    assert yes.confirmation().answer is True
    assert no.confirmation().answer is False
    assert isinstance(
        cli.ProvisioningCLI(cli.build_parser().parse_args(["mfa-rollout"])).confirmation(),
        cli.RichConfirmation,
    )


def test_rejected_hr_rows_exit_with_two(monkeypatch, settings, tmp_path):
    _use(monkeypatch, settings)
    export = tmp_path / "hr.csv"
    export.write_text(
        "EmployeeId,GivenName,Surname,StartDate\n"
        "E101,Alan,Turing,not-a-date\n",
        encoding="utf-8",
    )

    code = cli.main(["--mock", "--no", "hr-sync", str(export), "--today", "2025-03-03"])

    assert code == cli.EXIT_PARTIAL
    with (Path(settings.output_dir) / "findings.csv").open(newline="") as handle:
        findings = list(csv.DictReader(handle))
    assert [(f["Kind"], f["Name"], f["Status"]) for f in findings] == [("user", "E101", "failed")]
