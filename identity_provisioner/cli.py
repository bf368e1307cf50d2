import argparse
import asyncio
import sys
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config.settings import get_settings
from .errors import PrerequisiteMissing, UnrecognizedEnvironment
from .integrations.hr import CsvHRSource, parse_date
from .models.provisioning import UpsertStatus
from .session import ProvisioningSession, build_session
from .utils.reporting import RunReport
from .utils.telemetry import setup_logging, setup_telemetry
from .workflows.confirmation import ConfirmationProvider, RichConfirmation, StaticConfirmation
from .workflows.hr_sync import sync_from_hr
from .workflows.mfa_rollout import (
    enable_passkeys_for_enrollment_groups,
    import_enrollment_members,
    provision_enrollment,
)
from .workflows.rbac_provisioning import provision_subscription, provision_virtual_machine

console = Console()

EXIT_OK = 0
EXIT_HALTED = 1
EXIT_PARTIAL = 2

STATUS_STYLES = {
    UpsertStatus.CREATED: "green",
    UpsertStatus.REUSED: "cyan",
    UpsertStatus.UPDATED: "yellow",
    UpsertStatus.FLAGGED: "bold yellow",
    UpsertStatus.FAILED: "bold red",
    UpsertStatus.SKIPPED: "dim",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="identity-provisioner",
        description="Idempotent RBAC, access package, MFA rollout and HR provisioning for Entra ID and Azure.",
    )
    answer = parser.add_mutually_exclusive_group()
    answer.add_argument("--yes", action="store_true", help="Answer yes to every confirmation prompt")
    answer.add_argument("--no", action="store_true", help="Answer no to every confirmation prompt")
    parser.add_argument("--mock", action="store_true", help="Use the in-memory directory instead of Azure")
    parser.add_argument("--trace", action="store_true", help="Export OpenTelemetry spans to the console")

    commands = parser.add_subparsers(dest="command", required=True)

    sub = commands.add_parser("rbac-subscription", help="Provision role groups and access packages for a subscription")
    sub.add_argument("name", help="Subscription name, e.g. sub-work-prod-01")
    sub.add_argument("--subscription-id", default=None, help="Defaults to AZURE_SUBSCRIPTION_ID")

    vm = commands.add_parser("rbac-vm", help="Provision login groups and access packages for a virtual machine")
    vm.add_argument("name", help="Virtual machine name")
    vm.add_argument("--scope", required=True, help="Full resource ID of the virtual machine")

    commands.add_parser("mfa-rollout", help="Create enrollment groups and report-only Conditional Access policies")

    mfa_import = commands.add_parser("mfa-import", help="Add users from a CSV to the enrollment groups")
    mfa_import.add_argument("csv", help="CSV with UserPrincipalName and Platform columns")

    commands.add_parser("mfa-passkeys", help="Enable the passkey (FIDO2) method for the enrollment groups")

    hr = commands.add_parser("hr-sync", help="Apply joiner, mover and leaver changes from an HR export")
    hr.add_argument("csv", help="HR export CSV")
    hr.add_argument("--today", type=parse_date, default=None, help="Evaluate dates as of YYYY-MM-DD")

    return parser


class ProvisioningCLI:
    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.settings = get_settings()
        if args.mock:
            self.settings.directory_provider = "mock"
        self.logger = setup_logging(self.settings.log_level)
        if args.trace:
            setup_telemetry(directory_provider=self.settings.directory_provider)

    def confirmation(self) -> ConfirmationProvider:
        if self.args.yes:
            return StaticConfirmation(True)
        if self.args.no:
            return StaticConfirmation(False)
        return RichConfirmation(console)

    def display_banner(self):
        console.print(Panel(
            f"Identity Provisioner\n[dim]directory: {self.settings.directory_provider}   "
            f"output: {self.settings.output_dir}[/dim]",
            style="bold cyan",
        ))

    def display_results(self, report: RunReport):
        table = Table(title=f"{report.workflow} results", show_header=True, header_style="bold magenta")
        table.add_column("Kind", style="cyan")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Detail", style="dim")

        for result in report.results:
            style = STATUS_STYLES.get(result.status, "")
            table.add_row(result.kind, result.name, f"[{style}]{result.status.value}[/{style}]", result.detail)
        console.print(table)

        summary = Table(show_header=True, header_style="bold magenta")
        summary.add_column("Status", style="cyan")
        summary.add_column("Count", style="green")
        for status, total in report.metrics.summary(report.workflow).items():
            summary.add_row(status.value, str(total))
        console.print(summary)

    async def dispatch(self, session: ProvisioningSession) -> RunReport:
        args = self.args
        if args.command == "rbac-subscription":
            return await provision_subscription(
                session, args.name, args.subscription_id or self.settings.azure_subscription_id
            )
        if args.command == "rbac-vm":
            return await provision_virtual_machine(session, args.name, args.scope)
        if args.command == "mfa-rollout":
            return await provision_enrollment(session)
        if args.command == "mfa-import":
            return await import_enrollment_members(session, args.csv)
        if args.command == "mfa-passkeys":
            return await enable_passkeys_for_enrollment_groups(session)
        if args.command == "hr-sync":
            source = CsvHRSource(args.csv)
            records = source.load_records()
            return await sync_from_hr(session, records, args.today, rejected=source.rejected)
        raise ValueError(f"Unknown command {args.command}")

    async def run(self) -> int:
        self.display_banner()
        session = build_session(self.settings, self.confirmation())
        try:
            report = await self.dispatch(session)
        except PrerequisiteMissing as e:
            console.print(f"[red]Prerequisite missing:[/red] {e}")
            if e.remediation:
                console.print(f"[yellow]{e.remediation}[/yellow]")
            return EXIT_HALTED
        except UnrecognizedEnvironment as e:
            console.print(f"[red]{e}[/red]")
            console.print("[yellow]Resource names must contain exactly one of -dev-, -stg-, -prod-.[/yellow]")
            return EXIT_HALTED
        finally:
            await session.close()

        self.display_results(report)
        if report.failed:
            console.print(f"[red]{len(report.failed)} operation(s) failed; see {self.settings.output_dir}[/red]")
            return EXIT_PARTIAL
        return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cli = ProvisioningCLI(args)
    return asyncio.run(cli.run())


if __name__ == "__main__":
    sys.exit(main())
