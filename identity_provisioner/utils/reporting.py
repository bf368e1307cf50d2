"""Run report and CSV artifacts (name -> id mappings, append-only findings)."""
import csv
import logging
from pathlib import Path
from typing import Dict, List, Optional

from opentelemetry import trace

from ..models.provisioning import UpsertResult, UpsertStatus
from .telemetry import ProvisioningMetrics

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

MAPPING_COLUMNS = ["Name", "Id", "Status", "CreatedAt"]
FINDING_COLUMNS = ["Timestamp", "Workflow", "Kind", "Name", "Status", "Detail"]
FINDINGS_FILE = "findings.csv"


class RunReport:
    """Collects upsert results for one workflow run and writes them out."""

    def __init__(self, output_dir: str, metrics: Optional[ProvisioningMetrics] = None):
        self.output_dir = Path(output_dir)
        self.metrics = metrics or ProvisioningMetrics()
        self.results: List[UpsertResult] = []
        self.workflow = "provisioning"

    def add(self, result: UpsertResult) -> UpsertResult:
        self.results.append(result)
        self.metrics.record(self.workflow, result)

        message = "%s %s '%s'%s"
        args = (result.status.value.upper(), result.kind, result.name, f" ({result.detail})" if result.detail else "")
        if result.status == UpsertStatus.FAILED:
            logger.error(message, *args)
        elif result.status == UpsertStatus.FLAGGED:
            logger.warning(message, *args)
        else:
            logger.info(message, *args)

        if result.status in (UpsertStatus.FAILED, UpsertStatus.FLAGGED):
            self.append_finding(result)
        return result

    @property
    def failed(self) -> List[UpsertResult]:
        return [r for r in self.results if r.status == UpsertStatus.FAILED]

    def by_status(self, status: UpsertStatus) -> List[UpsertResult]:
        return [r for r in self.results if r.status == status]

    def append_finding(self, result: UpsertResult) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / FINDINGS_FILE
        write_header = not path.exists()
        with path.open("a", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=FINDING_COLUMNS)
            if write_header:
                writer.writeheader()
            writer.writerow({
                "Timestamp": result.recorded_at.isoformat(timespec="seconds"),
                "Workflow": self.workflow,
                "Kind": result.kind,
                "Name": result.name,
                "Status": result.status.value,
                "Detail": result.detail,
            })

    def write_mappings(self) -> Dict[str, Path]:
        """Extend each ``<kind>s.csv`` with this run's identifiers, one row per name."""
        with _tracer.start_as_current_span("report.write_mappings"):
            grouped: Dict[str, List[UpsertResult]] = {}
            for result in self.results:
                if result.ok and result.resource_id:
                    grouped.setdefault(result.kind, []).append(result)

            written: Dict[str, Path] = {}
            self.output_dir.mkdir(parents=True, exist_ok=True)
            for kind, results in grouped.items():
                path = self.output_dir / f"{kind}s.csv"
                rows = read_mapping(path)
                for result in results:
                    previous = rows.get(result.name)
                    created_at = result.recorded_at.isoformat(timespec="seconds")
                    if previous and result.status != UpsertStatus.CREATED and previous.get("Id") == result.resource_id:
                        created_at = previous.get("CreatedAt") or created_at
                    rows[result.name] = {
                        "Name": result.name,
                        "Id": result.resource_id,
                        "Status": result.status.value,
                        "CreatedAt": created_at,
                    }
                with path.open("w", encoding="utf-8", newline="") as handle:
                    writer = csv.DictWriter(handle, fieldnames=MAPPING_COLUMNS)
                    writer.writeheader()
                    writer.writerows(rows.values())
                written[kind] = path
                logger.info("Wrote %s %s mappings to %s", len(rows), kind, path)
            return written


def read_mapping(path: Path) -> Dict[str, Dict[str, str]]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8", newline="") as handle:
        return {row["Name"]: row for row in csv.DictReader(handle) if row.get("Name")}
