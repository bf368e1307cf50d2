import csv
import logging
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..errors import PrerequisiteMissing
from ..models.provisioning import HRRecord

logger = logging.getLogger(__name__)

# HR export column -> HRRecord field
HR_COLUMN_MAP: Dict[str, str] = {
    "EmployeeId": "employee_id",
    "UserPrincipalName": "user_principal_name",
    "GivenName": "given_name",
    "Surname": "surname",
    "Department": "department",
    "JobTitle": "job_title",
    "ManagerUPN": "manager_upn",
    "StartDate": "start_date",
    "EndDate": "end_date",
}

REQUIRED_COLUMNS = ["EmployeeId", "GivenName", "Surname", "StartDate"]


class HRSource(ABC):
    @abstractmethod
    def load_records(self) -> List[HRRecord]:
        pass


class CsvHRSource(HRSource):
    """Reads the scheduled HR export (one row per worker)."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.rejected: List[Dict[str, str]] = []

    def load_records(self) -> List[HRRecord]:
        if not self.path.exists():
            raise PrerequisiteMissing(
                f"HR export not found: {self.path}",
                remediation="Export the worker report from the HR system and pass its path.",
            )

        records: List[HRRecord] = []
        with self.path.open("r", encoding="utf-8-sig", newline="") as handle:
            reader = csv.DictReader(handle)
            missing = [column for column in REQUIRED_COLUMNS if column not in (reader.fieldnames or [])]
            if missing:
                raise PrerequisiteMissing(
                    f"HR export {self.path} is missing columns: {', '.join(missing)}",
                    remediation=f"Expected columns: {', '.join(HR_COLUMN_MAP)}",
                )

            for line_number, row in enumerate(reader, start=2):
                record = self._parse_row(row, line_number)
                if record is not None:
                    records.append(record)

        logger.info("Loaded %s HR records from %s (%s rejected)", len(records), self.path, len(self.rejected))
        return records

    def _parse_row(self, row: Dict[str, str], line_number: int) -> Optional[HRRecord]:
        data = {}
        for column, field in HR_COLUMN_MAP.items():
            value = (row.get(column) or "").strip()
            if value:
                data[field] = value
        try:
            return HRRecord(**data)
        except ValidationError as exc:
            reason = exc.errors()[0].get("msg", "invalid row")
            logger.warning("Rejected HR row %s: %s", line_number, reason)
            self.rejected.append({**row, "line": str(line_number), "reason": reason})
            return None


def parse_date(value: str) -> date:
    return date.fromisoformat(value)
