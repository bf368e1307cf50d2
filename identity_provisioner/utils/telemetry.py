import logging
from collections import Counter
from typing import Dict, Optional

from opentelemetry import metrics, trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from ..models.provisioning import UpsertResult, UpsertStatus

_meter = metrics.get_meter(__name__)


def setup_telemetry(service_name: str = "identity-provisioner", directory_provider: str = "graph"):
    """Print spans for every upsert to the console (``--trace``)."""
    resource = Resource(attributes={
        "service.name": service_name,
        "provisioner.directory": directory_provider,
    })

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)

    return trace.get_tracer(__name__)


def setup_logging(log_level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    # The Azure SDK and httpx log every HTTP request at INFO.
    for noisy in ("azure", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return logging.getLogger("identity_provisioner")


class ProvisioningMetrics:
    """Per-workflow tally of upsert outcomes, mirrored to an OpenTelemetry counter."""

    def __init__(self):
        self._counts: Counter = Counter()
        self._results = _meter.create_counter(
            "provisioner.upsert.results",
            description="Upsert outcomes by workflow, resource kind and status",
        )

    def record(self, workflow: str, result: UpsertResult) -> None:
        self._counts[(workflow, result.kind, result.status)] += 1
        self._results.add(1, {"workflow": workflow, "kind": result.kind, "status": result.status.value})

    def count(self, workflow: str, status: UpsertStatus, kind: Optional[str] = None) -> int:
        return sum(
            n for (wf, k, s), n in self._counts.items()
            if wf == workflow and s == status and (kind is None or k == kind)
        )

    def summary(self, workflow: str) -> Dict[UpsertStatus, int]:
        """Counts per status in enum order, omitting statuses that never occurred."""
        totals: Dict[UpsertStatus, int] = {}
        for status in UpsertStatus:
            total = self.count(workflow, status)
            if total:
                totals[status] = total
        return totals

