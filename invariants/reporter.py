import logging
from typing import Any, Dict, List, Protocol

from .models import STATUS_ERROR, STATUS_FAILED, STATUS_INCONCLUSIVE, EvaluationReport

logger = logging.getLogger(__name__)


class ResultReporter(Protocol):
    """Downstream consumer of whole evaluation reports (alerting, dashboards)."""

    def publish(self, report: EvaluationReport) -> None:
        ...


def summarize(report: EvaluationReport) -> Dict[str, Any]:
    """
    Structured pass/fail record for one cycle.

    Shape:
      {"level": "hard"|"soft"|"ok", "reasons": [...], "vault_id": ..., "results": [...]}
    """
    reasons: List[str] = []
    for result in report.results:
        if result.status in (STATUS_FAILED, STATUS_ERROR) and result.detail:
            reasons.append(f"{result.check_name}: {result.detail}")

    return {
        "vault_id": report.vault_id,
        "level": report.level,
        "reasons": reasons,
        "alert": report.level == "hard",
        "block_ref": report.snapshot.block_ref,
        "evaluated_at": report.finished_at.isoformat(),
        "results": [r.to_dict() for r in report.results],
    }


class LoggingReporter:
    """Writes one line per cycle plus one per notable result."""

    def __init__(self, log: logging.Logger = logger) -> None:
        self.log = log

    def publish(self, report: EvaluationReport) -> None:
        summary = summarize(report)
        if summary["level"] == "hard":
            self.log.error("Vault %s: invariant alert at %s", report.vault_id, summary["block_ref"])
        elif summary["level"] == "soft":
            self.log.warning("Vault %s: cycle degraded at %s", report.vault_id, summary["block_ref"])
        else:
            self.log.info("Vault %s: all invariants hold at %s", report.vault_id, summary["block_ref"])

        for result in report.results:
            if result.status == STATUS_INCONCLUSIVE:
                self.log.info("  %s inconclusive: %s", result.check_name, result.detail)
            elif result.status in (STATUS_FAILED, STATUS_ERROR):
                self.log.warning("  %s %s: %s", result.check_name, result.status, result.detail)
