"""Request/response surface for callers: start a generation, poll its status, query its files."""

from __future__ import annotations

from typing import Any

from .orchestrator import CaseOrchestrator


class CaseGenerationService:
    def __init__(self, orchestrator: CaseOrchestrator) -> None:
        self.orchestrator = orchestrator

    def start_generation(self, payload: dict[str, Any]) -> dict[str, str]:
        """Accept a generation request and start it asynchronously.

        Raises:
            BadRequestError: If *payload* is malformed. No case is created.
        """
        case_id = self.orchestrator.start(payload)
        return {"caseId": case_id, "status": "Started"}

    def get_status(self, case_id: str) -> dict[str, Any]:
        """Return the latest status envelope for *case_id*.

        Raises:
            CaseNotFoundError: If the case id is unknown.
        """
        status = self.orchestrator.get_status(case_id)
        record = status.to_record()
        return {
            "caseId": status.case_id,
            "stage": status.stage.value,
            "createdAt": record["startedAt"],
            "lastUpdatedAt": record["lastUpdatedAt"],
            "customStatus": record,
            "output": record["output"],
        }

    def read_files(self, case_id: str, pattern: str = "*") -> list[dict[str, Any]]:
        return [stored.to_record() for stored in self.orchestrator.store.read_files(case_id, pattern)]
