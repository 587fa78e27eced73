from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from casegen_pipeline.errors import BadRequestError, CaseNotFoundError, DesignParseFailure
from casegen_pipeline.generation import CaseActivities
from casegen_pipeline.models import DesignResult, GenerationSpec, Manifest, PipelineStage, PipelineStatus
from casegen_pipeline.orchestrator import CaseOrchestrator, StatusPublisher, new_case_id
from casegen_pipeline.packaging import verify_manifest
from casegen_pipeline.service import CaseGenerationService
from casegen_pipeline.state_store import CaseStateStore

from support import RecordingBackend, make_settings

REQUEST = {"timezone": "UTC", "title": "The Locked Gallery", "difficulty": "Rookie"}

Builder = Callable[..., tuple[CaseOrchestrator, RecordingBackend]]


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-stage."""


@pytest.fixture
def build(tmp_path: Path) -> Iterator[Builder]:
    created: list[CaseOrchestrator] = []

    def factory(
        activities: type[CaseActivities] = CaseActivities,
        failures: dict[str, Any] | None = None,
        **overrides: Any,
    ) -> tuple[CaseOrchestrator, RecordingBackend]:
        settings = make_settings(tmp_path, **overrides)
        backend = RecordingBackend(activities(CaseStateStore(Path(settings.state_store_root))), failures=failures)
        orchestrator = CaseOrchestrator(settings=settings, backend=backend)
        created.append(orchestrator)
        return orchestrator, backend

    yield factory
    for orchestrator in created:
        orchestrator.close()


def test_case_ids_are_dated_and_unique() -> None:
    first, second = new_case_id(), new_case_id()
    assert first.startswith("CASE-") and len(first.split("-")) == 3
    assert first != second


def test_end_to_end_run_completes_and_packages(build: Builder) -> None:
    orchestrator, backend = build()
    case_id = orchestrator.submit(REQUEST)

    status = orchestrator.run(case_id)

    assert status.stage == PipelineStage.COMPLETED
    assert status.progress == 1.0
    assert status.error is None
    assert status.completed_stages == [
        "Planning",
        "Expanding",
        "Designing",
        "GeneratingContent",
        "Normalizing",
        "Indexing",
        "ValidatingRules",
        "Refining",
        "Packaging",
    ]
    manifest = Manifest.model_validate(status.output["manifest"])
    assert manifest.refinement.clean is True
    assert verify_manifest(orchestrator.store, manifest) == []
    assert {entry.id for entry in manifest.entries} >= {"DOC-POLICE-REPORT", "DOC-FORENSICS", "EVD-SCENE-PHOTO"}
    assert manifest.visibility.hidden_until_unlocked == ["DOC-FORENSICS"]
    assert set(manifest.visibility.gated_visible) == {"DOC-ACCESS-LOG", "EVD-CCTV"}

    documents = orchestrator.store.read_files(case_id, "documents/*.json")
    assert len(documents) == len([entry for entry in manifest.entries if entry.type == "document"])
    assert orchestrator.store.read_files(case_id, "rendered/media/*")
    assert backend.calls["generate_document"] + backend.calls["generate_media"] == len(manifest.entries)

    steps = [event["step"] for event in orchestrator.store.read_events(case_id)]
    assert steps[0] == "CASE_CREATED"
    assert steps[-1] == "WORKFLOW_COMPLETE"
    assert "REFINE_COMPLETE" in steps
    assert len(orchestrator.review_cache) == 0


def test_progress_is_monotonic_across_stages(build: Builder, monkeypatch: pytest.MonkeyPatch) -> None:
    orchestrator, _ = build()
    case_id = orchestrator.submit(REQUEST)
    written: list[float] = []
    real_write = orchestrator.store.write_status

    def spy(status: PipelineStatus, *, expected_version: int) -> PipelineStatus:
        written.append(status.progress)
        return real_write(status, expected_version=expected_version)

    monkeypatch.setattr(orchestrator.store, "write_status", spy)
    orchestrator.run(case_id)

    assert written == sorted(written)
    distinct = [value for index, value in enumerate(written) if index == 0 or value != written[index - 1]]
    assert distinct == [0.1, 0.2, 0.3, 0.45, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0]


def test_images_disabled_skips_media_rendering(build: Builder) -> None:
    orchestrator, backend = build()
    case_id = orchestrator.submit({**REQUEST, "generateImages": False})

    assert orchestrator.run(case_id).stage == PipelineStage.COMPLETED
    assert backend.calls["render_media"] == 0
    assert backend.calls["generate_media"] > 0
    assert orchestrator.store.read_files(case_id, "rendered/media/*") == []


def test_fanout_failure_fails_case_without_packaging(build: Builder) -> None:
    def fail_interview(spec: Any, context: Any) -> Exception | None:
        return RuntimeError("model refused") if spec.id == "DOC-INTERVIEW-01" else None

    orchestrator, backend = build(failures={"generate_document": fail_interview})
    case_id = orchestrator.submit(REQUEST)

    status = orchestrator.run(case_id)

    assert status.stage == PipelineStage.FAILED
    assert "DOC-INTERVIEW-01" in status.error
    assert status.progress == 0.45
    assert status.completed_stages == ["Planning", "Expanding", "Designing"]
    assert backend.calls["normalize"] == 0
    assert backend.calls["package"] == 0
    assert orchestrator.store.read_files(case_id, "manifest.json") == []


def test_design_parse_failure_is_fatal(build: Builder) -> None:
    orchestrator, backend = build(
        failures={"design": lambda *args, **kwargs: DesignParseFailure("documentSpecs is missing")}
    )
    case_id = orchestrator.submit(REQUEST)

    status = orchestrator.run(case_id)

    assert status.stage == PipelineStage.FAILED
    assert "documentSpecs" in status.error
    assert backend.calls["design"] == 1
    assert backend.calls["generate_document"] == 0


def test_empty_design_still_packages(build: Builder) -> None:
    class NothingToBuild(CaseActivities):
        def design(self, plan, expanded, case_id, difficulty=None):  # noqa: ANN001,ANN201
            return DesignResult()

    orchestrator, backend = build(activities=NothingToBuild)
    case_id = orchestrator.submit(REQUEST)

    status = orchestrator.run(case_id)

    assert status.stage == PipelineStage.COMPLETED
    assert Manifest.model_validate(status.output["manifest"]).entries == []
    assert backend.calls["generate_document"] == 0


def test_spec_ids_that_clean_up_alike_both_generate(build: Builder) -> None:
    class LookalikeIds(CaseActivities):
        def design(self, plan, expanded, case_id, difficulty=None):  # noqa: ANN001,ANN201
            return DesignResult(
                document_specs=[
                    GenerationSpec(id="DOC/1", kind="document", title="Slash"),
                    GenerationSpec(id="DOC_1", kind="document", title="Underscore"),
                ]
            )

    orchestrator, backend = build(activities=LookalikeIds)
    case_id = orchestrator.submit(REQUEST)

    status = orchestrator.run(case_id)

    assert status.stage == PipelineStage.COMPLETED, status.error
    manifest = Manifest.model_validate(status.output["manifest"])
    assert [entry.id for entry in manifest.entries] == ["DOC/1", "DOC_1"]
    assert len({entry.relative_path for entry in manifest.entries}) == 2
    assert backend.calls["generate_document"] == 2
    assert verify_manifest(orchestrator.store, manifest) == []


def test_resume_after_crash_does_not_repeat_recorded_steps(build: Builder) -> None:
    crashed = {"done": False}

    def crash_once(*_args: Any, **_kwargs: Any) -> BaseException | None:
        if crashed["done"]:
            return None
        crashed["done"] = True
        return SimulatedCrash()

    orchestrator, first = build(failures={"validate_rules": crash_once})
    case_id = orchestrator.submit(REQUEST)
    with pytest.raises(SimulatedCrash):
        orchestrator.run(case_id)
    interrupted = orchestrator.get_status(case_id)
    assert interrupted.stage == PipelineStage.VALIDATING_RULES
    assert first.calls["plan"] == 1
    orchestrator.close()

    resumed, second = build()
    status = resumed.resume(case_id)

    assert status.stage == PipelineStage.COMPLETED
    assert second.calls["plan"] == 0
    assert second.calls["design"] == 0
    assert second.calls["generate_document"] == 0
    assert second.calls["validate_rules"] == 1
    assert "WORKFLOW_RESUMED" in [event["step"] for event in resumed.store.read_events(case_id)]


def test_resume_of_finished_case_is_rejected(build: Builder) -> None:
    orchestrator, _ = build()
    case_id = orchestrator.submit(REQUEST)
    orchestrator.run(case_id)

    with pytest.raises(ValueError):
        orchestrator.resume(case_id)
    assert orchestrator.cancel(case_id) is False


def test_cancellation_fails_case_before_next_stage(build: Builder) -> None:
    entered = threading.Event()
    release = threading.Event()

    def block(*_args: Any, **_kwargs: Any) -> None:
        entered.set()
        release.wait(5)
        return None

    orchestrator, backend = build(failures={"plan": block})
    case_id = orchestrator.start(REQUEST)
    assert entered.wait(5)

    assert orchestrator.cancel(case_id, "operator stop") is True
    release.set()
    status = orchestrator.wait(case_id, timeout=30)

    assert status.stage == PipelineStage.FAILED
    assert status.error.startswith("cancelled")
    assert backend.calls["expand"] == 0


def test_service_envelope_and_queries(build: Builder) -> None:
    orchestrator, _ = build()
    service = CaseGenerationService(orchestrator)

    started = service.start_generation(REQUEST)
    assert started["status"] == "Started"
    orchestrator.wait(started["caseId"], timeout=30)

    envelope = service.get_status(started["caseId"])
    assert envelope["caseId"] == started["caseId"]
    assert envelope["stage"] == "Completed"
    assert envelope["customStatus"]["progress"] == 1.0
    assert "manifest" in envelope["output"]
    files = service.read_files(started["caseId"], "manifest.json")
    assert [record["path"] for record in files] == ["manifest.json"]

    with pytest.raises(CaseNotFoundError):
        service.get_status("CASE-20240101-deadbeef")


def test_bad_request_creates_no_case(build: Builder) -> None:
    orchestrator, _ = build()
    service = CaseGenerationService(orchestrator)

    with pytest.raises(BadRequestError):
        service.start_generation({"title": "No timezone"})
    assert list(orchestrator.store.cases_dir.glob("*")) == []


def test_publisher_never_regresses_or_reopens(tmp_path: Path) -> None:
    publisher = StatusPublisher(CaseStateStore(tmp_path))
    publisher.create("CASE-1")
    publisher.complete_stage("CASE-1", PipelineStage.INDEXING)

    stale = publisher.enter("CASE-1", PipelineStage.PLANNING)
    assert stale.stage == PipelineStage.INDEXING
    assert stale.progress == 0.7

    publisher.complete("CASE-1", {"manifest": {}})
    after = publisher.fail("CASE-1", "late failure")
    assert after.stage == PipelineStage.COMPLETED
    assert after.error is None
