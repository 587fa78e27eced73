"""Entry point for `python -m casegen_pipeline` and the `casegen` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from casegen_pipeline.errors import BadRequestError, CaseNotFoundError
from casegen_pipeline.orchestrator import CaseOrchestrator
from casegen_pipeline.service import CaseGenerationService
from casegen_pipeline.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate, inspect and resume case bundles")
    parser.add_argument("--state-store-root", type=Path, default=None, help="Override CASEGEN_STATE_STORE_ROOT")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Submit a request and run it to completion")
    run.add_argument("--request-file", type=Path, default=None, help="JSON generation request")
    run.add_argument("--title", default=None)
    run.add_argument("--location", default=None)
    run.add_argument("--difficulty", default=None)
    run.add_argument("--timezone", default=None, help="Defaults to CASEGEN_DEFAULT_TIMEZONE")
    run.add_argument("--no-images", action="store_true", help="Skip media rendering")

    status = commands.add_parser("status", help="Print the status envelope of a case")
    status.add_argument("case_id")

    resume = commands.add_parser("resume", help="Continue an interrupted case")
    resume.add_argument("case_id")

    files = commands.add_parser("files", help="List stored files of a case")
    files.add_argument("case_id")
    files.add_argument("--pattern", default="*", help="Glob over relative paths")
    return parser.parse_args(argv)


def load_request(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> dict[str, Any]:
    request_file = args.request_file
    if request_file is None:
        default_path = settings.default_request_file(repo_root)
        if default_path.is_file() and args.title is None:
            request_file = default_path
    if request_file is not None:
        if not request_file.is_file():
            raise FileNotFoundError(f"Request file does not exist: {request_file}")
        loaded = json.loads(request_file.read_text(encoding="utf-8"))
        if not isinstance(loaded, dict):
            raise BadRequestError(f"Request file must hold a JSON object: {request_file}")
        loaded.setdefault("timezone", settings.default_timezone)
        return loaded

    payload: dict[str, Any] = {
        "timezone": args.timezone or settings.default_timezone,
        "generateImages": not args.no_images,
    }
    for key in ("title", "location", "difficulty"):
        value = getattr(args, key)
        if value is not None:
            payload[key] = value
    return payload


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2

    orchestrator = CaseOrchestrator(settings=settings, state_store_root=args.state_store_root)
    service = CaseGenerationService(orchestrator)
    try:
        if args.command == "run":
            try:
                payload = load_request(args, settings, Path.cwd())
                case_id = orchestrator.submit(payload)
            except (OSError, ValueError) as exc:
                logging.error("Unable to load request: %s", exc)
                return 1
            print(f"case_id={case_id}")
            final = orchestrator.run(case_id)
            print(f"stage={final.stage.value}")
            if final.error:
                print(f"error={final.error}")
            return 0 if final.stage.value == "Completed" else 1

        if args.command == "status":
            print(json.dumps(service.get_status(args.case_id), indent=2))
            return 0

        if args.command == "resume":
            try:
                final = orchestrator.resume(args.case_id)
            except ValueError as exc:
                logging.error("%s", exc)
                return 1
            print(f"stage={final.stage.value}")
            return 0 if final.stage.value == "Completed" else 1

        if args.command == "files":
            for record in service.read_files(args.case_id, args.pattern):
                print(f"{record['path']}\t{record['sizeBytes']}")
            return 0
    except CaseNotFoundError as exc:
        logging.error("%s", exc)
        return 1
    finally:
        orchestrator.close()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
