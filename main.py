# main.py
"""
Command-line access point for the CV document service.

Pipeline for one form file:
    Stage A: form validation (FormValidator)
    Store:   save into an in-memory ResumeStore for owner "cli"
    Stage B: document generation (DocumentGenerationEngine)
    Output:  the resulting ResumeRecord as JSON on stdout

The LLM client follows parameters.yaml: set `generation.use_stub` to run the
CLI offline. Without an API key, generation fails as backend unavailable.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from functions.cv_orchestrator import CvOrchestrator
from functions.exceptions import CvServiceError
from functions.resume_store import InMemoryResumeStore
from functions.stage_a_validation import FormValidator
from functions.stage_b_generation import DocumentGenerationEngine
from functions.utils.common import load_generation_params, load_validation_params
from functions.utils.llm_client import build_llm_client
from schemas.internal_schema import DocumentType
from schemas.output_schema import ResumeRecord

logger = structlog.get_logger().bind(module="main")

CLI_OWNER_ID = "cli"
ALL_DOCUMENTS = "all"
TARGETS = [dt.value for dt in DocumentType] + [ALL_DOCUMENTS]


def build_cli_orchestrator() -> CvOrchestrator:
    """Orchestrator over a fresh in-memory store."""
    gen_cfg = load_generation_params()
    engine = DocumentGenerationEngine(build_llm_client(gen_cfg), gen_cfg)
    return CvOrchestrator(InMemoryResumeStore(), engine, FormValidator(load_validation_params()))


def run_cv_pipeline(
    form_input: Dict[str, Any],
    target: str = ALL_DOCUMENTS,
    *,
    orchestrator: Optional[CvOrchestrator] = None,
    owner_id: str = CLI_OWNER_ID,
) -> ResumeRecord:
    """
    Save a form and generate the requested document(s).

    `target` is a DocumentType value or "all" (one combined generation call).
    """
    orch = orchestrator or build_cli_orchestrator()

    cv_id = orch.save_cv(owner_id, form_input)
    logger.info("cli_form_saved", cv_id=cv_id, target=target)

    if target == ALL_DOCUMENTS:
        orch.generate_all_documents(cv_id, owner_id)
    else:
        orch.generate_document(cv_id, owner_id, target)

    record = orch.get_cv(cv_id, owner_id)
    logger.info("cli_pipeline_completed", cv_id=cv_id)
    return record


# ---------------------------------------------------------------------------
# CLI wrapper
# ---------------------------------------------------------------------------


def _cli(argv: Optional[List[str]] = None) -> int:
    """
    CLI usage:

        python main.py path/to/form.json [resumeDoc|careerHistoryDoc|all]

    Where form.json matches the CvFormInput schema.
    """
    args = sys.argv[1:] if argv is None else argv
    usage = f"Usage: python main.py path/to/form.json [{'|'.join(TARGETS)}]"
    if not args:
        print(usage, file=sys.stderr)
        return 1

    in_path = Path(args[0])
    target = args[1] if len(args) > 1 else ALL_DOCUMENTS
    if target not in TARGETS:
        print(f"[ERROR] Unknown document type: {target}", file=sys.stderr)
        print(usage, file=sys.stderr)
        return 1

    if not in_path.is_file():
        print(f"[ERROR] Input file not found: {in_path}", file=sys.stderr)
        return 1

    try:
        raw = json.loads(in_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"[ERROR] Failed to read form JSON: {e}", file=sys.stderr)
        return 1

    orch = build_cli_orchestrator()
    try:
        record = run_cv_pipeline(raw, target, orchestrator=orch)
    except CvServiceError as e:
        print(f"[ERROR] {e.error_code}: {e}", file=sys.stderr)
        return 1
    finally:
        orch.close()

    print(json.dumps(record.model_dump(mode="json"), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(_cli())
