# functions/cv_orchestrator.py

"""
CV Orchestrator: the public operations of the CV document service.

    save_cv                 validate → create / update form fields
    generate_document       load → ownership → generate one type → write one field
    generate_all_documents  load → ownership → one combined call → write both fields
    delete_cv               ownership → hard delete
    list_cvs / get_cv       owner-scoped reads
    watch_cvs / watch_cv    owner-scoped realtime snapshots
    suggest_skills          job title → skill names
    summarize_experience    free text → short summary

The ownership check (load the record, compare owner ids, reject with a
generic message) lives here and nowhere else. Validation failures never
reach the store or the generation backend; generation failures leave the
stored record untouched.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError
from structlog.contextvars import bound_contextvars

from functions.exceptions import CvNotFoundError, CvPermissionError, CvValidationError, GenerationError
from functions.resume_store import ResumeStore, Subscription, build_resume_store
from functions.stage_a_validation import FormValidator, violations_from_pydantic
from functions.stage_b_generation import DocumentGenerationEngine
from functions.utils.common import (
    load_all_parameters,
    load_generation_params,
    load_store_params,
    load_validation_params,
)
from functions.utils.llm_client import build_llm_client
from schemas.input_schema import CvFormInput, ExperienceSummaryInput, SkillSuggestionInput
from schemas.internal_schema import DocumentType, FieldViolation, GenerationRequest
from schemas.output_schema import ResumeRecord

logger = structlog.get_logger(__name__).bind(module="cv_orchestrator")

FORM_FIELDS = frozenset(CvFormInput.model_fields)


def _coerce_doc_type(doc_type: DocumentType | str) -> DocumentType:
    if isinstance(doc_type, DocumentType):
        return doc_type
    try:
        return DocumentType(doc_type)
    except ValueError:
        allowed = ", ".join(dt.value for dt in DocumentType)
        raise CvValidationError(
            [FieldViolation(path="doc_type", message=f"Document type must be one of: {allowed}")]
        ) from None


def _input_or_violation(model: Any, data: Dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise CvValidationError(violations_from_pydantic(exc)) from exc


class CvOrchestrator:
    """Coordinates validator, generation engine and store for one caller."""

    def __init__(
        self,
        store: ResumeStore,
        gateway: DocumentGenerationEngine,
        validator: FormValidator | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.validator = validator or FormValidator(load_validation_params())

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------
    @staticmethod
    def _require_owner(owner_id: str | None) -> str:
        if not owner_id or not str(owner_id).strip():
            raise CvPermissionError()
        return str(owner_id)

    def _load_owned(self, cv_id: str, owner_id: str) -> ResumeRecord:
        record = self.store.get_by_id(cv_id)
        if record is None:
            raise CvNotFoundError(cv_id)
        if record.owner_id != owner_id:
            logger.warning("cv_permission_denied", cv_id=cv_id, owner_id=owner_id)
            raise CvPermissionError()
        return record

    @staticmethod
    def _generation_request(record: ResumeRecord) -> GenerationRequest:
        form = _input_or_violation(
            CvFormInput, record.model_dump(mode="json", include=set(FORM_FIELDS))
        )
        return GenerationRequest.from_form(form)

    # ------------------------------------------------------------------
    # Form data
    # ------------------------------------------------------------------
    def save_cv(
        self,
        owner_id: str,
        form_input: Any,
        existing_id: str | None = None,
    ) -> str:
        """
        Validate and persist form data. Returns the record id.

        With `existing_id` only the form fields are replaced; generated
        documents stay as they are. Never calls the generation backend.
        """
        owner_id = self._require_owner(owner_id)
        form = self.validator.validate(form_input)
        fields = form.form_fields()

        with bound_contextvars(owner_id=owner_id, cv_id=existing_id or "new"):
            if existing_id:
                self._load_owned(existing_id, owner_id)
                self.store.update(existing_id, fields)
                logger.info("cv_saved", cv_id=existing_id, mode="update")
                return existing_id

            cv_id = self.store.create(
                {
                    "owner_id": owner_id,
                    **fields,
                    "formatted_resume_doc": None,
                    "career_history_doc": None,
                }
            )
            logger.info("cv_saved", cv_id=cv_id, mode="create")
            return cv_id

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def generate_document(self, cv_id: str, owner_id: str, doc_type: DocumentType | str) -> None:
        """Generate one document type and write only its field."""
        owner_id = self._require_owner(owner_id)
        doc_type = _coerce_doc_type(doc_type)

        with bound_contextvars(owner_id=owner_id, cv_id=cv_id, doc_type=doc_type.value):
            record = self._load_owned(cv_id, owner_id)
            request = self._generation_request(record)
            try:
                result = self.gateway.generate(request, doc_type)
            except GenerationError as exc:
                logger.warning(
                    "document_generation_failed",
                    cause=exc.cause,
                    detail=exc.detail,
                )
                raise

            text = result.get(doc_type)
            self.store.update(cv_id, {doc_type.record_field: text})
            logger.info("document_generated", field=doc_type.record_field, chars=len(text or ""))

    def generate_all_documents(self, cv_id: str, owner_id: str) -> None:
        """Generate both documents with one combined call and a single write."""
        owner_id = self._require_owner(owner_id)

        with bound_contextvars(owner_id=owner_id, cv_id=cv_id, doc_type="all"):
            record = self._load_owned(cv_id, owner_id)
            request = self._generation_request(record)
            try:
                result = self.gateway.generate(request, None)
            except GenerationError as exc:
                logger.warning(
                    "document_generation_failed",
                    cause=exc.cause,
                    detail=exc.detail,
                )
                raise

            self.store.update(cv_id, result.as_record_update())
            logger.info("documents_generated", fields=sorted(result.as_record_update()))

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def delete_cv(self, cv_id: str, owner_id: str) -> None:
        owner_id = self._require_owner(owner_id)
        with bound_contextvars(owner_id=owner_id, cv_id=cv_id):
            self._load_owned(cv_id, owner_id)
            self.store.delete(cv_id)
            logger.info("cv_deleted")

    def list_cvs(self, owner_id: str) -> List[ResumeRecord]:
        owner_id = self._require_owner(owner_id)
        return self.store.list_by_owner(owner_id)

    def get_cv(self, cv_id: str, owner_id: str) -> Optional[ResumeRecord]:
        """The record, or None when it does not exist. Raises on owner mismatch."""
        owner_id = self._require_owner(owner_id)
        try:
            return self._load_owned(cv_id, owner_id)
        except CvNotFoundError:
            return None

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------
    def watch_cvs(self, owner_id: str, callback: Callable[[List[ResumeRecord]], None]) -> Subscription:
        owner_id = self._require_owner(owner_id)
        return self.store.subscribe(owner_id, callback)

    def watch_cv(
        self,
        cv_id: str,
        owner_id: str,
        callback: Callable[[Optional[ResumeRecord]], None],
    ) -> Subscription:
        owner_id = self._require_owner(owner_id)
        self._load_owned(cv_id, owner_id)
        return self.store.subscribe_one(cv_id, callback)

    # ------------------------------------------------------------------
    # Form helpers
    # ------------------------------------------------------------------
    def suggest_skills(self, job_title: str) -> List[str]:
        payload = _input_or_violation(SkillSuggestionInput, {"job_title": job_title})
        return self.gateway.suggest_skills(payload.job_title)

    def summarize_experience(self, work_experience: str) -> str:
        payload = _input_or_violation(ExperienceSummaryInput, {"work_experience": work_experience})
        return self.gateway.summarize_experience(payload.work_experience)

    def close(self) -> None:
        self.store.close()
        self.gateway.close()


def build_orchestrator(params: Dict[str, Any] | None = None) -> CvOrchestrator:
    """Wire store, LLM client and engine from parameters.yaml."""
    params = params if params is not None else load_all_parameters()
    gen_cfg = load_generation_params(params)

    store = build_resume_store(load_store_params(params))
    engine = DocumentGenerationEngine(build_llm_client(gen_cfg), gen_cfg)
    validator = FormValidator(load_validation_params(params))
    return CvOrchestrator(store, engine, validator)


__all__ = [
    "CvOrchestrator",
    "build_orchestrator",
]
