import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from sophia_api.logging_config import get_logger
from sophia_api.models import DocumentSession
from sophia_api.services.document_templates import DocumentTemplate, TemplateCatalog, compute_missing_fields, is_empty
from sophia_api.services.document_validator import apply_transforms, extract_fields, validate_fields
from sophia_api.services.result import Result
from sophia_api.services.state_machine import (
    ACTIVE_SESSION_STATUSES,
    IDLE_SWEEP_STATUSES,
    InvalidTransitionError,
    SessionStatus,
    abandon,
    begin_generation,
    mark_sent,
    status_after_update,
    transition,
)

logger = get_logger("document_session_service")

MSG_ALL_COLLECTED = "All required information collected! Generating document..."


@dataclass
class SessionUpdate:
    session: DocumentSession
    applied_fields: dict[str, Any]
    errors: list[str]
    warnings: list[str]

    @property
    def status(self) -> SessionStatus:
        return SessionStatus(self.session.status)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DocumentSessionManager:
    """Multi-turn field collection for one document per (agent, template)."""

    def __init__(self, catalog: TemplateCatalog, idle_minutes: int = 60):
        self.catalog = catalog
        self.idle_minutes = idle_minutes

    def get_template(self, template_id: str) -> Optional[DocumentTemplate]:
        return self.catalog.get(template_id)

    def determine_template_from_request(self, text: str) -> Optional[str]:
        template = self.catalog.match_request(text)
        return template.id if template else None

    # --- queries -------------------------------------------------------

    def get_session(self, db: Session, session_id: UUID) -> Optional[DocumentSession]:
        return db.query(DocumentSession).filter(DocumentSession.id == session_id).first()

    def get_active_session(
        self,
        db: Session,
        agent_id: UUID,
        template_id: Optional[str] = None,
    ) -> Optional[DocumentSession]:
        query = db.query(DocumentSession).filter(
            DocumentSession.agent_id == agent_id,
            DocumentSession.status.in_([status.value for status in ACTIVE_SESSION_STATUSES]),
        )
        if template_id:
            query = query.filter(DocumentSession.template_id == template_id)
        return query.order_by(DocumentSession.updated_at.desc()).first()

    def list_active_sessions(self, db: Session, agent_id: UUID) -> list[DocumentSession]:
        return (
            db.query(DocumentSession)
            .filter(
                DocumentSession.agent_id == agent_id,
                DocumentSession.status.in_([status.value for status in ACTIVE_SESSION_STATUSES]),
            )
            .order_by(DocumentSession.updated_at.desc())
            .all()
        )

    # --- transitions ---------------------------------------------------

    def start_session(
        self,
        db: Session,
        agent_id: UUID,
        template_id: str,
        platform: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> Result[DocumentSession]:
        template = self.get_template(template_id)
        if template is None:
            return Result.failure(f"Unknown document template: {template_id}", "unknown_template")

        previous = self.get_active_session(db, agent_id, template_id)
        if previous is not None:
            previous.status = abandon(SessionStatus(previous.status)).value
            previous.updated_at = _now()
            logger.info(
                "Superseded document session abandoned",
                extra={"context": {"session_id": str(previous.id), "template_id": template_id}},
            )

        now = _now()
        session = DocumentSession(
            id=uuid.uuid4(),
            agent_id=agent_id,
            template_id=template_id,
            platform=platform,
            chat_id=chat_id,
            collected_fields={},
            missing_fields=compute_missing_fields(template, {}),
            validation_errors=[],
            status=SessionStatus.COLLECTING.value,
            created_at=now,
            updated_at=now,
        )
        db.add(session)
        db.flush()

        logger.info(
            "Document session started",
            extra={"context": {"session_id": str(session.id), "template_id": template_id}},
        )
        return Result.success(session)

    def update_session(self, db: Session, session: DocumentSession, new_fields: dict[str, Any]) -> Result[SessionUpdate]:
        """Merge new values, transform, recompute missing fields and re-validate."""
        current = SessionStatus(session.status)
        if current not in ACTIVE_SESSION_STATUSES:
            return Result.failure(f"Session is {current.value}, not collecting", "invalid_transition")

        template = self.get_template(session.template_id)
        if template is None:
            return Result.failure(f"Unknown document template: {session.template_id}", "unknown_template")

        applied = {
            name: value
            for name, value in (new_fields or {}).items()
            if template.get_field(name) is not None and not is_empty(value)
        }
        ignored = [name for name in (new_fields or {}) if template.get_field(name) is None]
        merged = {**(session.collected_fields or {}), **applied}
        merged = apply_transforms(template, merged)

        missing = compute_missing_fields(template, merged)
        report = validate_fields(template, merged)
        target = status_after_update(has_missing=bool(missing), is_valid=report.valid)

        if target != current:
            try:
                transition(current, target)
            except InvalidTransitionError as e:
                return Result.failure(str(e), "invalid_transition")

        session.collected_fields = merged
        session.missing_fields = missing
        session.validation_errors = [{"field": error.field, "message": error.message} for error in report.errors]
        session.status = target.value
        session.updated_at = _now()
        if target == SessionStatus.COMPLETE:
            session.completed_at = session.updated_at
        db.flush()

        logger.info(
            "Document session updated",
            extra={
                "context": {
                    "session_id": str(session.id),
                    "status": target.value,
                    "missing": len(missing),
                    "errors": len(report.errors),
                }
            },
        )
        return Result.success(
            SessionUpdate(
                session=session,
                applied_fields=applied,
                errors=report.messages(),
                warnings=report.warnings + [f"Unknown field ignored: {name}" for name in ignored],
            )
        )

    def continue_session(self, db: Session, session: DocumentSession, message: str) -> Result[SessionUpdate]:
        """Treat a chat message as field input for the session."""
        template = self.get_template(session.template_id)
        if template is None:
            return Result.failure(f"Unknown document template: {session.template_id}", "unknown_template")
        invalid = [item["field"] for item in (session.validation_errors or []) if item.get("field")]
        extracted = extract_fields(template, message, session.collected_fields or {}, invalid=invalid)
        return self.update_session(db, session, extracted)

    def mark_complete(self, db: Session, session: DocumentSession) -> Result[DocumentSession]:
        """complete -> generating, once the caller starts producing the document."""
        return self._move(db, session, begin_generation)

    def mark_sent(self, db: Session, session: DocumentSession) -> Result[DocumentSession]:
        return self._move(db, session, mark_sent)

    def cancel(self, db: Session, session: DocumentSession) -> Result[DocumentSession]:
        return self._move(db, session, abandon)

    def _move(self, db: Session, session: DocumentSession, step) -> Result[DocumentSession]:
        try:
            target = step(SessionStatus(session.status))
        except InvalidTransitionError as e:
            return Result.failure(str(e), "invalid_transition")
        session.status = target.value
        session.updated_at = _now()
        db.flush()
        logger.info(
            "Document session status changed",
            extra={"context": {"session_id": str(session.id), "status": target.value}},
        )
        return Result.success(session)

    def sweep_idle_sessions(self, db: Session, now: Optional[datetime] = None) -> int:
        """Abandon collecting/validating sessions untouched for longer than the idle timeout."""
        cutoff = (now or _now()) - timedelta(minutes=self.idle_minutes)
        stale = (
            db.query(DocumentSession)
            .filter(
                DocumentSession.status.in_([status.value for status in IDLE_SWEEP_STATUSES]),
                DocumentSession.updated_at < cutoff,
            )
            .all()
        )
        for session in stale:
            session.status = abandon(SessionStatus(session.status)).value
            session.updated_at = now or _now()
        if stale:
            db.flush()
            logger.info("Idle document sessions abandoned", extra={"context": {"count": len(stale)}})
        return len(stale)

    # --- rendering -----------------------------------------------------

    def get_next_prompt(self, session: DocumentSession) -> str:
        template = self.get_template(session.template_id)
        if template is None:
            return "This document template is no longer available."

        missing = list(session.missing_fields or [])
        errors = [item["message"] for item in (session.validation_errors or [])]

        if not missing and not errors:
            return MSG_ALL_COLLECTED

        lines: list[str] = []
        if errors:
            lines.append("Please correct the following:")
            lines.extend(f"• {message}" for message in errors)
            lines.append("")

        if missing:
            lines.append(f"I need the following information to generate your **{template.name}**:")
            lines.append("")
            for index, name in enumerate(missing, start=1):
                item = template.get_field(name)
                if item is None:
                    continue
                line = f"{index}. **{item.label}**"
                if item.description:
                    line += f" - {item.description}"
                lines.append(line)
                if item.placeholder:
                    lines.append(f"   Example: `{item.placeholder}`")
                if item.options:
                    lines.append(f"   Options: {', '.join(item.options)}")
            lines.append("")
            lines.append("Please provide these details.")

        return "\n".join(lines).strip()

    def render_document(self, session: DocumentSession) -> str:
        """Plain-text rendering of the collected fields."""
        template = self.get_template(session.template_id)
        if template is None:
            return ""
        collected = session.collected_fields or {}
        lines = [f"📄 **{template.name}**", ""]
        for item in template.visible_fields(collected):
            value = collected.get(item.name)
            if is_empty(value):
                continue
            lines.append(f"**{item.label}:** {value}")
        return "\n".join(lines)
