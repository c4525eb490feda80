from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from sophia_api.logging_config import get_logger
from sophia_api.models import DocumentSession, PlatformUser
from sophia_api.schemas.inbound import InboundUpdate
from sophia_api.services.ai_service import MSG_AI_UNAVAILABLE, AIService
from sophia_api.services.calculator_service import CalculatorResult, execute_tool_call
from sophia_api.services.conversation_service import get_recent_history
from sophia_api.services.document_session_service import MSG_ALL_COLLECTED, DocumentSessionManager
from sophia_api.services.forward_service import ForwardService, parse_forward_command
from sophia_api.services.state_machine import SessionStatus

logger = get_logger("intent_router")

SESSION_CANCEL_WORDS = {"cancel", "/cancel", "stop"}
MSG_SESSION_CANCELLED = "Document request cancelled."
MSG_SESSION_ERROR = "Sorry, I couldn't update your document details. Please try again."


class RouteKind(str, Enum):
    FORWARD = "forward"
    CALCULATOR = "calculator"
    SESSION = "session"
    AI_REPLY = "ai_reply"


@dataclass
class RouteOutcome:
    kind: RouteKind
    reply: str
    session: Optional[DocumentSession] = None
    calculator_results: list[CalculatorResult] = field(default_factory=list)

    @property
    def document_ready(self) -> bool:
        return self.session is not None and self.session.status == SessionStatus.GENERATING.value


class IntentRouter:
    """Decides what a registered user's message means and produces the reply text."""

    def __init__(
        self,
        forward_service: ForwardService,
        session_manager: DocumentSessionManager,
        ai_service: AIService,
        history_limit: int = 10,
    ):
        self.forward_service = forward_service
        self.session_manager = session_manager
        self.ai_service = ai_service
        self.history_limit = history_limit

    async def route(self, db: Session, update: InboundUpdate, user: PlatformUser) -> RouteOutcome:
        text = (update.text or "").strip()

        command = parse_forward_command(text)
        if command is not None:
            outcome = await self.forward_service.forward(
                db,
                agent_id=user.agent_id,
                source_platform=update.platform,
                source_chat_id=update.chat_id,
                command=command,
            )
            return RouteOutcome(kind=RouteKind.FORWARD, reply=outcome.reply)

        session = self.session_manager.get_active_session(db, user.agent_id)
        if session is not None:
            return self._continue_session(db, session, text)

        template_id = self.session_manager.determine_template_from_request(text)
        if template_id is not None:
            return self._start_session(db, update, user, template_id, text)

        return await self._ai_reply(db, update, user, text)

    def _start_session(
        self,
        db: Session,
        update: InboundUpdate,
        user: PlatformUser,
        template_id: str,
        text: str,
    ) -> RouteOutcome:
        started = self.session_manager.start_session(
            db,
            user.agent_id,
            template_id,
            platform=update.platform.value,
            chat_id=update.chat_id,
        )
        if not started.ok:
            logger.warning("Could not start document session", extra={"context": {"error": started.error}})
            return RouteOutcome(kind=RouteKind.SESSION, reply=MSG_SESSION_ERROR)
        return self._continue_session(db, started.value, text)

    def _continue_session(self, db: Session, session: DocumentSession, text: str) -> RouteOutcome:
        if text.lower() in SESSION_CANCEL_WORDS:
            self.session_manager.cancel(db, session)
            return RouteOutcome(kind=RouteKind.SESSION, reply=MSG_SESSION_CANCELLED, session=session)

        result = self.session_manager.continue_session(db, session, text)
        if not result.ok:
            logger.warning(
                "Document session update failed",
                extra={"context": {"session_id": str(session.id), "code": result.error_code}},
            )
            return RouteOutcome(kind=RouteKind.SESSION, reply=MSG_SESSION_ERROR, session=session)

        if result.value.status == SessionStatus.COMPLETE:
            moved = self.session_manager.mark_complete(db, session)
            if moved.ok:
                document = self.session_manager.render_document(session)
                return RouteOutcome(kind=RouteKind.SESSION, reply=f"{MSG_ALL_COLLECTED}\n\n{document}", session=session)

        return RouteOutcome(kind=RouteKind.SESSION, reply=self.session_manager.get_next_prompt(session), session=session)

    async def _ai_reply(self, db: Session, update: InboundUpdate, user: PlatformUser, text: str) -> RouteOutcome:
        history = get_recent_history(db, user.agent_id, update.platform.value, limit=self.history_limit)
        try:
            response = await self.ai_service.generate_reply(history, text)
        except Exception as e:
            logger.error("AI reply failed", extra={"context": {"error": str(e)}})
            return RouteOutcome(kind=RouteKind.AI_REPLY, reply=MSG_AI_UNAVAILABLE)

        if response.tool_calls:
            results = [execute_tool_call(call.name, call.arguments) for call in response.tool_calls]
            parts = [response.content.strip()] if response.content and response.content.strip() else []
            parts.extend(result.to_reply_text() for result in results)
            return RouteOutcome(kind=RouteKind.CALCULATOR, reply="\n\n".join(parts), calculator_results=results)

        reply = response.content.strip() if response.content else ""
        return RouteOutcome(kind=RouteKind.AI_REPLY, reply=reply or MSG_AI_UNAVAILABLE)
