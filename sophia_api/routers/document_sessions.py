from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from sophia_api.database import get_db
from sophia_api.dependencies import ServiceContainer, get_container
from sophia_api.schemas.document_session import DocumentSessionActionResponse, DocumentSessionResponse

router = APIRouter()


@router.get("/document-sessions", response_model=list[DocumentSessionResponse])
def list_document_sessions(
    agent_id: UUID,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Active (collecting or validating) sessions for an agent."""
    return container.session_manager.list_active_sessions(db, agent_id)


@router.get("/document-sessions/{session_id}", response_model=DocumentSessionResponse)
def get_document_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    session = container.session_manager.get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Document session {session_id} not found")
    return session


@router.post("/document-sessions/{session_id}/cancel", response_model=DocumentSessionActionResponse)
def cancel_document_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Abandon a session. Terminal sessions are rejected with 409."""
    manager = container.session_manager
    session = manager.get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Document session {session_id} not found")

    result = manager.cancel(db, session)
    if not result.ok:
        raise HTTPException(status_code=409, detail=result.error)

    db.commit()

    return DocumentSessionActionResponse(
        success=True,
        message="Document session cancelled",
        session=DocumentSessionResponse.model_validate(result.value),
    )
