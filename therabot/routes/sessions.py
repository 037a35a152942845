"""Trainee session endpoints: start, advance, outcome, history and stats."""

from fastapi import APIRouter, Depends, HTTPException

from therabot.models import Session
from therabot.sessions import SessionService

from .deps import Identity, get_identity, get_sessions
from .models import AdvanceBody, StartSession, SubmitOutcome

router = APIRouter()


def _session_view(service: SessionService, session: Session) -> dict:
    data = session.model_dump()
    data["transcript"] = [t.model_dump() for t in service.visible_transcript(session)]
    return data


def _owned_session(service: SessionService, session_id: str, identity: Identity) -> Session:
    session = service.get_session(session_id)
    if session.trainee_id != identity.trainee_id and not identity.is_admin:
        raise HTTPException(403, "Not your session")
    return session


@router.post("/sessions", status_code=201)
async def start_session(
    body: StartSession,
    identity: Identity = Depends(get_identity),
    service: SessionService = Depends(get_sessions),
):
    """Start a session on a scenario and surface its first node."""
    session = service.start_session(body.scenario_id, identity.trainee_id)
    return {
        "session": _session_view(service, session),
        "current": service.current(session.id),
    }


@router.get("/sessions")
async def session_history(
    identity: Identity = Depends(get_identity),
    service: SessionService = Depends(get_sessions),
):
    """The caller's sessions, newest first."""
    return [_session_view(service, s) for s in service.history(identity.trainee_id)]


@router.get("/sessions/stats")
async def session_stats(
    identity: Identity = Depends(get_identity),
    service: SessionService = Depends(get_sessions),
):
    """Completion and diagnosis accuracy for the caller."""
    return service.stats(identity.trainee_id)


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    identity: Identity = Depends(get_identity),
    service: SessionService = Depends(get_sessions),
):
    """Session transcript plus the node it is waiting on."""
    session = _owned_session(service, session_id, identity)
    return {
        "session": _session_view(service, session),
        "current": service.current(session_id),
    }


@router.post("/sessions/{session_id}/advance")
async def advance(
    session_id: str,
    body: AdvanceBody,
    identity: Identity = Depends(get_identity),
    service: SessionService = Depends(get_sessions),
):
    """Send the trainee's choice and get the next node."""
    _owned_session(service, session_id, identity)
    return service.advance(session_id, body.choice_id)


@router.post("/sessions/{session_id}/outcome")
async def submit_outcome(
    session_id: str,
    body: SubmitOutcome,
    identity: Identity = Depends(get_identity),
    service: SessionService = Depends(get_sessions),
):
    """Submit the trainee's diagnosis once the session has ended."""
    _owned_session(service, session_id, identity)
    return service.submit_outcome(session_id, body.outcome_id)
