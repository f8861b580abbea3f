from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.core import config
from app.models.schemas import CreateSessionBody, ExpandOptionBody, ExpandNodeBody, SpecifyNodeBody, SubmitNodeBody

router = APIRouter()


async def get_user(request: Request):
    user = request.session.get("user")
    if user:
        return user
    if config.ALLOW_ANONYMOUS:
        return config.PUBLIC_USER_ID
    raise HTTPException(401, "Authentication required.")


@router.get("/sessions")
async def list_sessions(request: Request, user=Depends(get_user)):
    tree_service = request.app.state.tree_service
    return {"sessions": tree_service.list_sessions(user)}


@router.post("/sessions", status_code=201)
async def create_session(request: Request, body: CreateSessionBody, user=Depends(get_user)):
    tree_service = request.app.state.tree_service
    session = await tree_service.create_session(user, body.prompt)
    return {"session": session}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request, user=Depends(get_user)):
    tree_service = request.app.state.tree_service
    return {"session": tree_service.get_session(user, session_id)}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, request: Request, user=Depends(get_user)):
    tree_service = request.app.state.tree_service
    tree_service.delete_session(user, session_id)
    meta = tree_service.repository.diagnostics()
    return JSONResponse(
        {"success": True, "meta": meta},
        headers={"x-session-storage": meta["backend"]},
    )


@router.post("/tree/{session_id}/expand")
async def expand_node(session_id: str, request: Request, body: ExpandNodeBody, user=Depends(get_user)):
    tree_service = request.app.state.tree_service
    payload = body.root

    if isinstance(payload, SubmitNodeBody):
        session = await tree_service.submit_prompt(
            user, session_id, payload.node_id, payload.prompt, expected_version=payload.expected_version
        )
    elif isinstance(payload, SpecifyNodeBody):
        session = await tree_service.specify_branch(
            user, session_id, payload.parent_node_id, payload.prompt, expected_version=payload.expected_version
        )
    elif isinstance(payload, ExpandOptionBody):
        session = await tree_service.expand_option(
            user, session_id, payload.node_id, expected_version=payload.expected_version
        )
    else:
        raise HTTPException(422, "Unknown expand mode.")

    return {"session": session}
