from fastapi import APIRouter, Depends, Request

from app.models.schemas import GenerateOptionsBody, GenerateTitleBody
from app.routers.sessions import get_user

router = APIRouter()


@router.post("/options")
async def generate_options(request: Request, body: GenerateOptionsBody, user=Depends(get_user)):
    generator = request.app.state.prompt_generator
    return await generator.generate_branch_options(
        body.prompt,
        node_title=body.node_title,
        breadcrumb=body.breadcrumb,
        user_id=user,
    )


@router.post("/title")
async def generate_title(request: Request, body: GenerateTitleBody, user=Depends(get_user)):
    generator = request.app.state.prompt_generator
    return await generator.generate_session_title(body.prompt, user_id=user)
