from typing import List, Literal, Optional
from pydantic import BaseModel, Field

BranchNodeVariant = Literal["prompt", "option", "specify"]
BranchNodeStatus = Literal["idle", "loading", "error"]


class BranchNode(BaseModel):
    id: str
    title: str = ""
    prompt: str = ""
    variant: BranchNodeVariant = "prompt"
    status: BranchNodeStatus = "idle"
    children: List["BranchNode"] = Field(default_factory=list)


class SessionTree(BaseModel):
    id: str
    title: str
    root: BranchNode
    token_usage: int = 0
    is_placeholder: bool = False
    version: int = 1
    created_at: float = 0.0


class BranchOptions(BaseModel):
    options: List[str]
    tokens: int = 0


class SessionTitle(BaseModel):
    title: str
    tokens: int = 0


class Completion(BaseModel):
    text: str
    tokens: int = 0
    model: Optional[str] = None


BranchNode.model_rebuild()
