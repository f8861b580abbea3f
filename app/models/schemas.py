from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, RootModel, StringConstraints

Prompt = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
NodeId = Annotated[str, StringConstraints(min_length=1)]


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateSessionBody(_Body):
    prompt: Prompt


class SubmitNodeBody(_Body):
    mode: Literal["submit"]
    node_id: NodeId = Field(alias="nodeId")
    prompt: Prompt
    expected_version: Optional[int] = Field(default=None, alias="expectedVersion")


class SpecifyNodeBody(_Body):
    mode: Literal["specify"]
    parent_node_id: NodeId = Field(alias="parentNodeId")
    prompt: Prompt
    expected_version: Optional[int] = Field(default=None, alias="expectedVersion")


class ExpandOptionBody(_Body):
    mode: Literal["expand"]
    node_id: NodeId = Field(alias="nodeId")
    expected_version: Optional[int] = Field(default=None, alias="expectedVersion")


class ExpandNodeBody(RootModel[Annotated[
    Union[SubmitNodeBody, SpecifyNodeBody, ExpandOptionBody],
    Field(discriminator="mode"),
]]):
    """Body of the expand endpoint, dispatched on ``mode``."""


class GenerateOptionsBody(_Body):
    prompt: Prompt
    node_title: Optional[str] = Field(default=None, alias="nodeTitle")
    breadcrumb: List[str] = []


class GenerateTitleBody(_Body):
    prompt: Prompt
